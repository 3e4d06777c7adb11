"""kubernetes動的クライアントによるClusterClientの実装。"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

import structlog
import urllib3
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError as ApiResourceNotFoundError
from kubernetes.dynamic.resource import Resource

from shiftdeploy.models.errors import (
    ApplyConflictError,
    ClusterApiError,
    PermissionOrRequestError,
    TransientApiError,
)
from shiftdeploy.models.project import ConnectionConfig
from shiftdeploy.models.resources import API_VERSIONS, ResourceKind

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_BINARY_BUILD_PATH = "/apis/build.openshift.io/v1/namespaces/{namespace}/buildconfigs/{name}/instantiatebinary"
_BUILD_LOG_PATH = "/apis/build.openshift.io/v1/namespaces/{namespace}/builds/{name}/log"

# 削除時は依存オブジェクトをバックグラウンドでガベージコレクションさせる
_DELETE_OPTIONS = {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": "Background"}


def translate_api_error(error: ApiException, kind: str, name: str) -> ClusterApiError:
    """ApiExceptionをshiftdeployの型付き例外に変換する。"""
    status = error.status or 0
    message = _error_message(error)
    if status == 409:
        return ApplyConflictError(kind, name, message)
    if status >= 500 or status == 0:
        return TransientApiError(f"{kind} '{name}': {message}", status=status or None)
    if status == 429:
        return TransientApiError(f"{kind} '{name}': {message}", status=status)
    return PermissionOrRequestError(f"{kind} '{name}': {message}", status=status)


def _error_message(error: ApiException) -> str:
    """API応答本文のStatus.messageを取り出す。取り出せない場合はreasonを返す。"""
    body = getattr(error, "body", None)
    if body:
        try:
            data = json.loads(body)
        except (TypeError, ValueError):
            return str(body)
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
    return str(error.reason or "request failed")


def create_api_client(connection: ConnectionConfig) -> k8s_client.ApiClient:
    """接続設定からApiClientを作成する。トークンはConfiguration内にのみ保持する。"""
    configuration = k8s_client.Configuration()
    configuration.host = connection.server
    configuration.verify_ssl = not connection.insecure_skip_tls_verify
    configuration.api_key = {"authorization": connection.token.get_secret_value()}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    return k8s_client.ApiClient(configuration)


class KubernetesClusterClient:
    """kubernetesパッケージの同期APIを asyncio.to_thread で非同期化したクライアント。"""

    def __init__(self, connection: ConnectionConfig, api_client: k8s_client.ApiClient | None = None) -> None:
        self._namespace = connection.namespace
        self._api_client = api_client or create_api_client(connection)
        # 動的クライアント（APIディスカバリを伴うため遅延初期化）
        self._dynamic: DynamicClient | None = None
        self._resources: dict[ResourceKind, Resource] = {}

    @property
    def namespace(self) -> str:
        return self._namespace

    async def _call(self, kind: str, name: str, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """同期API呼び出しをスレッドで実行し、エラーを変換する。

        kind・nameはエラーメッセージ用で、fnのキーワード引数 name= とは別物。
        """
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise translate_api_error(e, kind, name) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientApiError(f"{kind} '{name}': {e}") from e

    async def _resource(self, kind: ResourceKind) -> Resource:
        """リソース種別に対応する動的リソースを取得する。"""
        if kind in self._resources:
            return self._resources[kind]
        if self._dynamic is None:
            host = self._api_client.configuration.host
            self._dynamic = await self._call("discovery", host, DynamicClient, self._api_client)
        try:
            resource = await self._call(
                kind.value,
                API_VERSIONS[kind],
                self._dynamic.resources.get,
                api_version=API_VERSIONS[kind],
                kind=kind.value,
            )
        except ApiResourceNotFoundError as e:
            raise PermissionOrRequestError(f"The cluster does not serve {API_VERSIONS[kind]}/{kind.value}") from e
        self._resources[kind] = resource
        return resource

    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        resource = await self._resource(kind)
        try:
            instance = await self._call(kind.value, name, resource.get, name=name, namespace=self._namespace)
        except PermissionOrRequestError as e:
            if e.status == 404:
                return None
            raise
        return dict(instance.to_dict())

    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(kind)
        name = body["metadata"]["name"]
        instance = await self._call(kind.value, name, resource.create, body=body, namespace=self._namespace)
        logger.debug("resource created", kind=kind.value, name=name)
        return dict(instance.to_dict())

    async def patch(self, kind: ResourceKind, name: str, body: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(kind)
        # metadata.resourceVersionを含めることでサーバー側の楽観的並行性制御を効かせる
        instance = await self._call(
            kind.value,
            name,
            resource.patch,
            body=body,
            name=name,
            namespace=self._namespace,
            content_type="application/merge-patch+json",
        )
        logger.debug("resource patched", kind=kind.value, name=name)
        return dict(instance.to_dict())

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        resource = await self._resource(kind)
        try:
            await self._call(
                kind.value, name, resource.delete, name=name, namespace=self._namespace, body=_DELETE_OPTIONS
            )
        except PermissionOrRequestError as e:
            if e.status == 404:
                return False
            raise
        return True

    async def list(self, kind: ResourceKind, label_selector: str) -> list[dict[str, Any]]:
        resource = await self._resource(kind)
        result = await self._call(
            kind.value, label_selector, resource.get, namespace=self._namespace, label_selector=label_selector
        )
        return list(result.to_dict().get("items") or [])

    async def start_binary_build(self, build_config: str, archive: bytes) -> dict[str, Any]:
        response = await self._call(
            "BuildConfig",
            build_config,
            self._api_client.call_api,
            _BINARY_BUILD_PATH,
            "POST",
            path_params={"namespace": self._namespace, "name": build_config},
            header_params={"Content-Type": "application/octet-stream", "Accept": "application/json"},
            body=archive,
            auth_settings=["BearerToken"],
            _preload_content=False,
            _return_http_data_only=True,
        )
        return dict(json.loads(response.data))

    async def cancel_build(self, name: str) -> None:
        await self.patch(ResourceKind.BUILD, name, {"status": {"cancelled": True}})

    async def _stream_lines(self, kind: str, name: str, open_stream: Callable[[], Any]) -> AsyncIterator[str]:
        """ストリーミング応答を行単位で非同期に読み出す。"""
        response = await self._call(kind, name, open_stream)
        lines = iter(response)
        try:
            while True:
                line = await self._call(kind, name, next, lines, None)
                if line is None:
                    return
                yield line.decode("utf-8", errors="replace").rstrip("\r\n")
        finally:
            await asyncio.to_thread(response.release_conn)

    def stream_build_log(self, name: str) -> AsyncIterator[str]:
        def open_stream() -> Any:
            return self._api_client.call_api(
                _BUILD_LOG_PATH,
                "GET",
                path_params={"namespace": self._namespace, "name": name},
                query_params=[("follow", "true")],
                header_params={"Accept": "*/*"},
                auth_settings=["BearerToken"],
                _preload_content=False,
                _return_http_data_only=True,
            )

        return self._stream_lines("Build", name, open_stream)

    async def list_pods(self, label_selector: str) -> list[dict[str, Any]]:
        core = k8s_client.CoreV1Api(self._api_client)
        pods = await self._call(
            "Pod", label_selector, core.list_namespaced_pod, self._namespace, label_selector=label_selector
        )
        return list(self._api_client.sanitize_for_serialization(pods).get("items") or [])

    def stream_pod_log(self, pod_name: str, container: str) -> AsyncIterator[str]:
        core = k8s_client.CoreV1Api(self._api_client)

        def open_stream() -> Any:
            return core.read_namespaced_pod_log(
                pod_name, self._namespace, container=container, follow=True, _preload_content=False
            )

        return self._stream_lines("Pod", pod_name, open_stream)

    async def close(self) -> None:
        await asyncio.to_thread(self._api_client.close)


def create_cluster_client(connection: ConnectionConfig) -> KubernetesClusterClient:
    """ClientFactoryの既定実装。"""
    return KubernetesClusterClient(connection)
