"""望ましいリソース状態の適用（作成・マージ更新・所有確認）。"""

import copy
from typing import Any

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import (
    ApplyConflictError,
    InternalConsistencyError,
    ResourceNotFoundError,
    ResourceOwnershipError,
)
from shiftdeploy.models.resources import ResourceSpec, SecretReferenceSpec
from shiftdeploy.models.state import AppliedResource
from shiftdeploy.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# 更新時にクラスタへ送り返さないフィールド
_SERVER_MANAGED_METADATA = ("managedFields",)

# 名前単位でマージする際、既存側にしかない要素も残すリスト（共有ImageStreamのタグ）
_PRESERVED_NAMED_LISTS = frozenset({"tags"})


def merge_desired(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """既存オブジェクトに望ましい状態を重ねたコピーを返す。

    - 辞書は再帰的にマージし、既存側のみのキー（サーバー既定値等）は保持する
    - 全要素が "name" を持つ辞書のリストは名前単位でマージする（要素の集合と順序は望ましい側に従う。
      ImageStreamのタグは他のコンポーネントと共有するため、既存側のみの要素も残す）
    - その他のリスト・スカラーは望ましい側で置き換える
    - 望ましい側の None はそのキーを削除する
    """
    merged = copy.deepcopy(live)
    _merge_into(merged, desired)
    return merged


def _merge_into(target: dict[str, Any], source: dict[str, Any]) -> None:
    for key, value in source.items():
        if value is None:
            target.pop(key, None)
            continue
        current = target.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            _merge_into(current, value)
        elif isinstance(value, list) and isinstance(current, list) and _is_named_list(value):
            target[key] = _merge_named_list(current, value, preserve_live=key in _PRESERVED_NAMED_LISTS)
        else:
            target[key] = copy.deepcopy(value)


def _is_named_list(items: list[Any]) -> bool:
    return bool(items) and all(isinstance(item, dict) and "name" in item for item in items)


def _merge_named_list(live: list[Any], desired: list[dict[str, Any]], preserve_live: bool = False) -> list[Any]:
    live_by_name = {item.get("name"): item for item in live if isinstance(item, dict)}
    merged: list[Any] = []
    if preserve_live:
        desired_names = {item["name"] for item in desired}
        merged.extend(
            copy.deepcopy(item)
            for item in live
            if not isinstance(item, dict) or item.get("name") not in desired_names
        )
    for item in desired:
        existing = live_by_name.get(item["name"])
        if existing is None:
            merged.append(copy.deepcopy(item))
        else:
            entry = copy.deepcopy(existing)
            _merge_into(entry, item)
            merged.append(entry)
    return merged


def owns(live: dict[str, Any], owner_labels: dict[str, str]) -> bool:
    """既存オブジェクトが所有ラベルをすべて持つかを返す。"""
    labels = (live.get("metadata") or {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in owner_labels.items())


def _uid(obj: dict[str, Any] | None) -> str | None:
    if obj is None:
        return None
    return (obj.get("metadata") or {}).get("uid")


def _without_nulls(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        key: _without_nulls(value) if isinstance(value, dict) else value
        for key, value in obj.items()
        if value is not None
    }


def _with_removals(live: dict[str, Any], merged: dict[str, Any]) -> dict[str, Any]:
    """マージで消えたキーにnullを入れる（merge patchではnullがキーの削除を表す）。"""
    body = dict(merged)
    for key, value in live.items():
        if key not in merged:
            body[key] = None
        elif isinstance(value, dict) and isinstance(merged[key], dict):
            body[key] = _with_removals(value, merged[key])
    return body


def _patch_body(live: dict[str, Any], merged: dict[str, Any]) -> dict[str, Any]:
    body = {key: value for key, value in _with_removals(live, merged).items() if key != "status"}
    metadata = dict(body.get("metadata") or {})
    for key in _SERVER_MANAGED_METADATA:
        metadata.pop(key, None)
    body["metadata"] = metadata
    return body


class ApplyEngine:
    """ResourceSpecをクラスタに適用する。

    既存リソースがない場合は作成し、ある場合は所有ラベルを確認した上で
    望ましい状態をマージして更新する。マージ結果が既存と同一なら何もしない。
    楽観的並行性制御の衝突は再読み込みして1回だけ再試行する。
    """

    def __init__(self, client: ClusterClient, retry: RetryPolicy | None = None) -> None:
        self.client = client
        self.retry = retry or RetryPolicy()

    async def apply(self, spec: ResourceSpec) -> AppliedResource:
        """1つのリソースを適用する。

        Raises:
            ResourceOwnershipError: 既存リソースが所有ラベルを持たない場合。
            ResourceNotFoundError: 参照のみのリソース（Secret）が存在しない場合。
            ApplyConflictError: 再試行後も衝突した場合。
            InternalConsistencyError: 衝突後に同名の別オブジェクトへ置き換わっていた場合。
            TransientApiError: リトライ上限に達した場合。
            PermissionOrRequestError: クラスタが要求を拒否した場合。
        """
        operation = f"apply {spec.kind}/{spec.name}"
        if isinstance(spec, SecretReferenceSpec):
            return await self.retry.call(operation, lambda: self._verify(spec))
        return await self.retry.call(operation, lambda: self._apply_once(spec))

    async def apply_all(self, specs: list[ResourceSpec]) -> list[AppliedResource]:
        """順番に適用する。途中で失敗した場合はそこで止まる。"""
        results = []
        for spec in specs:
            results.append(await self.apply(spec))
        return results

    async def _verify(self, spec: SecretReferenceSpec) -> AppliedResource:
        live = await self.client.get(spec.resource_kind, spec.name)
        if live is None:
            raise ResourceNotFoundError(spec.kind, spec.name)
        return AppliedResource(kind=spec.kind, name=spec.name, action="verified", object=live)

    async def _apply_once(self, spec: ResourceSpec) -> AppliedResource:
        live = spec.live
        if live is None:
            live = await self.client.get(spec.resource_kind, spec.name)
        try:
            return await self._reconcile(spec, live)
        except ApplyConflictError:
            logger.info("apply conflict, re-reading", kind=spec.kind, name=spec.name)

        fresh = await self.client.get(spec.resource_kind, spec.name)
        self._check_consistency(spec, live, fresh)
        try:
            return await self._reconcile(spec, fresh)
        except ApplyConflictError as e:
            raise ApplyConflictError(spec.kind, spec.name, "the resource kept changing during apply") from e

    def _check_consistency(
        self, spec: ResourceSpec, live: dict[str, Any] | None, fresh: dict[str, Any] | None
    ) -> None:
        """衝突後に再読み込みしたオブジェクトが、最初に観測したものと同一であることを確認する。"""
        if live is None:
            return
        if fresh is None:
            raise InternalConsistencyError(f"{spec.kind} '{spec.name}' was deleted while being applied")
        if _uid(live) != _uid(fresh):
            raise InternalConsistencyError(f"{spec.kind} '{spec.name}' was replaced while being applied")
        if not owns(fresh, spec.owner_labels):
            raise InternalConsistencyError(f"{spec.kind} '{spec.name}' lost its ownership labels while being applied")

    async def _reconcile(self, spec: ResourceSpec, live: dict[str, Any] | None) -> AppliedResource:
        desired = spec.manifest()
        if live is None:
            created = await self.client.create(spec.resource_kind, _without_nulls(desired))
            logger.info("resource created", kind=spec.kind, name=spec.name)
            return AppliedResource(kind=spec.kind, name=spec.name, action="created", object=created)

        if not owns(live, spec.owner_labels):
            raise ResourceOwnershipError(spec.kind, spec.name)

        merged = merge_desired(live, desired)
        if merged == live:
            logger.debug("resource unchanged", kind=spec.kind, name=spec.name)
            return AppliedResource(kind=spec.kind, name=spec.name, action="unchanged", object=live)

        # resourceVersionはliveからそのまま引き継がれる
        updated = await self.client.patch(spec.resource_kind, spec.name, _patch_body(live, merged))
        logger.info("resource updated", kind=spec.kind, name=spec.name)
        return AppliedResource(kind=spec.kind, name=spec.name, action="updated", object=updated)
