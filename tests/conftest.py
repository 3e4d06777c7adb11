"""テスト共通フィクスチャ。"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
from pydantic import SecretStr

from shiftdeploy.config import DeployerConfig
from shiftdeploy.models.errors import ApplyConflictError, PermissionOrRequestError
from shiftdeploy.models.project import ConnectionConfig, ProjectInfo
from shiftdeploy.models.resources import ResourceKind
from shiftdeploy.models.state import DeployRequest
from shiftdeploy.services.orchestrator import Orchestrator

NAMESPACE = "demo"
REGISTRY = "image-registry.openshift-image-registry.svc:5000"


class FakeClock:
    """sleepで時間を進めるだけの時計。"""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # 並行するログ追従タスクに実行機会を与える
        await asyncio.sleep(0)


def _merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """JSON merge patch (RFC 7386)。"""
    result = copy.deepcopy(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_selector(selector: str) -> dict[str, str]:
    return dict(part.split("=", 1) for part in selector.split(",") if part)


class FakeBuild:
    """start_binary_buildで開始されるビルドの台本。"""

    def __init__(
        self,
        phases: list[str] | None = None,
        digest: str | None = "sha256:default",
        image_reference: str | None = None,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        self.phases = list(phases if phases is not None else ["Running", "Complete"])
        self.digest = digest
        self.image_reference = image_reference
        self.reason = reason
        self.message = message


class FakeCluster:
    """ClusterClientプロトコルのインメモリ実装。

    resourceVersion・generation・uidを管理し、ビルドのフェーズ遷移・
    デプロイメントの状態・ルートのホスト割り当てを台本どおりに進める。
    """

    def __init__(self, namespace: str = NAMESPACE) -> None:
        self._namespace = namespace
        self.objects: dict[tuple[ResourceKind, str], dict[str, Any]] = {}
        self.mutations: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, ResourceKind | None], list[Exception]] = {}
        self.builds: list[FakeBuild] = []
        self.build_scripts: dict[str, FakeBuild] = {}
        self.archives: list[bytes] = []
        self.cancelled: list[str] = []
        # Noneの場合はデプロイメントを自動的に健全にする
        self.deployment_statuses: list[dict[str, Any]] | None = None
        # ホストを割り当てるまでのルート取得回数（Noneなら割り当てない）
        self.route_host_after: int | None = 1
        self.route_tls = False
        self._route_reads: dict[str, int] = {}
        self.build_log: list[str] = []
        self.pods: list[dict[str, Any]] = []
        self.pod_log: list[str] = []
        self.closed = 0
        self._uids = itertools.count(1)
        self._versions = itertools.count(1)
        self._build_numbers = itertools.count(1)

    @property
    def namespace(self) -> str:
        return self._namespace

    # --- テスト用の操作 ---

    def fail(self, verb: str, kind: ResourceKind | None, *errors: Exception) -> None:
        """次回以降の呼び出しで順にerrorsを送出させる。"""
        self.failures.setdefault((verb, kind), []).extend(errors)

    def queue_build(self, **kwargs: Any) -> FakeBuild:
        build = FakeBuild(**kwargs)
        self.builds.append(build)
        return build

    def put(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        """既存オブジェクトを直接配置する。"""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("namespace", self._namespace)
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata.setdefault("resourceVersion", str(next(self._versions)))
        metadata.setdefault("generation", 1)
        self.objects[(kind, metadata["name"])] = stored
        return copy.deepcopy(stored)

    def find(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        obj = self.objects.get((kind, name))
        return copy.deepcopy(obj) if obj is not None else None

    def of_kind(self, kind: ResourceKind) -> list[dict[str, Any]]:
        return [copy.deepcopy(obj) for (k, _), obj in self.objects.items() if k == kind]

    def mutation_count(self, verb: str | None = None, kind: ResourceKind | None = None) -> int:
        return sum(
            1 for v, k, _ in self.mutations if (verb is None or v == verb) and (kind is None or k == kind.value)
        )

    def container_image(self, name: str) -> str | None:
        deployment = self.objects[(ResourceKind.DEPLOYMENT, name)]
        return deployment["spec"]["template"]["spec"]["containers"][0].get("image")

    # --- ClusterClient ---

    def _check(self, verb: str, kind: ResourceKind | None) -> None:
        for key in ((verb, kind), (verb, None)):
            queue = self.failures.get(key)
            if queue:
                raise queue.pop(0)

    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        kind = ResourceKind(kind)
        self._check("get", kind)
        obj = self.objects.get((kind, name))
        if obj is None:
            return None
        if kind == ResourceKind.BUILD:
            self._advance_build(obj)
        elif kind == ResourceKind.DEPLOYMENT:
            self._advance_deployment(obj)
        elif kind == ResourceKind.ROUTE:
            self._advance_route(obj)
        return copy.deepcopy(obj)

    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        kind = ResourceKind(kind)
        self._check("create", kind)
        name = body["metadata"]["name"]
        if (kind, name) in self.objects:
            raise ApplyConflictError(kind.value, name, "already exists")
        self.mutations.append(("create", kind.value, name))
        body = copy.deepcopy(body)
        body["metadata"].pop("resourceVersion", None)
        return self.put(kind, body)

    async def patch(self, kind: ResourceKind, name: str, body: dict[str, Any]) -> dict[str, Any]:
        kind = ResourceKind(kind)
        self._check("patch", kind)
        current = self.objects.get((kind, name))
        if current is None:
            raise PermissionOrRequestError(f"{kind.value} '{name}' not found", status=404)
        version = (body.get("metadata") or {}).get("resourceVersion")
        if version is not None and version != current["metadata"]["resourceVersion"]:
            raise ApplyConflictError(kind.value, name, "the object has been modified")
        self.mutations.append(("patch", kind.value, name))
        patched = _merge_patch(current, body)
        patched["metadata"]["uid"] = current["metadata"]["uid"]
        patched["metadata"]["resourceVersion"] = str(next(self._versions))
        if patched.get("spec") != current.get("spec"):
            patched["metadata"]["generation"] = current["metadata"].get("generation", 1) + 1
        self.objects[(kind, name)] = patched
        return copy.deepcopy(patched)

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        kind = ResourceKind(kind)
        self._check("delete", kind)
        if self.objects.pop((kind, name), None) is None:
            return False
        self.mutations.append(("delete", kind.value, name))
        return True

    async def list(self, kind: ResourceKind, label_selector: str) -> list[dict[str, Any]]:
        kind = ResourceKind(kind)
        self._check("list", kind)
        selector = _parse_selector(label_selector)
        items = []
        for (k, _), obj in self.objects.items():
            labels = obj["metadata"].get("labels") or {}
            if k == kind and all(labels.get(key) == value for key, value in selector.items()):
                items.append(copy.deepcopy(obj))
        return items

    async def start_binary_build(self, build_config: str, archive: bytes) -> dict[str, Any]:
        self._check("start_binary_build", ResourceKind.BUILD)
        config = self.objects.get((ResourceKind.BUILD_CONFIG, build_config))
        if config is None:
            raise PermissionOrRequestError(f"BuildConfig '{build_config}' not found", status=404)
        self.archives.append(archive)
        name = f"{build_config}-{next(self._build_numbers)}"
        self.build_scripts[name] = self.builds.pop(0) if self.builds else FakeBuild(digest=f"sha256:{name}")
        self.mutations.append(("create", ResourceKind.BUILD.value, name))
        output = config["spec"]["output"]["to"]["name"]
        return self.put(
            ResourceKind.BUILD,
            {
                "apiVersion": "build.openshift.io/v1",
                "kind": "Build",
                "metadata": {"name": name, "labels": dict(config["metadata"].get("labels") or {})},
                "spec": {"output": {"to": {"kind": "ImageStreamTag", "name": output}}},
                "status": {"phase": "New"},
            },
        )

    def _advance_build(self, build: dict[str, Any]) -> None:
        script = self.build_scripts.get(build["metadata"]["name"])
        if script is None or not script.phases:
            return
        status = build["status"]
        status["phase"] = script.phases.pop(0)
        if status["phase"] == "Complete":
            output = build["spec"]["output"]["to"]["name"]
            status["outputDockerImageReference"] = (
                script.image_reference or f"{REGISTRY}/{self._namespace}/{output}"
            )
            if script.digest:
                status["output"] = {"to": {"imageDigest": script.digest}}
        if script.reason:
            status["reason"] = script.reason
        if script.message:
            status["message"] = script.message

    def _advance_deployment(self, deployment: dict[str, Any]) -> None:
        if self.deployment_statuses is None:
            deployment["status"] = {
                "observedGeneration": deployment["metadata"]["generation"],
                "availableReplicas": deployment["spec"].get("replicas", 1),
                "conditions": [{"type": "Progressing", "status": "True", "reason": "NewReplicaSetAvailable"}],
            }
        elif self.deployment_statuses:
            deployment["status"] = self.deployment_statuses.pop(0)

    def _advance_route(self, route: dict[str, Any]) -> None:
        name = route["metadata"]["name"]
        if self.route_tls:
            route["spec"]["tls"] = {"termination": "edge"}
        if self.route_host_after is None or (route.get("status") or {}).get("ingress"):
            return
        self._route_reads[name] = self._route_reads.get(name, 0) + 1
        if self._route_reads[name] >= self.route_host_after:
            route["status"] = {"ingress": [{"host": f"{name}-{self._namespace}.apps.example.com"}]}

    async def cancel_build(self, name: str) -> None:
        self._check("cancel_build", ResourceKind.BUILD)
        self.cancelled.append(name)

    async def _lines(self, lines: list[str]) -> AsyncIterator[str]:
        for line in lines:
            await asyncio.sleep(0)
            yield line

    def stream_build_log(self, name: str) -> AsyncIterator[str]:
        return self._lines(self.build_log)

    async def list_pods(self, label_selector: str) -> list[dict[str, Any]]:
        selector = _parse_selector(label_selector)
        return [
            copy.deepcopy(pod)
            for pod in self.pods
            if all((pod["metadata"].get("labels") or {}).get(k) == v for k, v in selector.items())
        ]

    def stream_pod_log(self, pod_name: str, container: str) -> AsyncIterator[str]:
        return self._lines(self.pod_log)

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture(autouse=True)
def structlog_info_level() -> Iterator[None]:
    """CLIと同じくinfo未満のログを出力しない。"""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
    yield
    structlog.reset_defaults()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def deployer_config() -> DeployerConfig:
    """テスト用DeployerConfig。"""
    return DeployerConfig(
        server="https://api.example.com:6443",
        token=SecretStr("sha256~secret-token"),
        namespace=NAMESPACE,
        build_timeout=60,
        rollout_timeout=30,
        route_timeout=10,
        poll_interval=1.0,
        retry_initial_backoff=0.01,
        retry_max_backoff=0.1,
    )


@pytest.fixture
def connections() -> list[ConnectionConfig]:
    """client_factoryに渡された接続設定の記録。"""
    return []


@pytest.fixture
def orchestrator(
    deployer_config: DeployerConfig,
    fake_cluster: FakeCluster,
    fake_clock: FakeClock,
    connections: list[ConnectionConfig],
) -> Orchestrator:
    """FakeClusterに接続するOrchestrator。"""

    def factory(connection: ConnectionConfig) -> FakeCluster:
        connections.append(connection)
        return fake_cluster

    return Orchestrator(deployer_config, client_factory=factory, clock=fake_clock)


CSPROJ = """<Project Sdk="Microsoft.NET.Sdk.Web">
  <PropertyGroup>
    <TargetFramework>net8.0</TargetFramework>
    <AssemblyName>Web.App</AssemblyName>
  </PropertyGroup>
</Project>
"""


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """.NETプロジェクトを含むGit作業ディレクトリ。"""
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    project_dir = root / "src" / "Web"
    project_dir.mkdir(parents=True)
    (project_dir / "Web.csproj").write_text(CSPROJ, encoding="utf-8")
    (project_dir / "Program.cs").write_text('Console.WriteLine("hello");\n', encoding="utf-8")
    (project_dir / "bin" / "Debug").mkdir(parents=True)
    (project_dir / "bin" / "Debug" / "Web.dll").write_bytes(b"\x00")
    (project_dir / "obj").mkdir()
    (project_dir / "obj" / "project.assets.json").write_text("{}", encoding="utf-8")
    return root


@pytest.fixture
def project() -> ProjectInfo:
    return ProjectInfo(runtime_version="net8.0", assembly_name="Web.App")


@pytest.fixture
def make_request(source_dir: Path, project: ProjectInfo) -> Callable[..., DeployRequest]:
    """DeployRequestを作成する関数。"""

    def make(**overrides: Any) -> DeployRequest:
        values: dict[str, Any] = {
            "project": project,
            "source_dir": source_dir / "src" / "Web",
            "project_file": source_dir / "src" / "Web" / "Web.csproj",
        }
        values.update(overrides)
        return DeployRequest(**values)

    return make
