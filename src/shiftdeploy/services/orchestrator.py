"""デプロイ・削除パイプライン。

デプロイは以下のステージを順に実行し、いずれかが失敗した時点で中断する。
適用済みのリソースはロールバックせず、そのまま残す。

    validate → read → package → apply → deploy → build → image → rollout → expose
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from shiftdeploy.cluster.client import ClientFactory, ClusterClient
from shiftdeploy.cluster.kubernetes import create_cluster_client
from shiftdeploy.config import DeployerConfig
from shiftdeploy.models.errors import ShiftDeployError, StageFailedError
from shiftdeploy.models.project import ConnectionConfig
from shiftdeploy.models.resources import ResourceKind, container_image
from shiftdeploy.models.state import (
    AppliedResource,
    BuildRun,
    ComponentSummary,
    DeleteResult,
    DeployRequest,
    DeployResult,
    ProgressEvent,
)
from shiftdeploy.services.apply import ApplyEngine
from shiftdeploy.services.build import BuildDriver, find_context_directory, startup_project
from shiftdeploy.services.desired_state import (
    LiveState,
    build_desired_state,
    default_name,
    mount_resource_name,
    validate_name,
    validate_request,
)
from shiftdeploy.services.exposure import ExposureResolver
from shiftdeploy.services.inventory import Inventory
from shiftdeploy.services.logs import LogFollower, LogSink
from shiftdeploy.services.polling import Clock, SystemClock
from shiftdeploy.services.retry import RetryPolicy
from shiftdeploy.services.rollout import RolloutWatcher
from shiftdeploy.services.teardown import Teardown

logger = structlog.get_logger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


class Orchestrator:
    """1つのコンポーネントのデプロイ・削除を実行する。"""

    def __init__(
        self,
        config: DeployerConfig,
        client_factory: ClientFactory = create_cluster_client,
        clock: Clock | None = None,
        progress: ProgressSink | None = None,
        log_sink: LogSink | None = None,
    ) -> None:
        self.config = config
        self.client_factory = client_factory
        self.clock = clock or SystemClock()
        self.progress = progress
        self.log_sink = log_sink

    def _retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.config.retry_attempts,
            initial_backoff=self.config.retry_initial_backoff,
            max_backoff=self.config.retry_max_backoff,
            sleep=self.clock.sleep,
        )

    def _emit(self, stage: str, component: str, message: str) -> None:
        # 進捗の通知先がある場合、同じ内容をログに重ねて出さない
        if self.progress is None:
            logger.info(message, stage=stage, component=component)
            return
        logger.debug(message, stage=stage, component=component)
        self.progress(ProgressEvent(stage=stage, message=message, component=component))

    @contextmanager
    def _stage(self, stage: str, component: str) -> Iterator[None]:
        """ステージ内で発生したShiftDeployErrorをStageFailedErrorに包む。"""
        try:
            yield
        except StageFailedError:
            raise
        except ShiftDeployError as e:
            # 失敗の報告は呼び出し側（CLI・MCPツール）が1回だけ行う
            logger.debug("stage failed", stage=stage, component=component, error=str(e), error_type=type(e).__name__)
            raise StageFailedError(stage, component, e) from e

    async def deploy(self, request: DeployRequest, connection: ConnectionConfig | None = None) -> DeployResult:
        """コンポーネントをデプロイする。

        Args:
            request: デプロイの入力。
            connection: 接続設定。省略時は設定から解決する。

        Returns:
            デプロイ結果（イメージ・URL・適用したリソース・ロールアウト状態）。

        Raises:
            StageFailedError: いずれかのステージが失敗した場合。causeに元の例外を保持する。
        """
        component = request.name or default_name(request.project.assembly_name)
        with self._stage("validate", component):
            component, _runtime = validate_request(request)

        client = self.client_factory(connection or self.config.connection())
        follower = LogFollower(client, self.log_sink, self.clock, self.config.poll_interval)
        try:
            return await self._deploy(client, follower, request, component)
        finally:
            await follower.stop()
            await client.close()

    async def _deploy(
        self, client: ClusterClient, follower: LogFollower, request: DeployRequest, name: str
    ) -> DeployResult:
        retry = self._retry_policy()
        apply = ApplyEngine(client, retry)
        builder = BuildDriver(client, self.clock, self.config.poll_interval, retry)

        with self._stage("read", name):
            self._emit("read", name, f"Reading the current state of '{name}'")
            live = await self._read_live(client, retry, request, name)

        with self._stage("validate", name):
            desired = build_desired_state(request, client.namespace, live)

        archive = b""
        if request.build:
            with self._stage("package", name):
                archive = await builder.package(*self._build_source(request))
                self._emit("package", name, f"Packaged {len(archive)} bytes of source")

        applied: list[AppliedResource] = []
        with self._stage("apply", name):
            self._emit("apply", name, "Updating resources")
            applied.extend(await apply.apply_all(desired.pre_deployment_specs()))

        with self._stage("deploy", name):
            deployment = await apply.apply(desired.deployment)
            applied.append(deployment)
            self._emit("deploy", name, f"Deployment '{name}' {deployment.action}")

        image = container_image(deployment.object)
        if request.build:
            with self._stage("build", name):
                run = await builder.run(
                    desired.build_config.name,
                    archive,
                    request.build_timeout or self.config.build_timeout,
                    on_started=self._on_build_started(name, follower if request.follow else None),
                    on_phase=self._on_build_phase(name),
                )
                image = run.output_image

            with self._stage("image", name):
                updated = desired.deployment.model_copy(update={"image": image, "live": deployment.object})
                deployment = await apply.apply(updated)
                applied.append(deployment)
                self._emit("image", name, f"Deployment image set to '{image}'")

        if request.follow:
            follower.follow_pods(name)

        with self._stage("rollout", name):
            self._emit("rollout", name, "Waiting for the deployment to become available")
            rollout = await RolloutWatcher(client, self.clock, self.config.poll_interval, retry).wait_for_rollout(
                name, deployment.generation, request.rollout_timeout or self.config.rollout_timeout
            )

        url = None
        if desired.route is not None:
            with self._stage("expose", name):
                resolver = ExposureResolver(client, apply, self.clock, self.config.poll_interval)
                route = await resolver.ensure_route(desired.route, request.route_timeout or self.config.route_timeout)
                url = route.url
                self._emit("expose", name, f"The application is exposed at '{url}'")

        return DeployResult(
            name=name,
            namespace=client.namespace,
            image=image,
            url=url,
            applied=applied,
            rollout=rollout,
        )

    async def _read_live(
        self, client: ClusterClient, retry: RetryPolicy, request: DeployRequest, name: str
    ) -> LiveState:
        """前回のデプロイで適用済みのリソースを読み込む。"""

        async def read(kind: ResourceKind, resource: str) -> dict[str, Any] | None:
            return await retry.call(f"read {kind.value}/{resource}", lambda: client.get(kind, resource))

        live = LiveState(
            deployment=await read(ResourceKind.DEPLOYMENT, name),
            service=await read(ResourceKind.SERVICE, name),
            route=await read(ResourceKind.ROUTE, name),
        )
        for storage in request.project.volume_claims:
            resource = mount_resource_name(name, storage.name)
            claim = await read(ResourceKind.PERSISTENT_VOLUME_CLAIM, resource)
            if claim is not None:
                live.volume_claims[resource] = claim
        for config_map in request.project.config_maps:
            resource = mount_resource_name(name, config_map.name)
            existing = await read(ResourceKind.CONFIG_MAP, resource)
            if existing is not None:
                live.config_maps[resource] = existing
        return live

    def _build_source(self, request: DeployRequest) -> tuple[Path, dict[str, str]]:
        """ビルドのコンテキストディレクトリとビルド環境変数を決める。"""
        context_dir = find_context_directory(request.source_dir)
        environment = dict(request.project.build_environment)
        if request.project_file is not None:
            environment["DOTNET_STARTUP_PROJECT"] = startup_project(context_dir, request.project_file)
        return context_dir, environment

    def _on_build_started(self, name: str, follower: LogFollower | None) -> Callable[[BuildRun], None]:
        def on_started(run: BuildRun) -> None:
            self._emit("build", name, f"Build '{run.name}' started")
            if follower is not None and run.name:
                follower.follow_build(run.name)

        return on_started

    def _on_build_phase(self, name: str) -> Callable[[BuildRun], None]:
        def on_phase(run: BuildRun) -> None:
            self._emit("build", name, f"Build '{run.name}' is {run.phase.value}")

        return on_phase

    async def delete(self, name: str, connection: ConnectionConfig | None = None) -> DeleteResult:
        """コンポーネントの全リソースを削除する。

        Raises:
            StageFailedError: 名前が不正な場合。
        """
        with self._stage("validate", name):
            validate_name(name)

        client = self.client_factory(connection or self.config.connection())
        try:
            self._emit("delete", name, f"Removing resources of '{name}'")
            result = await Teardown(client, self._retry_policy()).delete(name)
        finally:
            await client.close()
        self._emit("delete", name, f"Removed {result.removed} resources")
        return result

    async def list_components(self, connection: ConnectionConfig | None = None) -> list[ComponentSummary]:
        """名前空間内でshiftdeployが管理するコンポーネントを返す。"""
        client = self.client_factory(connection or self.config.connection())
        try:
            return await Inventory(client, self._retry_policy()).list_components()
        finally:
            await client.close()
