"""Apply Engineのユニットテスト。"""

import pytest
from conftest import FakeClock, FakeCluster

from shiftdeploy.models.errors import (
    ApplyConflictError,
    InternalConsistencyError,
    PermissionOrRequestError,
    ResourceNotFoundError,
    ResourceOwnershipError,
    TransientApiError,
)
from shiftdeploy.models.project import ContainerPort
from shiftdeploy.models.resources import (
    DeploymentSpec,
    ImageStreamSpec,
    ImageStreamTagSpec,
    ResourceKind,
    SecretReferenceSpec,
    ServiceSpec,
    component_labels,
    ownership_selector,
)
from shiftdeploy.services.apply import ApplyEngine, merge_desired
from shiftdeploy.services.retry import RetryPolicy


def _service(**overrides: object) -> ServiceSpec:
    values: dict[str, object] = {
        "name": "web",
        "namespace": "demo",
        "labels": component_labels("web", "web"),
        "owner_labels": ownership_selector("web"),
        "selector": {"app": "web"},
        "ports": [ContainerPort(name="http", port=8080, is_service_port=True)],
    }
    values.update(overrides)
    return ServiceSpec(**values)  # type: ignore[arg-type]


def _deployment(**overrides: object) -> DeploymentSpec:
    values: dict[str, object] = {
        "name": "web",
        "namespace": "demo",
        "labels": component_labels("web", "web"),
        "owner_labels": ownership_selector("web"),
        "selector": {"app": "web"},
        "image": "web:latest",
    }
    values.update(overrides)
    return DeploymentSpec(**values)  # type: ignore[arg-type]


@pytest.fixture
def engine(fake_cluster: FakeCluster, fake_clock: FakeClock) -> ApplyEngine:
    return ApplyEngine(fake_cluster, RetryPolicy(initial_backoff=0.01, max_backoff=0.01, sleep=fake_clock.sleep))


class TestMergeDesired:
    def test_preserves_unmanaged_fields(self) -> None:
        live = {"metadata": {"name": "web", "uid": "1", "labels": {"team": "a"}}, "spec": {"clusterIP": "10.0.0.1"}}
        desired = {"metadata": {"name": "web", "labels": {"app": "web"}}, "spec": {"type": "ClusterIP"}}
        merged = merge_desired(live, desired)
        assert merged == {
            "metadata": {"name": "web", "uid": "1", "labels": {"team": "a", "app": "web"}},
            "spec": {"clusterIP": "10.0.0.1", "type": "ClusterIP"},
        }
        assert live["spec"] == {"clusterIP": "10.0.0.1"}

    def test_named_lists_merge_by_name(self) -> None:
        live = {"containers": [{"name": "app", "image": "old", "terminationMessagePath": "/dev/log"}]}
        desired = {"containers": [{"name": "app", "env": [{"name": "A", "value": "1"}]}]}
        merged = merge_desired(live, desired)
        assert merged["containers"] == [
            {"name": "app", "image": "old", "terminationMessagePath": "/dev/log", "env": [{"name": "A", "value": "1"}]}
        ]

    def test_named_list_drops_removed_items(self) -> None:
        live = {"env": [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}]}
        merged = merge_desired(live, {"env": [{"name": "B", "value": "3"}]})
        assert merged["env"] == [{"name": "B", "value": "3"}]

    def test_image_stream_tags_are_preserved(self) -> None:
        live = {"spec": {"tags": [{"name": "6.0", "from": {"name": "dotnet-60"}}]}}
        merged = merge_desired(live, {"spec": {"tags": [{"name": "8.0", "from": {"name": "dotnet-80"}}]}})
        assert [t["name"] for t in merged["spec"]["tags"]] == ["6.0", "8.0"]

    def test_none_removes_live_value(self) -> None:
        merged = merge_desired({"image": "old", "command": ["run"]}, {"command": None})
        assert merged == {"image": "old"}

    def test_recreate_drops_rolling_update(self) -> None:
        live = {"spec": {"strategy": {"type": "RollingUpdate", "rollingUpdate": {"maxSurge": "25%"}}}}
        merged = merge_desired(live, {"spec": {"strategy": {"type": "Recreate", "rollingUpdate": None}}})
        assert merged == {"spec": {"strategy": {"type": "Recreate"}}}

    def test_plain_lists_are_replaced(self) -> None:
        merged = merge_desired({"args": ["a", "b"]}, {"args": ["c"]})
        assert merged == {"args": ["c"]}


class TestApply:
    async def test_create_when_absent(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        result = await engine.apply(_service())
        assert result.action == "created"
        assert fake_cluster.mutation_count("create", ResourceKind.SERVICE) == 1
        assert fake_cluster.find(ResourceKind.SERVICE, "web") is not None

    async def test_second_apply_is_noop(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        """同じ望ましい状態を2回適用しても、2回目はクラスタを変更しない。"""
        await engine.apply(_service())
        before = len(fake_cluster.mutations)
        result = await engine.apply(_service())
        assert result.action == "unchanged"
        assert len(fake_cluster.mutations) == before

    async def test_update_merges_into_live(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        await engine.apply(_service())
        fake_cluster.objects[(ResourceKind.SERVICE, "web")]["spec"]["clusterIP"] = "10.0.0.1"
        result = await engine.apply(_service(ports=[ContainerPort(name="http", port=9090, is_service_port=True)]))
        assert result.action == "updated"
        live = fake_cluster.find(ResourceKind.SERVICE, "web")
        assert live is not None
        assert live["spec"]["clusterIP"] == "10.0.0.1"
        assert live["spec"]["ports"][0]["port"] == 9090
        assert fake_cluster.mutation_count("delete") == 0

    async def test_uses_observed_live_object(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        created = (await engine.apply(_service())).object
        fake_cluster.fail("get", ResourceKind.SERVICE, PermissionOrRequestError("unexpected read", status=403))
        result = await engine.apply(_service(live=created))
        assert result.action == "unchanged"

    async def test_stale_live_object_is_reread(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        """古い観測値で更新すると衝突し、再読み込みして適用する。"""
        created = (await engine.apply(_service())).object
        await engine.apply(_service(annotations={"note": "x"}))
        result = await engine.apply(_service(annotations={"note": "y"}, live=created))
        assert result.action == "updated"
        assert result.object["metadata"]["annotations"] == {"note": "y"}

    async def test_refuses_unowned_resource(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        fake_cluster.put(ResourceKind.SERVICE, {"metadata": {"name": "web", "labels": {"owner": "someone"}}})
        with pytest.raises(ResourceOwnershipError):
            await engine.apply(_service())
        assert fake_cluster.mutations == []

    async def test_conflict_retried_once(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        await engine.apply(_service())
        fake_cluster.fail("patch", ResourceKind.SERVICE, ApplyConflictError("Service", "web"))
        result = await engine.apply(_service(annotations={"note": "x"}))
        assert result.action == "updated"

    async def test_second_conflict_surfaces(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        await engine.apply(_service())
        fake_cluster.fail(
            "patch", ResourceKind.SERVICE, ApplyConflictError("Service", "web"), ApplyConflictError("Service", "web")
        )
        with pytest.raises(ApplyConflictError, match="kept changing"):
            await engine.apply(_service(annotations={"note": "x"}))

    async def test_create_race_reapplies_as_update(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        """作成時のAlreadyExistsは再読み込みして更新として扱う。"""
        original_create = fake_cluster.create

        async def racing_create(kind: ResourceKind, body: dict) -> dict:
            await original_create(kind, body)
            raise ApplyConflictError(kind.value, body["metadata"]["name"], "already exists")

        fake_cluster.create = racing_create  # type: ignore[method-assign]
        result = await engine.apply(_service())
        assert result.action == "unchanged"

    async def test_replaced_object_is_internal_error(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        await engine.apply(_service())
        original_patch = fake_cluster.patch

        async def replacing_patch(kind: ResourceKind, name: str, body: dict) -> dict:
            fake_cluster.objects[(kind, name)]["metadata"]["uid"] = "replaced"
            fake_cluster.patch = original_patch  # type: ignore[method-assign]
            raise ApplyConflictError(kind.value, name)

        fake_cluster.patch = replacing_patch  # type: ignore[method-assign]
        with pytest.raises(InternalConsistencyError, match="replaced"):
            await engine.apply(_service(annotations={"note": "x"}))

    async def test_lost_labels_is_internal_error(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        await engine.apply(_service())
        original_patch = fake_cluster.patch

        async def relabeling_patch(kind: ResourceKind, name: str, body: dict) -> dict:
            fake_cluster.objects[(kind, name)]["metadata"]["labels"] = {}
            fake_cluster.patch = original_patch  # type: ignore[method-assign]
            raise ApplyConflictError(kind.value, name)

        fake_cluster.patch = relabeling_patch  # type: ignore[method-assign]
        with pytest.raises(InternalConsistencyError, match="ownership labels"):
            await engine.apply(_service(annotations={"note": "x"}))

    async def test_transient_errors_are_retried(
        self, engine: ApplyEngine, fake_cluster: FakeCluster, fake_clock: FakeClock
    ) -> None:
        fake_cluster.fail("get", ResourceKind.SERVICE, TransientApiError("503"), TransientApiError("503"))
        result = await engine.apply(_service())
        assert result.action == "created"
        assert len(fake_clock.sleeps) == 2

    async def test_transient_errors_exhaust_after_five_attempts(
        self, engine: ApplyEngine, fake_cluster: FakeCluster
    ) -> None:
        fake_cluster.fail("get", ResourceKind.SERVICE, *[TransientApiError("503") for _ in range(6)])
        with pytest.raises(TransientApiError):
            await engine.apply(_service())
        assert len(fake_cluster.failures[("get", ResourceKind.SERVICE)]) == 1

    async def test_request_errors_are_not_retried(
        self, engine: ApplyEngine, fake_cluster: FakeCluster, fake_clock: FakeClock
    ) -> None:
        fake_cluster.fail("create", ResourceKind.SERVICE, PermissionOrRequestError("forbidden", status=403))
        with pytest.raises(PermissionOrRequestError):
            await engine.apply(_service())
        assert fake_clock.sleeps == []

    async def test_shared_runtime_stream_keeps_other_tags(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        spec = ImageStreamSpec(
            name="dotnet",
            namespace="demo",
            labels={"app.kubernetes.io/managed-by": "shiftdeploy"},
            owner_labels={"app.kubernetes.io/managed-by": "shiftdeploy"},
            tags=[ImageStreamTagSpec(name="8.0", from_image="registry/dotnet-80:latest")],
        )
        await engine.apply(spec)
        other = spec.model_copy(update={"tags": [ImageStreamTagSpec(name="6.0", from_image="registry/dotnet-60")]})
        result = await engine.apply(other)
        assert result.action == "updated"
        assert [t["name"] for t in result.object["spec"]["tags"]] == ["8.0", "6.0"]


    async def test_strategy_switch_to_recreate(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        """RollingUpdateからRecreateへの切り替えではrollingUpdateを削除する。"""
        await engine.apply(_deployment())
        live = fake_cluster.objects[(ResourceKind.DEPLOYMENT, "web")]
        rolling = {"maxSurge": "25%", "maxUnavailable": "25%"}
        live["spec"]["strategy"] = {"type": "RollingUpdate", "rollingUpdate": rolling}

        result = await engine.apply(_deployment(strategy="Recreate"))

        assert result.action == "updated"
        assert result.object["spec"]["strategy"] == {"type": "Recreate"}
        assert (await engine.apply(_deployment(strategy="Recreate"))).action == "unchanged"

    async def test_create_omits_null_fields(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        result = await engine.apply(_deployment(strategy="Recreate"))
        assert result.action == "created"
        assert result.object["spec"]["strategy"] == {"type": "Recreate"}


class TestSecretReference:
    async def test_existing_secret_is_verified(self, engine: ApplyEngine, fake_cluster: FakeCluster) -> None:
        fake_cluster.put(ResourceKind.SECRET, {"metadata": {"name": "nuget"}})
        result = await engine.apply(SecretReferenceSpec(name="nuget", namespace="demo"))
        assert result.action == "verified"
        assert fake_cluster.mutations == []

    async def test_missing_secret(self, engine: ApplyEngine) -> None:
        with pytest.raises(ResourceNotFoundError):
            await engine.apply(SecretReferenceSpec(name="nuget", namespace="demo"))
