"""Teardownのユニットテスト。"""

import pytest
from conftest import FakeClock, FakeCluster

from shiftdeploy.models.errors import PermissionOrRequestError
from shiftdeploy.models.resources import ResourceKind, component_labels
from shiftdeploy.services.retry import RetryPolicy
from shiftdeploy.services.teardown import Teardown


@pytest.fixture
def teardown(fake_cluster: FakeCluster, fake_clock: FakeClock) -> Teardown:
    return Teardown(fake_cluster, RetryPolicy(sleep=fake_clock.sleep))


def _owned(fake_cluster: FakeCluster, kind: ResourceKind, name: str, component: str = "web") -> None:
    fake_cluster.put(kind, {"metadata": {"name": name, "labels": component_labels(component, "shop")}})


class TestTeardown:
    async def test_nothing_to_delete(self, teardown: Teardown) -> None:
        result = await teardown.delete("web")
        assert result.removed == 0
        assert result.success

    async def test_deletes_owned_resources_only(self, teardown: Teardown, fake_cluster: FakeCluster) -> None:
        for kind in (ResourceKind.ROUTE, ResourceKind.SERVICE, ResourceKind.DEPLOYMENT, ResourceKind.IMAGE_STREAM):
            _owned(fake_cluster, kind, "web")
        _owned(fake_cluster, ResourceKind.BUILD_CONFIG, "web-binary")
        _owned(fake_cluster, ResourceKind.BUILD, "web-binary-1")
        _owned(fake_cluster, ResourceKind.BUILD, "web-binary-2")
        _owned(fake_cluster, ResourceKind.SERVICE, "api", component="api")
        fake_cluster.put(ResourceKind.IMAGE_STREAM, {"metadata": {"name": "dotnet", "labels": {}}})

        result = await teardown.delete("web")

        assert result.removed == 7
        assert result.removed_resources[0] == "Route/web"
        assert fake_cluster.find(ResourceKind.SERVICE, "api") is not None
        assert fake_cluster.find(ResourceKind.IMAGE_STREAM, "dotnet") is not None

    async def test_second_delete_is_idempotent(self, teardown: Teardown, fake_cluster: FakeCluster) -> None:
        _owned(fake_cluster, ResourceKind.SERVICE, "web")
        assert (await teardown.delete("web")).removed == 1
        result = await teardown.delete("web")
        assert result.removed == 0
        assert result.success

    async def test_partial_failure_continues(self, teardown: Teardown, fake_cluster: FakeCluster) -> None:
        _owned(fake_cluster, ResourceKind.SERVICE, "web")
        _owned(fake_cluster, ResourceKind.DEPLOYMENT, "web")
        fake_cluster.fail("delete", ResourceKind.SERVICE, PermissionOrRequestError("forbidden", status=403))

        result = await teardown.delete("web")

        assert not result.success
        assert "forbidden" in result.failures["Service"]
        assert result.removed == 1
        assert fake_cluster.find(ResourceKind.DEPLOYMENT, "web") is None

    async def test_failure_within_kind_keeps_other_deletions(
        self, teardown: Teardown, fake_cluster: FakeCluster
    ) -> None:
        """同じ種別の途中で失敗しても、削除済みの要素は結果に数える。"""
        _owned(fake_cluster, ResourceKind.BUILD, "web-binary-1")
        _owned(fake_cluster, ResourceKind.BUILD, "web-binary-2")
        _owned(fake_cluster, ResourceKind.BUILD, "web-binary-3")
        original_delete = fake_cluster.delete

        async def failing_second(kind: ResourceKind, name: str) -> bool:
            if name == "web-binary-2":
                raise PermissionOrRequestError("forbidden", status=403)
            return await original_delete(kind, name)

        fake_cluster.delete = failing_second  # type: ignore[method-assign]
        result = await teardown.delete("web")

        assert result.removed == 2
        assert result.removed_resources == ["Build/web-binary-1", "Build/web-binary-3"]
        assert result.failures == {"Build": "web-binary-2: forbidden"}
        assert [b["metadata"]["name"] for b in fake_cluster.of_kind(ResourceKind.BUILD)] == ["web-binary-2"]

    async def test_list_failure_is_recorded(self, teardown: Teardown, fake_cluster: FakeCluster) -> None:
        _owned(fake_cluster, ResourceKind.SERVICE, "web")
        fake_cluster.fail("list", ResourceKind.ROUTE, PermissionOrRequestError("routes are forbidden", status=403))
        result = await teardown.delete("web")
        assert result.failures == {"Route": "routes are forbidden"}
        assert result.removed_resources == ["Service/web"]

    async def test_already_absent_is_not_an_error(self, teardown: Teardown, fake_cluster: FakeCluster) -> None:
        _owned(fake_cluster, ResourceKind.SERVICE, "web")
        original_delete = fake_cluster.delete

        async def racing_delete(kind: ResourceKind, name: str) -> bool:
            await original_delete(kind, name)
            return await original_delete(kind, name)

        fake_cluster.delete = racing_delete  # type: ignore[method-assign]
        result = await teardown.delete("web")
        assert result.success
        assert result.removed == 0
