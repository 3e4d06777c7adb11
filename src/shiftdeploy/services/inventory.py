"""名前空間内のコンポーネントの列挙。"""

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.resources import (
    ResourceKind,
    ResourceLabels,
    container_image,
    format_label_selector,
    managed_selector,
    route_url,
)
from shiftdeploy.models.state import ComponentSummary
from shiftdeploy.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# コンポーネントの存在を示すリソース種別（デプロイ前にビルドだけ作られた場合も拾う）
INVENTORY_KINDS = (ResourceKind.DEPLOYMENT, ResourceKind.BUILD_CONFIG, ResourceKind.ROUTE)


class Inventory:
    """管理ラベルを持つリソースをコンポーネント名でまとめる。"""

    def __init__(self, client: ClusterClient, retry: RetryPolicy | None = None) -> None:
        self.client = client
        self.retry = retry or RetryPolicy()

    async def list_components(self) -> list[ComponentSummary]:
        selector = format_label_selector(managed_selector())
        components: dict[str, ComponentSummary] = {}
        for kind in INVENTORY_KINDS:
            items = await self.retry.call(f"list {kind.value}", lambda: self.client.list(kind, selector))
            for item in items:
                metadata = item.get("metadata") or {}
                labels = metadata.get("labels") or {}
                name = labels.get(ResourceLabels.NAME)
                if not name:
                    continue
                summary = components.setdefault(
                    name, ComponentSummary(name=name, part_of=labels.get(ResourceLabels.PART_OF))
                )
                if kind.value not in summary.kinds:
                    summary.kinds.append(kind.value)
                if metadata.get("name") != name:
                    continue
                if kind == ResourceKind.DEPLOYMENT:
                    summary.image = container_image(item)
                elif kind == ResourceKind.ROUTE:
                    summary.url = route_url(item)

        logger.debug("components listed", count=len(components))
        return sorted(components.values(), key=lambda c: c.name)
