"""コンポーネントのリソース削除。"""

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import ClusterApiError
from shiftdeploy.models.resources import ResourceKind, format_label_selector, ownership_selector
from shiftdeploy.models.state import DeleteResult
from shiftdeploy.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# 削除順（公開側から順に、ビルド成果物を最後に）
TEARDOWN_KINDS = (
    ResourceKind.ROUTE,
    ResourceKind.SERVICE,
    ResourceKind.DEPLOYMENT,
    ResourceKind.CONFIG_MAP,
    ResourceKind.PERSISTENT_VOLUME_CLAIM,
    ResourceKind.BUILD_CONFIG,
    ResourceKind.BUILD,
    ResourceKind.IMAGE_STREAM,
)


class Teardown:
    """所有ラベルに一致するリソースをすべて削除する。

    存在しないリソースはエラーとしない。ある種別の削除に失敗しても
    残りの種別の削除は続け、失敗は種別ごとに結果へ記録する。
    """

    def __init__(self, client: ClusterClient, retry: RetryPolicy | None = None) -> None:
        self.client = client
        self.retry = retry or RetryPolicy()

    async def delete(self, name: str) -> DeleteResult:
        selector = format_label_selector(ownership_selector(name))
        result = DeleteResult(name=name)
        for kind in TEARDOWN_KINDS:
            await self._delete_kind(kind, selector, result)

        logger.info("teardown finished", component=name, removed=result.removed, failures=len(result.failures))
        return result

    async def _delete_kind(self, kind: ResourceKind, selector: str, result: DeleteResult) -> None:
        """1つの種別を削除する。要素ごとに失敗を記録し、残りの要素の削除を続ける。"""
        try:
            items = await self.retry.call(f"list {kind.value}", lambda: self.client.list(kind, selector))
        except ClusterApiError as e:
            self._record_failure(result, kind, str(e))
            return

        for item in items:
            resource = item["metadata"]["name"]
            try:
                deleted = await self.retry.call(
                    f"delete {kind.value}/{resource}", lambda: self.client.delete(kind, resource)
                )
            except ClusterApiError as e:
                self._record_failure(result, kind, f"{resource}: {e}")
                continue
            if deleted:
                result.removed += 1
                result.removed_resources.append(f"{kind.value}/{resource}")

    def _record_failure(self, result: DeleteResult, kind: ResourceKind, message: str) -> None:
        logger.warning("failed to delete resources", component=result.name, kind=kind.value, error=message)
        previous = result.failures.get(kind.value)
        result.failures[kind.value] = f"{previous}; {message}" if previous else message
