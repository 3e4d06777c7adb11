"""オーケストレータが必要とするクラスタ操作のインターフェース。

具体的なクライアント実装（kubernetes動的クライアント、テスト用フェイク等）は
このプロトコルを満たせば差し替えられる。HTTPエラーは実装側で
shiftdeploy.models.errors の型付き例外に変換すること:

    404 → get は None、delete は False
    409 → ApplyConflictError
    5xx・接続障害 → TransientApiError
    その他の4xx → PermissionOrRequestError
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from shiftdeploy.models.project import ConnectionConfig
from shiftdeploy.models.resources import ResourceKind


class ClusterClient(Protocol):
    """1つの名前空間に対するクラスタ操作。"""

    @property
    def namespace(self) -> str: ...

    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None: ...

    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]: ...

    async def patch(self, kind: ResourceKind, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, kind: ResourceKind, name: str) -> bool: ...

    async def list(self, kind: ResourceKind, label_selector: str) -> list[dict[str, Any]]: ...

    async def start_binary_build(self, build_config: str, archive: bytes) -> dict[str, Any]: ...

    async def cancel_build(self, name: str) -> None: ...

    def stream_build_log(self, name: str) -> AsyncIterator[str]: ...

    async def list_pods(self, label_selector: str) -> list[dict[str, Any]]: ...

    def stream_pod_log(self, pod_name: str, container: str) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[ConnectionConfig], ClusterClient]
