"""ルートの作成とホスト割り当ての待機。"""

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import InternalConsistencyError, RouteTimeoutError
from shiftdeploy.models.resources import ResourceKind, RouteSpec, route_host, route_url
from shiftdeploy.models.state import RouteState
from shiftdeploy.services.apply import ApplyEngine
from shiftdeploy.services.polling import Clock, Deadline, SystemClock

logger = structlog.get_logger(__name__)


class ExposureResolver:
    """RouteSpecを適用し、プラットフォームがホストを割り当てるまで待つ。"""

    def __init__(
        self,
        client: ClusterClient,
        apply: ApplyEngine,
        clock: Clock | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.client = client
        self.apply = apply
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval

    async def ensure_route(self, route: RouteSpec | None, timeout: float) -> RouteState:
        """ルートを適用し、ホストが割り当てられたRouteStateを返す。

        Raises:
            InternalConsistencyError: 公開対象のルート（サービスポート）がない場合。
            RouteTimeoutError: 期限内にホストが割り当てられなかった場合。
        """
        if route is None or not route.target_port:
            raise InternalConsistencyError("The component has no service port to expose")

        applied = await self.apply.apply(route)
        deadline = Deadline(self.clock, timeout)
        current = applied.object
        while True:
            state = RouteState(name=route.name, host=route_host(current), url=route_url(current))
            if state.ready:
                logger.info("route ready", route=route.name, url=state.url)
                return state

            if deadline.expired:
                raise RouteTimeoutError(route.name, timeout)
            await deadline.sleep(self.poll_interval)
            fetched = await self.apply.retry.call(
                f"get route {route.name}", lambda: self.client.get(ResourceKind.ROUTE, route.name)
            )
            if fetched is None:
                raise InternalConsistencyError(f"Route '{route.name}' was deleted while waiting for a host")
            current = fetched
