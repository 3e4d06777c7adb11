"""TransientApiErrorに対する指数バックオフ付きリトライ。"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from shiftdeploy.config import MAX_RETRY_ATTEMPTS
from shiftdeploy.models.errors import TransientApiError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """バックオフ設定。試行回数は最大5回に制限する。"""

    def __init__(
        self,
        attempts: int = MAX_RETRY_ATTEMPTS,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.attempts = max(1, min(attempts, MAX_RETRY_ATTEMPTS))
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._sleep = sleep

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """fnを実行し、TransientApiErrorの場合のみリトライする。

        試行回数を使い切った場合は最後のTransientApiErrorを送出する。
        4xx等のその他の例外は即座に送出する。
        """
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TransientApiError),
            before_sleep=_log_retry(operation),
            reraise=True,
            **kwargs,
        )
        return await retrying(fn)


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "transient api error, retrying",
            operation=operation,
            attempt=state.attempt_number,
            error=str(error),
        )

    return before_sleep
