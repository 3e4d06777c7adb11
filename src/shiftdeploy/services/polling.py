"""ポーリング用の時計と期限。

待機処理はすべて Clock 経由で行い、テストでは時間を進めるだけの
フェイク時計に差し替えられるようにする。
"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """実時間の時計。"""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class Deadline:
    """ステージごとの期限。"""

    def __init__(self, clock: Clock, timeout: float) -> None:
        self._clock = clock
        self.timeout = timeout
        self._expires_at = clock.monotonic() + timeout

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock.monotonic())

    @property
    def expired(self) -> bool:
        return self._clock.monotonic() >= self._expires_at

    async def sleep(self, interval: float) -> None:
        """期限を超えない範囲でinterval秒待機する。"""
        await self._clock.sleep(min(interval, self.remaining))
