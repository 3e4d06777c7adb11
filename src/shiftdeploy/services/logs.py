"""ビルドログ・Podログの追従。

ログ追従はパイプライン本体と並行して動くバックグラウンドタスクで、
パイプラインの終了時（成功・失敗・キャンセルのいずれでも）に取り消される。
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import ShiftDeployError
from shiftdeploy.models.resources import CONTAINER_NAME, format_label_selector, selector_labels
from shiftdeploy.services.polling import Clock, SystemClock

logger = structlog.get_logger(__name__)

MASKED = "<<MASKED>>"

# (source, line) を受け取る出力先
LogSink = Callable[[str, str], None]


class BuildLogMasker:
    """ビルドログのENV命令を伏せ字にする。

    "STEP n: ENV ..." の行とその継続行は機密情報を含みうるため出力しない。
    空行は取り除く。
    """

    def __init__(self) -> None:
        self._masking = False

    def feed(self, line: str) -> str | None:
        if not line.strip(" "):
            return None
        if line[:5].upper() == "STEP " and ": " in line:
            prefix, command = line.split(": ", 1)
            self._masking = command.startswith("ENV")
            return f"{prefix}: ENV {MASKED}" if self._masking else line
        if self._masking:
            return MASKED
        return line


def _default_sink(source: str, line: str) -> None:
    logger.info(line, source=source)


def _newest_running_pod(pods: list[dict[str, Any]]) -> str | None:
    running = [p for p in pods if (p.get("status") or {}).get("phase") == "Running"]
    if not running:
        return None
    running.sort(key=lambda p: str((p.get("metadata") or {}).get("creationTimestamp") or ""))
    return str(running[-1]["metadata"]["name"])


class LogFollower:
    """ログ追従タスクを管理する。"""

    def __init__(
        self,
        client: ClusterClient,
        sink: LogSink | None = None,
        clock: Clock | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.client = client
        self.sink = sink or _default_sink
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self._tasks: list[asyncio.Task[None]] = []

    def follow_build(self, build_name: str) -> asyncio.Task[None]:
        """ビルドログの追従を開始する。"""
        return self._spawn(self._follow_build(build_name), f"build-log-{build_name}")

    def follow_pods(self, name: str) -> asyncio.Task[None]:
        """コンポーネントのPodログの追従を開始する。"""
        return self._spawn(self._follow_pods(name), f"pod-log-{name}")

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def stop(self) -> None:
        """実行中の追従タスクをすべて取り消し、終了を待つ。"""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _emit(self, source: str, lines: AsyncIterator[str], masker: BuildLogMasker | None = None) -> None:
        async for line in lines:
            if masker is not None:
                masked = masker.feed(line)
                if masked is None:
                    continue
                line = masked
            self.sink(source, line)

    async def _follow_build(self, build_name: str) -> None:
        try:
            await self._emit(build_name, self.client.stream_build_log(build_name), BuildLogMasker())
        except ShiftDeployError as e:
            # ログ追従の失敗はパイプラインを止めない
            logger.warning("build log unavailable", build=build_name, error=str(e))

    async def _follow_pods(self, name: str) -> None:
        selector = format_label_selector(selector_labels(name))
        try:
            pod = None
            while pod is None:
                pod = _newest_running_pod(await self.client.list_pods(selector))
                if pod is None:
                    await self.clock.sleep(self.poll_interval)
            await self._emit(pod, self.client.stream_pod_log(pod, CONTAINER_NAME))
        except ShiftDeployError as e:
            logger.warning("pod log unavailable", component=name, error=str(e))
