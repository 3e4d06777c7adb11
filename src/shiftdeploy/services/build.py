"""バイナリビルドの実行と追跡。"""

import asyncio
import fnmatch
import io
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import (
    BuildFailedError,
    BuildTimeoutError,
    ClusterApiError,
    InternalConsistencyError,
    SourceArchiveError,
)
from shiftdeploy.models.resources import ResourceKind
from shiftdeploy.models.state import BuildPhase, BuildRun
from shiftdeploy.services.polling import Clock, Deadline, SystemClock
from shiftdeploy.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# アーカイブから除外するディレクトリ
_EXCLUDED_DIRS = frozenset({".git", "bin", "Bin", "obj", "Obj"})
_IGNORE_FILE = ".s2iignore"
_S2I_ENVIRONMENT = ".s2i/environment"


def find_context_directory(project_dir: Path) -> Path:
    """ビルドに送るソースのルートディレクトリを決める。

    .git を含む最も近い祖先ディレクトリを使い、見つからなければプロジェクトディレクトリを使う。
    """
    project_dir = project_dir.resolve()
    for candidate in (project_dir, *project_dir.parents):
        if (candidate / ".git").exists():
            return candidate
    return project_dir


def startup_project(context_dir: Path, project_file: Path) -> str:
    """コンテキストディレクトリから見たプロジェクトファイルのパス（/区切り）。

    Raises:
        SourceArchiveError: プロジェクトファイルがコンテキストディレクトリの外にある場合。
    """
    try:
        return project_file.resolve().relative_to(context_dir.resolve()).as_posix()
    except ValueError as e:
        raise SourceArchiveError(str(context_dir), f"'{project_file}' is outside of the source directory") from e


def _read_ignore_patterns(context_dir: Path) -> list[str]:
    ignore_file = context_dir / _IGNORE_FILE
    if not ignore_file.is_file():
        return []
    patterns = []
    for line in ignore_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line.rstrip("/"))
    return patterns


def _is_ignored(rel: Path, patterns: list[str]) -> bool:
    if any(part in _EXCLUDED_DIRS for part in rel.parts[:-1]):
        return True
    # パターンはファイル自身とその親ディレクトリのいずれかに一致すれば除外
    candidates = [Path(*rel.parts[: i + 1]).as_posix() for i in range(len(rel.parts))]
    return any(fnmatch.fnmatch(candidate, pattern) for candidate in candidates for pattern in patterns)


def _s2i_environment(context_dir: Path, environment: dict[str, str]) -> bytes:
    existing = context_dir / _S2I_ENVIRONMENT
    content = existing.read_text(encoding="utf-8") if existing.is_file() else ""
    if content and not content.endswith("\n"):
        content += "\n"
    content += "".join(f"{key}={value}\n" for key, value in environment.items())
    return content.encode("utf-8")


def create_source_archive(context_dir: Path, build_environment: dict[str, str]) -> bytes:
    """ソースディレクトリを tar.gz にしてバイト列で返す。

    .git/bin/obj ディレクトリと .s2iignore のパターンに一致するファイルを除外し、
    ビルド環境変数を追記した .s2i/environment を生成して含める。

    Raises:
        SourceArchiveError: ソースの読み込みに失敗した場合。
    """
    buf = io.BytesIO()
    try:
        patterns = _read_ignore_patterns(context_dir)
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for file_path in sorted(context_dir.rglob("*")):
                if not file_path.is_file():
                    continue
                rel = file_path.relative_to(context_dir)
                if rel.as_posix() == _S2I_ENVIRONMENT or _is_ignored(rel, patterns):
                    continue
                tar.add(str(file_path), arcname=rel.as_posix(), recursive=False)

            environment = _s2i_environment(context_dir, build_environment)
            info = tarfile.TarInfo(_S2I_ENVIRONMENT)
            info.size = len(environment)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(environment))
    except OSError as e:
        raise SourceArchiveError(str(context_dir), str(e)) from e
    return buf.getvalue()


def output_image_reference(build: dict[str, Any]) -> str | None:
    """完了したビルドの出力イメージを "<repository>@<digest>" 形式で返す。"""
    status = build.get("status") or {}
    digest = ((status.get("output") or {}).get("to") or {}).get("imageDigest")
    reference = status.get("outputDockerImageReference")
    if not digest or not reference:
        return None
    repository = reference.split("@", 1)[0]
    # レジストリのポート番号ではなく、最後のパス要素のタグだけを取り除く
    slash = repository.rfind("/")
    colon = repository.rfind(":")
    if colon > slash:
        repository = repository[:colon]
    return f"{repository}@{digest}"


def _phase(build: dict[str, Any]) -> BuildPhase:
    value = (build.get("status") or {}).get("phase") or BuildPhase.NEW.value
    try:
        return BuildPhase(value)
    except ValueError:
        return BuildPhase.RUNNING


class BuildDriver:
    """バイナリビルドを開始し、終端フェーズまで追跡する。"""

    def __init__(
        self,
        client: ClusterClient,
        clock: Clock | None = None,
        poll_interval: float = 1.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.retry = retry or RetryPolicy()

    async def package(self, context_dir: Path, build_environment: dict[str, str]) -> bytes:
        """ソースアーカイブを作成する（ファイルI/Oはスレッドで実行）。"""
        return await asyncio.to_thread(create_source_archive, context_dir, build_environment)

    async def start(self, build_config: str, archive: bytes) -> BuildRun:
        """アーカイブをアップロードしてビルドを開始する。

        アップロードは冪等でないためリトライしない。
        """
        run = BuildRun(build_config=build_config, phase=BuildPhase.UPLOADING, archive_size=len(archive))
        logger.info("uploading build source", build_config=build_config, size=len(archive))
        build = await self.client.start_binary_build(build_config, archive)
        run.name = (build.get("metadata") or {}).get("name")
        if not run.name:
            raise InternalConsistencyError(f"Starting a build from '{build_config}' did not return a build name")
        run.phase = _phase(build)
        logger.info("build started", build=run.name, phase=run.phase.value)
        return run

    async def wait(
        self,
        run: BuildRun,
        timeout: float,
        on_phase: Callable[[BuildRun], None] | None = None,
    ) -> BuildRun:
        """ビルドが終端フェーズに到達するまでポーリングする。

        Returns:
            Completeに到達し、出力イメージが設定されたBuildRun。

        Raises:
            BuildFailedError: Failed/Error/Cancelledに到達した、またはビルドが消えた場合。
            BuildTimeoutError: 期限内に終端フェーズに到達しなかった場合。
            InternalConsistencyError: Completeだが出力ダイジェストがない場合。
        """
        if run.name is None:
            raise InternalConsistencyError(f"The build from '{run.build_config}' has no name")
        name = run.name
        deadline = Deadline(self.clock, timeout)
        while True:
            build = await self.retry.call(f"get build {name}", lambda: self.client.get(ResourceKind.BUILD, name))
            if build is None:
                raise BuildFailedError(name, "Missing", "BuildNotFound", "The build was deleted while running")

            phase = _phase(build)
            if phase != run.phase:
                run.phase = phase
                logger.info("build phase changed", build=name, phase=phase.value)
                if on_phase is not None:
                    on_phase(run)

            if phase.is_terminal:
                return self._finish(run, name, build)

            if deadline.expired:
                raise BuildTimeoutError(name, timeout, phase.value)
            await deadline.sleep(self.poll_interval)

    def _finish(self, run: BuildRun, name: str, build: dict[str, Any]) -> BuildRun:
        status = build.get("status") or {}
        run.reason = status.get("reason")
        run.message = status.get("message")
        if run.phase != BuildPhase.COMPLETE:
            raise BuildFailedError(name, run.phase.value, run.reason, run.message)
        run.output_image = output_image_reference(build)
        if run.output_image is None:
            raise InternalConsistencyError(f"The build '{name}' completed without an output image digest")
        logger.info("build complete", build=name, image=run.output_image)
        return run

    async def run(
        self,
        build_config: str,
        archive: bytes,
        timeout: float,
        on_started: Callable[[BuildRun], None] | None = None,
        on_phase: Callable[[BuildRun], None] | None = None,
    ) -> BuildRun:
        """ビルドを開始して完了まで待つ。on_startedはアップロード直後、ポーリング開始前に呼ばれる。"""
        run = await self.start(build_config, archive)
        if on_started is not None:
            on_started(run)
        return await self.wait(run, timeout, on_phase)

    async def cancel_remote(self, build_name: str) -> bool:
        """リモートのビルドの取り消しを要求する（ベストエフォート）。"""
        try:
            await self.client.cancel_build(build_name)
        except ClusterApiError as e:
            logger.warning("failed to cancel build", build=build_name, error=str(e))
            return False
        logger.info("build cancellation requested", build=build_name)
        return True
