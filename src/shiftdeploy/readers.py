"""プロジェクト情報・Git情報の読み込み。"""

import asyncio
import json
import xml.etree.ElementTree as ET
from pathlib import Path

import pydantic
import structlog

from shiftdeploy.models.errors import ValidationError
from shiftdeploy.models.project import GitRepoInfo, ProjectInfo

logger = structlog.get_logger(__name__)

# プロジェクトファイルを補う設定ファイル（ポート・環境変数・リソース等）
PROJECT_SETTINGS_FILE = "shiftdeploy.json"


class ProjectReader:
    """プロジェクトファイル（.csproj）と shiftdeploy.json からProjectInfoを読み込む。

    .csproj からは TargetFramework と AssemblyName を取り出し、
    shiftdeploy.json があればその内容で上書き・補完する。
    """

    def find_project_file(self, path: Path) -> Path:
        """パスからプロジェクトファイルを特定する。

        Raises:
            ValidationError: プロジェクトファイルが見つからない、または複数ある場合。
        """
        if path.is_file():
            return path
        if not path.is_dir():
            raise ValidationError(f"The path '{path}' does not exist.")
        projects = sorted(path.glob("*.csproj"))
        if len(projects) == 1:
            return projects[0]
        if len(projects) > 1:
            raise ValidationError(f"Multiple project files found in '{path}'. Specify the project file to deploy.")
        settings = path / PROJECT_SETTINGS_FILE
        if settings.is_file():
            return settings
        raise ValidationError(f"No project file found in '{path}'.")

    def read(self, path: Path) -> tuple[ProjectInfo, Path]:
        """プロジェクト情報とプロジェクトファイルのパスを返す。

        Raises:
            ValidationError: 読み込み・検証に失敗した場合。
        """
        project_file = self.find_project_file(path)
        data: dict[str, object] = {}
        if project_file.suffix == ".csproj":
            data.update(self._read_csproj(project_file))
        settings = project_file.parent / PROJECT_SETTINGS_FILE
        if settings.is_file():
            data.update(self._read_settings(settings))
        try:
            project = ProjectInfo.model_validate(data)
        except pydantic.ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(f"Invalid project information in '{project_file}'", errors) from e
        return project, project_file

    def _read_csproj(self, project_file: Path) -> dict[str, object]:
        try:
            root = ET.parse(project_file).getroot()
        except (OSError, ET.ParseError) as e:
            raise ValidationError(f"Failed to read project file '{project_file}': {e}") from e

        def property_value(name: str) -> str | None:
            element = root.find(f"./PropertyGroup/{name}")
            return element.text.strip() if element is not None and element.text else None

        framework = property_value("TargetFramework")
        if framework is None:
            frameworks = property_value("TargetFrameworks")
            framework = frameworks.split(";")[0] if frameworks else None
        data: dict[str, object] = {"assembly_name": property_value("AssemblyName") or project_file.stem}
        if framework:
            data["runtime_version"] = framework
        return data

    def _read_settings(self, settings: Path) -> dict[str, object]:
        try:
            content = json.loads(settings.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Failed to read '{settings}': {e}") from e
        if not isinstance(content, dict):
            raise ValidationError(f"'{settings}' must contain a JSON object.")
        return content


class GitRepoReader:
    """gitコマンドでリモートURLとブランチを読み込む。"""

    async def _run_subprocess(self, args: list[str], cwd: str | None = None) -> tuple[int, str, str]:
        """サブプロセスを非同期で実行し、(exit_code, stdout, stderr) を返す。"""
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        stdout_bytes, stderr_bytes = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace").strip(),
            stderr_bytes.decode("utf-8", errors="replace").strip(),
        )

    async def _git(self, directory: Path, *args: str) -> str | None:
        exit_code, stdout, stderr = await self._run_subprocess(["git", *args], cwd=str(directory))
        if exit_code != 0 or not stdout:
            logger.debug("git command failed", args=list(args), stderr=stderr)
            return None
        return stdout

    async def read(self, directory: Path) -> GitRepoInfo | None:
        """リモート情報を返す。Gitリポジトリでない場合やリモートがない場合はNone。"""
        try:
            branch = await self._git(directory, "rev-parse", "--abbrev-ref", "HEAD")
            if branch is None or branch == "HEAD":
                return None
            remote = await self._git(directory, "config", "--get", f"branch.{branch}.remote") or "origin"
            url = await self._git(directory, "remote", "get-url", remote)
        except OSError as e:
            # gitがインストールされていない
            logger.debug("git unavailable", error=str(e))
            return None
        if url is None:
            return None
        return GitRepoInfo(remote_url=url, remote_branch=branch)
