"""デプロイ・削除のMCPツール定義。"""

from pathlib import Path
from typing import Any

from fastmcp import FastMCP

from shiftdeploy.models.errors import ShiftDeployError, StageFailedError
from shiftdeploy.models.state import DeployRequest
from shiftdeploy.readers import GitRepoReader, ProjectReader
from shiftdeploy.services.orchestrator import Orchestrator


def _error_response(e: ShiftDeployError) -> dict[str, Any]:
    if isinstance(e, StageFailedError):
        return {"error": type(e.cause).__name__, "stage": e.stage, "message": str(e)}
    return {"error": type(e).__name__, "message": str(e)}


def register_deploy_tools(
    mcp: FastMCP,
    orchestrator: Orchestrator,
    project_reader: ProjectReader | None = None,
    git_reader: GitRepoReader | None = None,
) -> None:
    """デプロイ関連のMCPツールを登録する。"""
    project_reader = project_reader or ProjectReader()
    git_reader = git_reader or GitRepoReader()

    @mcp.tool()
    async def deploy_component(
        project_path: str,
        name: str | None = None,
        part_of: str | None = None,
        expose: bool = False,
        build: bool = True,
    ) -> dict[str, Any]:
        """.NETプロジェクトをOpenShiftにデプロイする。

        ソースをバイナリビルドでイメージ化し、Deploymentに反映して
        ロールアウトの完了を待ちます。exposeを指定するとRouteを作成して公開URLを返します。

        Args:
            project_path: プロジェクトファイルまたはプロジェクトディレクトリのパス。
            name: コンポーネント名（省略時はアセンブリ名から導出）。
            part_of: アプリケーショングループ名（省略時は既存の値またはコンポーネント名）。
            expose: Routeで外部公開するかどうか。
            build: ソースをビルドするかどうか（初回デプロイでは必須）。
        """
        try:
            project, project_file = project_reader.read(Path(project_path))
            request = DeployRequest(
                project=project,
                source_dir=project_file.parent,
                project_file=project_file,
                name=name,
                part_of=part_of,
                expose=expose,
                build=build,
                git=await git_reader.read(project_file.parent),
            )
            result = await orchestrator.deploy(request)
            return result.model_dump(mode="json")
        except ShiftDeployError as e:
            return _error_response(e)

    @mcp.tool()
    async def delete_component(name: str) -> dict[str, Any]:
        """コンポーネントのリソースをすべて削除する。

        所有ラベルが一致するRoute・Service・Deployment・ConfigMap・PersistentVolumeClaim・
        BuildConfig・Build・ImageStreamを削除します。

        Args:
            name: コンポーネント名。
        """
        try:
            result = await orchestrator.delete(name)
            return result.model_dump(mode="json")
        except ShiftDeployError as e:
            return _error_response(e)

    @mcp.tool()
    async def list_components() -> dict[str, Any]:
        """名前空間内でshiftdeployが管理するコンポーネントを一覧する。

        コンポーネントごとに名前・part-of・イメージ・公開URLを返します。
        """
        try:
            components = await orchestrator.list_components()
            return {"components": [c.model_dump(mode="json") for c in components]}
        except ShiftDeployError as e:
            return _error_response(e)
