"""FastMCPベースのMCPサーバーエントリポイント。"""

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from shiftdeploy.config import DeployerConfig
from shiftdeploy.services.orchestrator import Orchestrator
from shiftdeploy.tools.deploy import register_deploy_tools


def create_server(config: DeployerConfig | None = None, orchestrator: Orchestrator | None = None) -> FastMCP:
    """shiftdeploy MCPサーバーを作成し、ツールを登録する。

    Args:
        config: デプロイ設定。Noneの場合は環境変数から読み込む。
        orchestrator: パイプライン。Noneの場合は設定から作成する。

    Returns:
        設定済みのFastMCPインスタンス。
    """
    if config is None:
        config = DeployerConfig()

    mcp = FastMCP("shiftdeploy")

    register_deploy_tools(mcp, orchestrator or Orchestrator(config))

    # ヘルスチェックエンドポイント
    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return mcp
