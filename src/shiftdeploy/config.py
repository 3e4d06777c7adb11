"""shiftdeployの設定管理。"""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from shiftdeploy.models.project import ConnectionConfig

# リトライ回数の上限（TransientApiErrorのバックオフ）
MAX_RETRY_ATTEMPTS = 5


class DeployerConfig(BaseSettings):
    """デプロイ設定。環境変数から読み込み可能。"""

    model_config = {"env_prefix": "SHIFTDEPLOY_"}

    # 接続先クラスタ
    server: str = "https://api.crc.testing:6443"
    token: SecretStr = SecretStr("")
    namespace: str = "default"
    insecure_skip_tls_verify: bool = False

    # ステージ別タイムアウト（秒）
    build_timeout: float = 600.0
    rollout_timeout: float = 300.0
    route_timeout: float = 60.0
    poll_interval: float = 1.0

    # TransientApiErrorのリトライ
    retry_attempts: int = Field(default=MAX_RETRY_ATTEMPTS, ge=1, le=MAX_RETRY_ATTEMPTS)
    retry_initial_backoff: float = 0.5
    retry_max_backoff: float = 8.0

    # ログ
    log_level: str = "info"
    log_format: Literal["console", "json"] = "console"

    # MCPサーバー
    host: str = "0.0.0.0"
    port: int = 8000
    url_token: str = ""

    def connection(self) -> ConnectionConfig:
        """解決済みの接続設定を返す。"""
        return ConnectionConfig(
            server=self.server,
            token=self.token,
            namespace=self.namespace,
            insecure_skip_tls_verify=self.insecure_skip_tls_verify,
        )
