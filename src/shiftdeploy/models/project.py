"""外部コラボレータ（プロジェクト読み込み・Git・認証情報）から受け取るデータモデル。"""

from typing import Literal

from pydantic import BaseModel, Field, SecretStr

DeploymentStrategy = Literal["Recreate", "RollingUpdate"]


class ContainerPort(BaseModel):
    """コンテナが公開するポート。"""

    name: str | None = None
    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    is_service_port: bool = False


def _default_ports() -> list[ContainerPort]:
    return [ContainerPort(name="http", port=8080, protocol="tcp", is_service_port=True)]


class ContainerResources(BaseModel):
    """コンテナのリソース要求・上限（例: {"cpu": "500m", "memory": "256Mi"}）。"""

    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class HttpGetProbe(BaseModel):
    """HTTP GETによるヘルスチェックプローブ。"""

    path: str
    port: str | int = "http"
    initial_delay: int | None = None
    period: int | None = None
    timeout: int | None = None
    failure_threshold: int | None = None


class ConfigMapMount(BaseModel):
    """コンポーネント固有のConfigMap。リソース名は "<component>-<name>"。

    dataは作成時の初期内容で、作成後の内容は利用者が管理する。
    """

    name: str
    path: str
    read_only: bool = True
    data: dict[str, str] = Field(default_factory=dict)


class PersistentStorage(BaseModel):
    """PersistentVolumeClaimとして確保するストレージ。リソース名は "<component>-<name>"。"""

    name: str
    size: str
    path: str
    limit: str | None = None
    storage_class: str | None = None
    access: Literal["ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany", "ReadWriteOncePod"] = "ReadWriteOnce"
    read_only: bool = False


class ProjectInfo(BaseModel):
    """プロジェクトファイルから読み込まれたメタデータ。"""

    runtime_version: str
    assembly_name: str
    ports: list[ContainerPort] = Field(default_factory=_default_ports)
    resources: ContainerResources = Field(default_factory=ContainerResources)
    environment: dict[str, str] = Field(default_factory=dict)
    build_environment: dict[str, str] = Field(default_factory=dict)
    strategy: DeploymentStrategy | None = None
    liveness_probe: HttpGetProbe | None = None
    readiness_probe: HttpGetProbe | None = None
    startup_probe: HttpGetProbe | None = None
    # ビルドが参照するソースシークレット（任意）
    source_secret: str | None = None
    config_maps: list[ConfigMapMount] = Field(default_factory=list)
    volume_claims: list[PersistentStorage] = Field(default_factory=list)

    @property
    def service_ports(self) -> list[ContainerPort]:
        return [p for p in self.ports if p.is_service_port]


class GitRepoInfo(BaseModel):
    """ソース管理のリモート情報。"""

    remote_url: str
    remote_branch: str


class ConnectionConfig(BaseModel):
    """解決済みのクラスタ接続設定。

    トークンはSecretStrで保持し、ログやreprに出力しない。
    """

    server: str
    token: SecretStr
    namespace: str
    insecure_skip_tls_verify: bool = False
