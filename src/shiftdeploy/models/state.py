"""デプロイパイプラインの実行状態・結果のデータモデル。"""

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from shiftdeploy.models.project import GitRepoInfo, ProjectInfo


class BuildPhase(StrEnum):
    """ビルドの状態。NOT_STARTED/UPLOADINGはshiftdeploy側の状態。"""

    NOT_STARTED = "NotStarted"
    UPLOADING = "Uploading"
    NEW = "New"
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"
    ERROR = "Error"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset({BuildPhase.COMPLETE, BuildPhase.FAILED, BuildPhase.ERROR, BuildPhase.CANCELLED})


class BuildRun(BaseModel):
    """1回のビルド実行。"""

    name: str | None = None
    build_config: str
    phase: BuildPhase = BuildPhase.NOT_STARTED
    archive_size: int | None = None
    output_image: str | None = None
    reason: str | None = None
    message: str | None = None


class DeploymentCondition(BaseModel):
    type: str
    status: str
    reason: str | None = None
    message: str | None = None


class RolloutState(BaseModel):
    """デプロイメントのロールアウト状態（観測値から導出）。"""

    desired_generation: int
    observed_generation: int = 0
    available_replicas: int = 0
    conditions: list[DeploymentCondition] = Field(default_factory=list)

    @property
    def observed(self) -> bool:
        """コントローラが目的の世代を観測済みか。未観測の間、conditionsは前の世代のもの。"""
        return self.observed_generation >= self.desired_generation

    @property
    def healthy(self) -> bool:
        return self.observed and self.available_replicas >= 1

    def condition(self, condition_type: str) -> DeploymentCondition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @classmethod
    def from_deployment(cls, deployment: dict[str, Any], desired_generation: int) -> "RolloutState":
        status = deployment.get("status") or {}
        return cls(
            desired_generation=desired_generation,
            observed_generation=status.get("observedGeneration") or 0,
            available_replicas=status.get("availableReplicas") or 0,
            conditions=[DeploymentCondition.model_validate(c) for c in status.get("conditions") or []],
        )


class RouteState(BaseModel):
    """ルートの状態。"""

    name: str
    host: str | None = None
    url: str | None = None

    @property
    def ready(self) -> bool:
        return bool(self.host)


ApplyAction = Literal["created", "updated", "unchanged", "verified"]


class AppliedResource(BaseModel):
    """Apply Engineの適用結果。"""

    kind: str
    name: str
    action: ApplyAction
    object: dict[str, Any]

    @property
    def generation(self) -> int:
        return int((self.object.get("metadata") or {}).get("generation") or 0)


class DeployRequest(BaseModel):
    """デプロイの入力。"""

    project: ProjectInfo
    source_dir: Path
    project_file: Path | None = None
    name: str | None = None
    part_of: str | None = None
    expose: bool = False
    follow: bool = False
    build: bool = True
    git: GitRepoInfo | None = None
    build_timeout: float | None = None
    rollout_timeout: float | None = None
    route_timeout: float | None = None


class DeployResult(BaseModel):
    """デプロイの結果。"""

    name: str
    namespace: str
    image: str | None = None
    url: str | None = None
    applied: list[AppliedResource] = Field(default_factory=list)
    rollout: RolloutState | None = None


class DeleteResult(BaseModel):
    """削除の結果。"""

    name: str
    removed: int = 0
    removed_resources: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failures


class ComponentSummary(BaseModel):
    """名前空間内のコンポーネントの概要。"""

    name: str
    part_of: str | None = None
    image: str | None = None
    url: str | None = None
    # 見つかったリソース種別
    kinds: list[str] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    """パイプラインの進捗通知。"""

    stage: str
    message: str
    component: str
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
