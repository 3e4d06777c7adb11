"""shiftdeployのカスタム例外クラス。"""


class ShiftDeployError(Exception):
    """shiftdeployの基底例外クラス。"""


class ValidationError(ShiftDeployError):
    """プロジェクト情報・名前・フラグが不正な場合の例外。

    クラスタへの呼び出しを行う前に検出される。
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class SourceArchiveError(ShiftDeployError):
    """ソースディレクトリの読み込み・アーカイブ作成に失敗した場合の例外。"""

    def __init__(self, directory: str, reason: str) -> None:
        super().__init__(f"Failed to package sources from '{directory}': {reason}")
        self.directory = directory
        self.reason = reason


class ClusterApiError(ShiftDeployError):
    """クラスタAPI呼び出しのエラー。"""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ApplyConflictError(ClusterApiError):
    """楽観的並行性制御の衝突（読み込みと書き込みの間にリソースが変更された）。"""

    def __init__(self, kind: str, name: str, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"Conflict applying {kind} '{name}'{detail}", status=409)
        self.kind = kind
        self.name = name


class TransientApiError(ClusterApiError):
    """ネットワーク障害または5xx応答。バックオフ付きでリトライされる。"""


class PermissionOrRequestError(ClusterApiError):
    """4xx応答（検証・権限エラー）。リトライしない。"""


class ResourceOwnershipError(ShiftDeployError):
    """既存リソースにshiftdeployの所有ラベルがない場合の例外。"""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' exists but is not managed by shiftdeploy for this component")
        self.kind = kind
        self.name = name


class ResourceNotFoundError(ShiftDeployError):
    """参照先のリソース（Secret等）が存在しない場合の例外。"""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class BuildFailedError(ShiftDeployError):
    """ビルドが成功以外の終端フェーズに到達した場合の例外。"""

    def __init__(self, build_name: str, phase: str, reason: str | None = None, message: str | None = None) -> None:
        super().__init__(f"The build '{build_name}' {_describe_phase(phase)}{describe_condition(reason, message)}")
        self.build_name = build_name
        self.phase = phase
        self.reason = reason
        self.detail = message


class BuildTimeoutError(ShiftDeployError):
    """ビルドが期限内に終端フェーズに到達しなかった場合の例外。"""

    def __init__(self, build_name: str, timeout: float, last_phase: str) -> None:
        super().__init__(f"The build '{build_name}' did not finish within {timeout:g}s (last phase: {last_phase})")
        self.build_name = build_name
        self.timeout = timeout
        self.last_phase = last_phase


class RolloutFailedError(ShiftDeployError):
    """デプロイメントが健全になる前に失敗条件に到達した場合の例外。"""

    def __init__(self, deployment: str, reason: str | None, message: str | None = None) -> None:
        super().__init__(f"The deployment '{deployment}' failed{describe_condition(reason, message)}")
        self.deployment = deployment
        self.reason = reason
        self.detail = message


class RolloutTimeoutError(ShiftDeployError):
    """デプロイメントが期限内に健全にならなかった場合の例外。"""

    def __init__(self, deployment: str, timeout: float) -> None:
        super().__init__(f"The deployment '{deployment}' did not become available within {timeout:g}s")
        self.deployment = deployment
        self.timeout = timeout


class RouteTimeoutError(ShiftDeployError):
    """ルートにホストが割り当てられなかった場合の例外。"""

    def __init__(self, route: str, timeout: float) -> None:
        super().__init__(f"The route '{route}' was not assigned a host within {timeout:g}s")
        self.route = route
        self.timeout = timeout


class InternalConsistencyError(ShiftDeployError):
    """内部の不変条件違反。常に致命的。"""


class StageFailedError(ShiftDeployError):
    """パイプラインのステージが失敗した場合の例外。

    原因となった例外は ``cause`` と ``__cause__`` の両方で参照できる。
    """

    def __init__(self, stage: str, component: str, cause: Exception) -> None:
        super().__init__(f"Deploying '{component}' failed at stage '{stage}': {cause}")
        self.stage = stage
        self.component = component
        self.cause = cause


def describe_condition(reason: str | None, message: str | None) -> str:
    """条件の理由とメッセージを " with 'reason': "message"" の形式にする。"""
    if not reason:
        return ""
    described = f" with '{reason}'"
    if message:
        described += f': "{message}"'
    return described


def _describe_phase(phase: str) -> str:
    if phase == "Failed":
        return "failed"
    if phase == "Error":
        return "failed to start"
    if phase == "Cancelled":
        return "was cancelled"
    return f"did not complete: {phase}"
