"""デプロイメントのロールアウト監視。"""

import structlog

from shiftdeploy.cluster.client import ClusterClient
from shiftdeploy.models.errors import RolloutFailedError, RolloutTimeoutError
from shiftdeploy.models.resources import ResourceKind
from shiftdeploy.models.state import DeploymentCondition, RolloutState
from shiftdeploy.services.polling import Clock, Deadline, SystemClock
from shiftdeploy.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

_FAILED_REASONS = frozenset({"ProgressDeadlineExceeded", "ReplicaSetCreateError"})


def failure_condition(state: RolloutState) -> DeploymentCondition | None:
    """ロールアウトの失敗を示す条件を返す。前の世代の条件は無視する。"""
    if not state.observed:
        return None
    progressing = state.condition("Progressing")
    if progressing is None:
        return None
    if progressing.status == "False" or progressing.reason in _FAILED_REASONS:
        return progressing
    return None


class RolloutWatcher:
    """デプロイメントが健全になるまでポーリングする。"""

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

    async def wait_for_rollout(self, name: str, desired_generation: int, timeout: float) -> RolloutState:
        """observedGeneration ≥ desired_generation かつ availableReplicas ≥ 1 になるまで待つ。

        Raises:
            RolloutFailedError: 健全になる前に失敗条件に到達した場合、またはデプロイメントが消えた場合。
            RolloutTimeoutError: 期限内に健全にならなかった場合。
        """
        deadline = Deadline(self.clock, timeout)
        replica_failure: str | None = None
        while True:
            deployment = await self.retry.call(
                f"get deployment {name}", lambda: self.client.get(ResourceKind.DEPLOYMENT, name)
            )
            if deployment is None:
                raise RolloutFailedError(name, "DeploymentMissing", "The deployment was deleted during rollout")

            state = RolloutState.from_deployment(deployment, desired_generation)
            if state.healthy:
                logger.info(
                    "rollout complete",
                    deployment=name,
                    generation=state.observed_generation,
                    available=state.available_replicas,
                )
                return state

            # ReplicaFailureは回復しうるため失敗とはせず、変化したときだけ記録する
            condition = state.condition("ReplicaFailure")
            message = condition.message if condition is not None and condition.status == "True" else None
            if message != replica_failure:
                replica_failure = message
                if message:
                    logger.warning("replica failure", deployment=name, reason=condition.reason, message=message)

            failed = failure_condition(state)
            if failed is not None:
                raise RolloutFailedError(name, failed.reason, failed.message)

            if deadline.expired:
                raise RolloutTimeoutError(name, timeout)
            await deadline.sleep(self.poll_interval)
