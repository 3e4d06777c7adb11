"""例外メッセージのユニットテスト。"""

from shiftdeploy.models.errors import (
    ApplyConflictError,
    BuildTimeoutError,
    RolloutFailedError,
    StageFailedError,
    ValidationError,
    describe_condition,
)


class TestDescribeCondition:
    def test_reason_and_message(self) -> None:
        assert describe_condition("ProgressDeadlineExceeded", "timed out") == (
            " with 'ProgressDeadlineExceeded': \"timed out\""
        )

    def test_reason_only(self) -> None:
        assert describe_condition("Failed", None) == " with 'Failed'"

    def test_no_reason(self) -> None:
        assert describe_condition(None, "ignored") == ""


class TestMessages:
    def test_rollout_failed(self) -> None:
        error = RolloutFailedError("web", "ProgressDeadlineExceeded", "ReplicaSet has timed out progressing.")
        assert str(error) == (
            "The deployment 'web' failed with 'ProgressDeadlineExceeded': \"ReplicaSet has timed out progressing.\""
        )

    def test_build_timeout(self) -> None:
        assert str(BuildTimeoutError("web-binary-1", 600.0, "Running")) == (
            "The build 'web-binary-1' did not finish within 600s (last phase: Running)"
        )

    def test_conflict_status(self) -> None:
        assert ApplyConflictError("Service", "web").status == 409

    def test_validation_errors_default(self) -> None:
        assert ValidationError("bad name").errors == ["bad name"]

    def test_stage_failed_keeps_cause(self) -> None:
        cause = ValidationError("bad name")
        error = StageFailedError("validate", "web", cause)
        assert error.cause is cause
        assert str(error) == "Deploying 'web' failed at stage 'validate': bad name"
