"""
Unit tests for the rollback orchestrator.
"""
import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from stackpilot.api.rollback import MAX_ROLLBACK_ITERATIONS, RollbackOrchestrator
from stackpilot.core.exceptions import ControlPlaneError, RollbackExhaustedError, RollbackProgressError

from conftest import STACK_NAME, make_event, make_stack_event, stack_arn


def orchestrator(cfn, **kwargs):
    kwargs.setdefault("quiet", True)
    return RollbackOrchestrator(cfn, STACK_NAME, poll_interval=0, monitor_interval=0, **kwargs)


def run(orch):
    with patch("stackpilot.api.rollback.output"):
        return asyncio.run(orch.run())


class TestRollbackChoices:
    """Each live status leads to the right first action."""

    @pytest.mark.parametrize("status", ["UPDATE_COMPLETE", "CREATE_COMPLETE", "UPDATE_ROLLBACK_COMPLETE"])
    def test_stable_stack_is_not_rollbackable(self, cfn, status):
        cfn.add_stack(STACK_NAME, status)

        result = run(orchestrator(cfn))

        assert result.not_in_rollbackable_state
        assert not result.success
        assert cfn.mutating_calls == []

    def test_missing_stack_is_not_rollbackable(self, cfn):
        result = run(orchestrator(cfn))

        assert result.not_in_rollbackable_state
        assert cfn.mutating_calls == []

    def test_rollback_failed_is_not_rollbackable(self, cfn):
        """A stack that failed creation and rollback has nothing to roll back to."""
        cfn.add_stack(STACK_NAME, "ROLLBACK_FAILED")

        result = run(orchestrator(cfn))

        assert result.not_in_rollbackable_state
        assert cfn.mutating_calls == []

    @pytest.mark.parametrize(
        "status,final",
        [("UPDATE_FAILED", "UPDATE_ROLLBACK_COMPLETE"), ("CREATE_FAILED", "ROLLBACK_COMPLETE")],
    )
    def test_failed_stack_starts_rollback(self, cfn, status, final):
        cfn.add_stack(STACK_NAME, status)
        cfn.transitions["rollback_stack"] = final

        result = run(orchestrator(cfn))

        assert result.success
        call = cfn.calls_to("rollback_stack")[0]
        assert call["StackName"] == STACK_NAME
        assert call["RetainExceptOnCreate"] is True
        assert "RoleARN" not in call
        uuid.UUID(call["ClientRequestToken"])
        assert cfn.mutating_calls == ["rollback_stack"]

    def test_role_arn_is_passed_through(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_FAILED")
        cfn.transitions["rollback_stack"] = "UPDATE_ROLLBACK_COMPLETE"

        run(orchestrator(cfn, role_arn="arn:aws:iam::1:role/cfn-exec"))

        assert cfn.calls_to("rollback_stack")[0]["RoleARN"] == "arn:aws:iam::1:role/cfn-exec"

    def test_rollback_then_continue(self, cfn):
        """A rollback that itself fails is continued on the next iteration when forced."""
        cfn.add_stack(STACK_NAME, "UPDATE_FAILED")
        cfn.transitions["rollback_stack"] = "UPDATE_ROLLBACK_FAILED"
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_COMPLETE"

        result = run(orchestrator(cfn, force=True))

        assert result.success
        assert cfn.mutating_calls == ["rollback_stack", "continue_update_rollback"]


class TestContinueUpdateRollback:
    """Tests for the CONTINUE_UPDATE_ROLLBACK branch."""

    def test_explicit_orphans_are_skipped(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_COMPLETE"

        result = run(orchestrator(cfn, orphan_logical_ids=["Bucket", "Queue"]))

        assert result.success
        call = cfn.calls_to("continue_update_rollback")[0]
        assert call["ResourcesToSkip"] == ["Bucket", "Queue"]
        uuid.UUID(call["ClientRequestToken"])

    def test_force_skips_failed_top_level_resources(self, cfn):
        """Only top-level resources that failed since the rollback started are skipped."""
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_COMPLETE"
        child = stack_arn("child")
        cfn.events[STACK_NAME] = [
            make_stack_event("e6", "UPDATE_ROLLBACK_FAILED"),
            make_event("e5", "Bucket", "UPDATE_FAILED", reason="bucket not empty"),
            make_event("e4", "Queue", "UPDATE_FAILED", reason="in use"),
            make_event("e3", "Nested", "UPDATE_IN_PROGRESS", resource_type="AWS::CloudFormation::Stack",
                       physical_id=child),
            make_event("e2", "Queue", "UPDATE_FAILED", reason="in use"),
            make_stack_event("e1", "UPDATE_ROLLBACK_IN_PROGRESS"),
            make_event("e0", "Old", "UPDATE_FAILED"),
        ]
        cfn.events[child] = [make_event("c1", "Inner", "UPDATE_FAILED", stack_name="child")]

        result = run(orchestrator(cfn, force=True))

        assert result.success
        assert cfn.calls_to("continue_update_rollback")[0]["ResourcesToSkip"] == ["Queue", "Bucket"]

    def test_stack_stuck_without_force_raises(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_FAILED"

        with pytest.raises(RollbackProgressError) as exc_info:
            run(orchestrator(cfn))

        assert "is in state UPDATE_ROLLBACK_FAILED" in str(exc_info.value)
        assert "orphan these resources using --orphan or --force" in str(exc_info.value)
        assert len(cfn.calls_to("continue_update_rollback")) == 1

    def test_event_errors_are_reported(self, cfn):
        """Without quiet, failure reasons seen by the activity monitor end up in the error."""
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_FAILED"
        cfn.events[STACK_NAME] = [
            make_event("e2", "Queue", "UPDATE_FAILED", reason="Resource update cancelled"),
            make_event("e1", "Bucket", "UPDATE_FAILED", reason="Access denied"),
        ]

        with pytest.raises(RollbackProgressError) as exc_info:
            run(orchestrator(cfn, quiet=False))

        assert exc_info.value.event_errors == ["Access denied"]
        assert str(exc_info.value).startswith("Access denied")


class TestIterationBound:
    """The loop stops after a fixed number of iterations."""

    def test_force_with_stack_never_recovering(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_FAILED"

        with pytest.raises(RollbackExhaustedError) as exc_info:
            run(orchestrator(cfn, force=True))

        assert exc_info.value.iterations == MAX_ROLLBACK_ITERATIONS
        assert len(cfn.calls_to("continue_update_rollback")) == MAX_ROLLBACK_ITERATIONS

    def test_force_with_waiting_always_failing(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        failing_wait = AsyncMock(side_effect=ControlPlaneError("Rate exceeded"))

        with patch("stackpilot.api.rollback.stabilize_stack", failing_wait):
            with pytest.raises(RollbackExhaustedError):
                run(orchestrator(cfn, force=True))

        assert failing_wait.await_count == MAX_ROLLBACK_ITERATIONS
        assert len(cfn.calls_to("continue_update_rollback")) == MAX_ROLLBACK_ITERATIONS

    def test_waiting_failure_without_force_raises(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")

        with patch("stackpilot.api.rollback.stabilize_stack", AsyncMock(side_effect=ControlPlaneError("Rate exceeded"))):
            with pytest.raises(RollbackProgressError, match="Rate exceeded"):
                run(orchestrator(cfn))

    def test_stack_disappearing_while_waiting(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_FAILED")
        cfn.transitions["rollback_stack"] = lambda kwargs: cfn.stacks.pop(STACK_NAME)

        with pytest.raises(RollbackProgressError, match="disappeared"):
            run(orchestrator(cfn))

    def test_each_call_gets_a_fresh_token(self, cfn):
        cfn.add_stack(STACK_NAME, "UPDATE_ROLLBACK_FAILED")
        cfn.transitions["continue_update_rollback"] = "UPDATE_ROLLBACK_FAILED"

        with pytest.raises(RollbackExhaustedError):
            run(orchestrator(cfn, force=True))

        tokens = [c["ClientRequestToken"] for c in cfn.calls_to("continue_update_rollback")]
        assert len(set(tokens)) == len(tokens)
