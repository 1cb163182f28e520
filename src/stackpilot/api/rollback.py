"""Recovery of stacks stuck outside a stable state after a failed update.

The orchestrator re-reads the stack status at the top of every iteration,
issues at most one mutating call per iteration, and always waits for the
stack to settle after a mutating call. With ``force`` a stack that ends up
in UPDATE_ROLLBACK_FAILED again is retried with the newly failed resources
skipped, up to ``MAX_ROLLBACK_ITERATIONS`` times.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from stackpilot.api.cloudformation import (
    DEFAULT_POLL_INTERVAL,
    CloudFormationStack,
    RollbackChoice,
    stabilize_stack,
)
from stackpilot.api.events import StackActivityMonitor, StackEventPoller, suffix_with_errors
from stackpilot.api.protocols import CloudFormationClient
from stackpilot.cli import output
from stackpilot.core.exceptions import (
    ControlPlaneError,
    RollbackExhaustedError,
    RollbackProgressError,
    StackPilotError,
)

MAX_ROLLBACK_ITERATIONS = 10
BOOTSTRAP_STACK_VERSION_FOR_ROLLBACK = 23
ROLLBACK_START_STATUSES = ("ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_IN_PROGRESS")


@dataclass(frozen=True)
class RollbackStackResult:
    success: bool = False
    not_in_rollbackable_state: bool = False


def new_client_request_token() -> str:
    return str(uuid.uuid4())


class RollbackOrchestrator:
    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        role_arn: str | None = None,
        force: bool = False,
        orphan_logical_ids: list[str] | None = None,
        quiet: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        monitor_interval: float = 2.0,
        token_factory: Callable[[], str] = new_client_request_token,
    ):
        self.cfn = cfn
        self.stack_name = stack_name
        self.role_arn = role_arn
        self.force = force
        self.resources_to_skip = list(orphan_logical_ids or [])
        self.quiet = quiet
        self.poll_interval = poll_interval
        self.monitor_interval = monitor_interval
        self.token_factory = token_factory

    async def run(self) -> RollbackStackResult:
        for _ in range(MAX_ROLLBACK_ITERATIONS):
            stack = await CloudFormationStack.lookup(self.cfn, self.stack_name)
            choice = stack.stack_status.rollback_choice

            if choice is RollbackChoice.NONE:
                output.warn(f"Stack {self.stack_name} does not need a rollback: {stack.stack_status}")
                return RollbackStackResult(not_in_rollbackable_state=True)

            if choice is RollbackChoice.ROLLBACK_FAILED:
                output.warn(
                    f"Stack {self.stack_name} failed creation and rollback. This state cannot be rolled back. "
                    "You can recreate this stack by deploying it again."
                )
                return RollbackStackResult(not_in_rollbackable_state=True)

            if choice is RollbackChoice.START_ROLLBACK:
                await self._start_rollback()
            elif choice is RollbackChoice.CONTINUE_UPDATE_ROLLBACK:
                await self._continue_update_rollback()
            else:
                raise StackPilotError(f"Unexpected rollback choice: {choice}")

            final_stack, error_message, event_errors = await self._wait_for_stack(stack)

            if final_stack.stack_status.is_rollback_success or not error_message:
                return RollbackStackResult(success=True)

            # Either some resources must be skipped to continue, or something went wrong.
            if final_stack.stack_status.rollback_choice is RollbackChoice.CONTINUE_UPDATE_ROLLBACK and self.force:
                continue

            raise RollbackProgressError(self.stack_name, error_message, event_errors)

        raise RollbackExhaustedError(self.stack_name, MAX_ROLLBACK_ITERATIONS)

    async def _start_rollback(self) -> None:
        output.debug(f"Initiating rollback of stack {self.stack_name}")
        await self.cfn.rollback_stack(
            **self._with_role(
                StackName=self.stack_name,
                ClientRequestToken=self.token_factory(),
                # Keep resources that were being created instead of deleting them.
                RetainExceptOnCreate=True,
            )
        )

    async def _continue_update_rollback(self) -> None:
        if self.force:
            self.resources_to_skip = await self.failed_top_level_resources()

        skip_description = f" (orphaning: {', '.join(self.resources_to_skip)})" if self.resources_to_skip else ""
        output.warn(f"Continuing rollback of stack {self.stack_name}{skip_description}")
        await self.cfn.continue_update_rollback(
            **self._with_role(
                StackName=self.stack_name,
                ClientRequestToken=self.token_factory(),
                ResourcesToSkip=list(self.resources_to_skip),
            )
        )

    async def failed_top_level_resources(self) -> list[str]:
        """Logical IDs of resources that failed during the most recent rollback.

        Read from the event history rather than the resource list, because
        describing events is always permitted. Failures inside nested stacks
        are left out; only the nested stack resource itself can be skipped.
        """
        poller = StackEventPoller(self.cfn, self.stack_name, stack_statuses=ROLLBACK_START_STATUSES)
        await poller.poll()
        skipped: list[str] = []
        for error in poller.resource_errors:
            if error.is_stack_event or error.parent_stack_logical_ids:
                continue
            if error.logical_id and error.logical_id not in skipped:
                skipped.append(error.logical_id)
        return skipped

    async def _wait_for_stack(
        self, stack: CloudFormationStack
    ) -> tuple[CloudFormationStack, str | None, list[str]]:
        """Wait for the stack to settle; returns the final stack, an error message and event errors."""
        monitor = None
        if not self.quiet:
            monitor = StackActivityMonitor(
                self.cfn,
                self.stack_name,
                poll_interval=self.monitor_interval,
                start_time=datetime.now(timezone.utc),
            ).start()

        final_stack = stack
        error_message: str | None = None
        try:
            settled = await stabilize_stack(self.cfn, self.stack_name, self.poll_interval)
            if settled is None:
                raise ControlPlaneError("Stack deploy failed (the stack disappeared while we were rolling it back)")
            final_stack = settled
        except StackPilotError as e:
            error_message = str(e)
        finally:
            if monitor is not None:
                await monitor.stop()

        event_errors = list(monitor.errors) if monitor is not None else []
        if error_message is not None:
            error_message = suffix_with_errors(error_message, event_errors)
        elif event_errors:
            error_message = ", ".join(event_errors)
        elif final_stack.stack_status.is_failure:
            error_message = f"Stack {self.stack_name} is in state {final_stack.stack_status}"
        return final_stack, error_message, event_errors

    def _with_role(self, **kwargs) -> dict:
        if self.role_arn:
            kwargs["RoleARN"] = self.role_arn
        return kwargs
