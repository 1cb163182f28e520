"""Live stack lookup, status classification and stabilization."""

import asyncio
from enum import Enum
from typing import Any

from stackpilot.api.protocols import CloudFormationClient
from stackpilot.cli import output
from stackpilot.core.exceptions import ControlPlaneError

DEFAULT_POLL_INTERVAL = 5.0


class RollbackChoice(str, Enum):
    NONE = "none"
    START_ROLLBACK = "start-rollback"
    CONTINUE_UPDATE_ROLLBACK = "continue-update-rollback"
    ROLLBACK_FAILED = "rollback-failed"


class StackStatus:
    """A stack status name plus its reason, with classification helpers."""

    def __init__(self, name: str, reason: str | None = None):
        self.name = name
        self.reason = reason

    @classmethod
    def from_description(cls, description: dict[str, Any]) -> "StackStatus":
        return cls(description["StackStatus"], description.get("StackStatusReason"))

    @property
    def is_creation_failure(self) -> bool:
        return self.name in ("ROLLBACK_COMPLETE", "ROLLBACK_FAILED")

    @property
    def is_failure(self) -> bool:
        return self.name.endswith("FAILED")

    @property
    def is_in_progress(self) -> bool:
        return self.name.endswith("_IN_PROGRESS") and not self.is_review_in_progress

    @property
    def is_review_in_progress(self) -> bool:
        return self.name == "REVIEW_IN_PROGRESS"

    @property
    def is_not_found(self) -> bool:
        return self.name == "NOT_FOUND"

    @property
    def is_deploy_success(self) -> bool:
        return self.name in ("CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE")

    @property
    def is_rollback_success(self) -> bool:
        return self.name in ("ROLLBACK_COMPLETE", "UPDATE_ROLLBACK_COMPLETE")

    @property
    def rollback_choice(self) -> RollbackChoice:
        if self.name in ("CREATE_FAILED", "UPDATE_FAILED"):
            return RollbackChoice.START_ROLLBACK
        if self.name == "UPDATE_ROLLBACK_FAILED":
            return RollbackChoice.CONTINUE_UPDATE_ROLLBACK
        if self.name == "ROLLBACK_FAILED":
            # No stable target state exists to continue towards.
            return RollbackChoice.ROLLBACK_FAILED
        return RollbackChoice.NONE

    def __str__(self) -> str:
        return f"{self.name}{f' ({self.reason})' if self.reason else ''}"


class CloudFormationStack:
    """Snapshot of a stack as returned by ``describe_stacks``."""

    def __init__(self, cfn: CloudFormationClient, stack_name: str, description: dict[str, Any] | None = None):
        self.cfn = cfn
        self.stack_name = stack_name
        self.description = description

    @classmethod
    async def lookup(cls, cfn: CloudFormationClient, stack_name: str) -> "CloudFormationStack":
        try:
            response = await cfn.describe_stacks(StackName=stack_name)
        except ControlPlaneError as e:
            if e.code == "ValidationError" and "does not exist" in str(e):
                return cls(cfn, stack_name)
            raise

        stacks = response.get("Stacks") or []
        description = stacks[0] if stacks else None
        # A deleted stack is as good as a missing one.
        if description is not None and description["StackStatus"] == "DELETE_COMPLETE":
            description = None
        return cls(cfn, stack_name, description)

    @property
    def exists(self) -> bool:
        return self.description is not None

    @property
    def stack_id(self) -> str | None:
        return self.description.get("StackId") if self.description else None

    @property
    def stack_status(self) -> StackStatus:
        if self.description is None:
            return StackStatus("NOT_FOUND", "Stack not found during lookup")
        return StackStatus.from_description(self.description)

    @property
    def outputs(self) -> dict[str, str]:
        if self.description is None:
            return {}
        return {o["OutputKey"]: o["OutputValue"] for o in self.description.get("Outputs", [])}

    async def template(self) -> dict[str, Any]:
        """The currently deployed template, or an empty one for a missing stack."""
        if not self.exists:
            return {}
        response = await self.cfn.get_template(StackName=self.stack_name, TemplateStage="Original")
        body = response.get("TemplateBody") or {}
        if isinstance(body, str):
            return _parse_template_body(body)
        return body


def _parse_template_body(body: str) -> dict[str, Any]:
    import yaml

    return yaml.safe_load(body) or {}


async def stabilize_stack(
    cfn: CloudFormationClient,
    stack_name: str,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> CloudFormationStack | None:
    """Wait until the stack is no longer in progress.

    Returns the settled stack, or None when it disappeared while waiting.
    """
    output.debug(f"Waiting for stack {stack_name} to finish creating or updating...")
    while True:
        stack = await CloudFormationStack.lookup(cfn, stack_name)
        if not stack.exists:
            output.debug(f"Stack {stack_name} does not exist")
            return None
        status = stack.stack_status
        if status.is_in_progress:
            output.debug(f"Stack {stack_name} has an ongoing operation in progress and is not stable ({status})")
            await asyncio.sleep(poll_interval)
            continue
        if status.is_review_in_progress:
            # A change set was created but never executed; this is as stable as it gets.
            output.debug(f"Stack {stack_name} is in REVIEW_IN_PROGRESS state. Considering this is a stable status ({status})")
        return stack
