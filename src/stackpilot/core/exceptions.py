"""StackPilot custom exceptions."""


class StackPilotError(Exception):
    """Base exception for all StackPilot errors."""

    pass


class ConfigurationError(StackPilotError):
    """Error in configuration, such as a stack without an environment."""

    pass


class CredentialError(StackPilotError):
    """Error while resolving or assuming credentials for an environment."""

    def __init__(self, message: str, role_arn: str | None = None):
        super().__init__(message)
        self.role_arn = role_arn


class ControlPlaneError(StackPilotError):
    """Error returned by the remote control plane API."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class VersionMismatchError(StackPilotError):
    """The bootstrap stack in the target environment is too old."""

    def __init__(
        self,
        message: str,
        required: int,
        found: int,
        stack_name: str | None = None,
    ):
        super().__init__(f"{stack_name}: {message}" if stack_name else message)
        self.reason = message
        self.required = required
        self.found = found
        self.stack_name = stack_name

    def for_stack(self, stack_name: str) -> "VersionMismatchError":
        """Return a copy of this error whose message is prefixed with the stack name."""
        return VersionMismatchError(self.reason, self.required, self.found, stack_name=stack_name)


class RollbackProgressError(StackPilotError):
    """Stabilizing a stack after a rollback step failed or reported errors."""

    def __init__(self, stack_name: str, message: str, event_errors: list[str] | None = None):
        super().__init__(
            f"{message} (fix problem and retry, or orphan these resources using --orphan or --force)"
        )
        self.stack_name = stack_name
        self.event_errors = event_errors or []


class RollbackExhaustedError(StackPilotError):
    """The rollback loop hit its iteration bound without reaching a terminal state."""

    def __init__(self, stack_name: str, iterations: int):
        super().__init__(
            f"Rollback of {stack_name} did not finish after {iterations} iterations; stopping because "
            "it looks like we're not making progress anymore. You can retry if rollback was "
            "progressing as expected."
        )
        self.stack_name = stack_name
        self.iterations = iterations


class AssetOperationError(StackPilotError):
    """A publisher reported failures after building or publishing an asset."""

    def __init__(self, asset_id: str, operation: str):
        super().__init__(f"Failed to {operation} asset {asset_id}")
        self.asset_id = asset_id
        self.operation = operation
