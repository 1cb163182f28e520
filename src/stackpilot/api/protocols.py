"""Interfaces of the collaborators the orchestration core talks to.

The core never imports boto3 directly. It talks to these protocols, which
``stackpilot.aws`` implements on top of boto3 and the tests implement with
in-memory fakes. Control-plane clients mirror the boto3 method names and
keyword arguments, but every call is a coroutine.
"""

from typing import Any, Protocol

from stackpilot.core.config import Environment


class CloudFormationClient(Protocol):
    async def describe_stacks(self, **kwargs: Any) -> dict[str, Any]: ...

    async def describe_stack_events(self, **kwargs: Any) -> dict[str, Any]: ...

    async def list_stack_resources(self, **kwargs: Any) -> dict[str, Any]: ...

    async def rollback_stack(self, **kwargs: Any) -> dict[str, Any]: ...

    async def continue_update_rollback(self, **kwargs: Any) -> dict[str, Any]: ...

    async def get_template(self, **kwargs: Any) -> dict[str, Any]: ...

    async def get_template_summary(self, **kwargs: Any) -> dict[str, Any]: ...

    # Used only by the boto3 stack operations.
    async def create_stack(self, **kwargs: Any) -> dict[str, Any]: ...

    async def update_stack(self, **kwargs: Any) -> dict[str, Any]: ...

    async def delete_stack(self, **kwargs: Any) -> dict[str, Any]: ...

    async def create_change_set(self, **kwargs: Any) -> dict[str, Any]: ...

    async def describe_change_set(self, **kwargs: Any) -> dict[str, Any]: ...

    async def execute_change_set(self, **kwargs: Any) -> dict[str, Any]: ...

    async def delete_change_set(self, **kwargs: Any) -> dict[str, Any]: ...


class SsmClient(Protocol):
    async def get_parameter(self, **kwargs: Any) -> dict[str, Any]: ...


class Sdk(Protocol):
    """An authenticated client bundle for one environment."""

    def cloudformation(self) -> CloudFormationClient: ...

    def ssm(self) -> SsmClient: ...


class SdkProvider(Protocol):
    """Issues authenticated clients; owns the base credentials."""

    async def default_account(self) -> str | None: ...

    @property
    def default_region(self) -> str: ...

    async def for_environment(
        self,
        environment: Environment,
        mode: Any,
        options: Any = None,
    ) -> Any: ...


class StackOperations(Protocol):
    """The create/update/delete algorithm, treated as opaque by the core."""

    async def deploy_stack(self, request: Any) -> Any: ...

    async def destroy_stack(self, request: Any) -> None: ...


class AssetHandler(Protocol):
    async def build(self) -> None: ...

    async def is_published(self) -> bool: ...

    async def publish(self) -> None: ...


class AssetHandlerFactory(Protocol):
    def handler_for(self, entry: Any, environment: Environment) -> AssetHandler: ...
