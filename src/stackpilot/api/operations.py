"""Requests handed to the stack create/update/delete collaborator."""

from dataclasses import dataclass, field

from stackpilot.api.bootstrap import EnvironmentResources
from stackpilot.api.protocols import Sdk
from stackpilot.core.config import DeployStackOptions, Environment, StackArtifact


@dataclass(frozen=True)
class DeployStackRequest:
    options: DeployStackOptions
    sdk: Sdk
    resolved_environment: Environment
    env_resources: EnvironmentResources
    cloudformation_role_arn: str | None = None

    @property
    def stack_name(self) -> str:
        return self.options.deploy_name or self.options.stack.stack_name


@dataclass(frozen=True)
class DeployStackResult:
    no_op: bool
    outputs: dict[str, str] = field(default_factory=dict)
    stack_arn: str | None = None


@dataclass(frozen=True)
class DestroyStackRequest:
    stack: StackArtifact
    sdk: Sdk
    cloudformation_role_arn: str | None = None
    deploy_name: str | None = None
    quiet: bool = False
    ci: bool = False

    @property
    def stack_name(self) -> str:
        return self.deploy_name or self.stack.stack_name
