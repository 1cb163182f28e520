"""Configuration models: stacks, environments and per-operation option bags."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

UNKNOWN_ACCOUNT = "unknown-account"
UNKNOWN_REGION = "unknown-region"
DEFAULT_TOOLKIT_STACK_NAME = "StackPilotToolkit"

_ENV_URL = re.compile(r"^aws://([^/]+)/([^/]+)$")


class Environment(BaseModel):
    """A deployment target: one account in one region."""

    model_config = ConfigDict(frozen=True)

    account: str = UNKNOWN_ACCOUNT
    region: str = UNKNOWN_REGION

    @property
    def name(self) -> str:
        return f"aws://{self.account}/{self.region}"

    @property
    def is_resolved(self) -> bool:
        return self.account != UNKNOWN_ACCOUNT and self.region != UNKNOWN_REGION

    @classmethod
    def parse(cls, url: str) -> "Environment":
        """Parse an ``aws://<account>/<region>`` environment URL."""
        match = _ENV_URL.match(url.strip())
        if not match:
            raise ValueError(f"Unable to parse environment specification '{url}'. Expected format: aws://account/region")
        return cls(account=match.group(1), region=match.group(2))

    def __str__(self) -> str:
        return self.name


class LookupRole(BaseModel):
    """Read-only role used for discovery operations."""

    arn: str
    assume_role_external_id: str | None = None
    assume_role_additional_options: dict[str, Any] | None = None
    requires_bootstrap_stack_version: int | None = None
    bootstrap_stack_version_ssm_parameter: str | None = None


class StackArtifact(BaseModel):
    """A deployable stack as produced by the synthesis step."""

    stack_name: str
    display_name: str | None = None
    environment: Environment | None = None
    template: dict[str, Any] = Field(default_factory=dict)
    assume_role_arn: str | None = None
    assume_role_external_id: str | None = None
    assume_role_additional_options: dict[str, Any] | None = None
    cloudformation_execution_role_arn: str | None = None
    lookup_role: LookupRole | None = None
    requires_bootstrap_stack_version: int | None = None
    bootstrap_stack_version_ssm_parameter: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _parse_environment_url(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("environment"), str):
            data = {**data, "environment": Environment.parse(data["environment"])}
        return data

    @property
    def label(self) -> str:
        return self.display_name or self.stack_name


class AssetManifestArtifact(BaseModel):
    """Pointer to an asset manifest file plus its bootstrap requirement."""

    file: Path
    requires_bootstrap_stack_version: int | None = None
    bootstrap_stack_version_ssm_parameter: str | None = None


class HotswapMode(str, Enum):
    """How far a deployment may bypass the control plane for fast updates."""

    FALL_BACK = "fall-back"
    HOTSWAP_ONLY = "hotswap-only"
    FULL_DEPLOYMENT = "full-deployment"


class DirectDeployment(BaseModel):
    method: Literal["direct"] = "direct"


class ChangeSetDeployment(BaseModel):
    method: Literal["change-set"] = "change-set"
    change_set_name: str | None = None
    execute: bool = True


DeploymentMethod = Union[DirectDeployment, ChangeSetDeployment]


class Tag(BaseModel):
    key: str
    value: str


class DeployStackOptions(BaseModel):
    """Options for ``Deployments.deploy_stack``.

    ``execute`` and ``change_set_name`` are deprecated spellings of a
    change-set deployment method. They are folded into ``deployment_method``
    during validation; giving both forms is rejected.
    """

    stack: StackArtifact
    role_arn: str | None = None
    notification_arns: list[str] = Field(default_factory=list)
    deploy_name: str | None = None
    quiet: bool = False
    toolkit_stack_name: str | None = None
    reuse_assets: list[str] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)
    execute: bool | None = None
    change_set_name: str | None = None
    deployment_method: DeploymentMethod | None = None
    force: bool = False
    parameters: dict[str, str | None] = Field(default_factory=dict)
    use_previous_parameters: bool = True
    ci: bool = False
    rollback: bool = True
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    extra_user_agent: str | None = None
    resources_to_import: list[dict[str, Any]] | None = None
    override_template: dict[str, Any] | None = None
    asset_parallelism: bool = True

    @model_validator(mode="after")
    def _resolve_deployment_method(self) -> "DeployStackOptions":
        legacy = self.change_set_name is not None or self.execute is not None
        if legacy:
            if self.deployment_method is not None:
                raise ValueError(
                    "You cannot supply both 'deployment_method' and 'change_set_name/execute'. "
                    "Supply one or the other."
                )
            self.deployment_method = ChangeSetDeployment(
                change_set_name=self.change_set_name,
                execute=True if self.execute is None else self.execute,
            )
            self.change_set_name = None
            self.execute = None
        elif self.deployment_method is None:
            self.deployment_method = ChangeSetDeployment()
        return self


class RollbackStackOptions(BaseModel):
    stack: StackArtifact
    role_arn: str | None = None
    quiet: bool = False
    ci: bool = False
    toolkit_stack_name: str | None = None
    force: bool = False
    orphan_logical_ids: list[str] = Field(default_factory=list)
    validate_bootstrap_stack_version: bool = True

    @model_validator(mode="after")
    def _force_excludes_orphans(self) -> "RollbackStackOptions":
        if self.force and self.orphan_logical_ids:
            raise ValueError("Cannot combine --force with --orphan")
        return self


class DestroyStackOptions(BaseModel):
    stack: StackArtifact
    deploy_name: str | None = None
    role_arn: str | None = None
    quiet: bool = False
    force: bool = False
    ci: bool = False


class StackExistsOptions(BaseModel):
    stack: StackArtifact
    deploy_name: str | None = None
    try_lookup_role: bool = False


class BuildStackAssetsOptions(BaseModel):
    stack: StackArtifact
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    stack_name: str | None = None
    parallel: bool = True


class PublishStackAssetsOptions(BaseModel):
    stack: StackArtifact
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    stack_name: str | None = None
    parallel: bool = True


class StackPilotConfig(BaseModel):
    """Project configuration stored in ``.stackpilot/config.yaml``."""

    version: str = "1.0"
    toolkit_stack_name: str = DEFAULT_TOOLKIT_STACK_NAME
    profile: str | None = None
    region: str | None = None
    quiet: bool = False
    ci: bool = False
    stacks: list[StackArtifact] = Field(default_factory=list)

    def find_stack(self, name: str) -> StackArtifact | None:
        for stack in self.stacks:
            if stack.stack_name == name or stack.display_name == name:
                return stack
        return None
