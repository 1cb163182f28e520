"""Lookup-role strategy for read-only, informational operations.

The lookup role is a read-only role that the bootstrap stack provides in
newer versions. Two things can go wrong when using it:

1. The role may not exist, in which case the provider hands back the
   default credentials (``did_assume_role`` is False).
2. The role may exist but lack permissions because the bootstrap stack is
   too old; the stack declares a minimum version for that case.

``resolve_lookup_or_deploy_role`` makes the fallback to the deploy role an
explicit, inspectable result instead of relying on exception flow.
"""

from dataclasses import dataclass
from typing import Union

from stackpilot.api.bootstrap import EnvironmentResources
from stackpilot.api.credentials import AccessMode, CredentialsOptions
from stackpilot.api.environment import replace_env_placeholders
from stackpilot.api.protocols import Sdk
from stackpilot.api.resolution import PreparedSdk, StackSdkResolver
from stackpilot.cli import output
from stackpilot.core.config import Environment, StackArtifact
from stackpilot.core.exceptions import VersionMismatchError


@dataclass(frozen=True)
class PreparedLookupSdk:
    sdk: Sdk
    resolved_environment: Environment
    env_resources: EnvironmentResources
    did_assume_role: bool


@dataclass(frozen=True)
class AssumedLookupRole:
    prepared: PreparedSdk


@dataclass(frozen=True)
class FellBackToDeployRole:
    prepared: PreparedSdk
    reason: str


LookupOrDeployRole = Union[AssumedLookupRole, FellBackToDeployRole]


async def prepare_sdk_with_lookup_role_for(resolver: StackSdkResolver, stack: StackArtifact) -> PreparedLookupSdk:
    """Try to resolve credentials for the stack's lookup role.

    When the role was assumed and the stack declares a bootstrap requirement
    for it, the requirement is checked. When it was not assumed, the default
    credentials are returned with a warning. Any failure is re-raised after
    a warning so the caller can fall back to the deploy role.
    """
    resolved = await resolver.resolve_environment(stack)
    lookup_role = stack.lookup_role
    lookup_role_arn = replace_env_placeholders(lookup_role.arn if lookup_role else None, resolved)

    try:
        client = await resolver.cached_client(
            resolved,
            AccessMode.FOR_READING,
            CredentialsOptions(
                assume_role_arn=lookup_role_arn,
                assume_role_external_id=replace_env_placeholders(
                    lookup_role.assume_role_external_id if lookup_role else None, resolved
                ),
                assume_role_additional_options=replace_env_placeholders(
                    lookup_role.assume_role_additional_options if lookup_role else None, resolved
                ),
            ),
        )
        env_resources = resolver.env_resources_for(resolved, client.sdk)

        if (
            client.did_assume_role
            and lookup_role is not None
            and lookup_role.requires_bootstrap_stack_version
            and lookup_role.bootstrap_stack_version_ssm_parameter
        ):
            version = await env_resources.version_from_ssm_parameter(lookup_role.bootstrap_stack_version_ssm_parameter)
            required = lookup_role.requires_bootstrap_stack_version
            if version < required:
                raise VersionMismatchError(
                    f"Bootstrap stack version '{required}' is required, found version '{version}'. "
                    f"To get rid of this error, please upgrade to bootstrap version >= {required}",
                    required=required,
                    found=version,
                    stack_name=stack.stack_name,
                )
        elif not client.did_assume_role:
            how = "exists but" if lookup_role else "does not exist, hence"
            output.warn(f"Lookup role {how} was not assumed. Proceeding with default credentials.")

        return PreparedLookupSdk(
            sdk=client.sdk,
            resolved_environment=resolved,
            env_resources=env_resources,
            did_assume_role=client.did_assume_role,
        )
    except Exception as e:
        output.debug(str(e))
        if lookup_role is not None:
            output.warn(f"Could not assume {lookup_role_arn}, proceeding anyway.")
        # Version problems must be visible even without --verbose.
        if isinstance(e, VersionMismatchError):
            output.error(str(e))
        raise


async def resolve_lookup_or_deploy_role(resolver: StackSdkResolver, stack: StackArtifact) -> LookupOrDeployRole:
    """Prefer the lookup role; fall back to the deploy role in read mode."""
    try:
        result = await prepare_sdk_with_lookup_role_for(resolver, stack)
    except Exception as e:
        reason = str(e)
    else:
        if result.did_assume_role:
            return AssumedLookupRole(
                PreparedSdk(
                    sdk=result.sdk,
                    resolved_environment=result.resolved_environment,
                    env_resources=result.env_resources,
                )
            )
        reason = "lookup role was not assumed"

    output.debug(f"Falling back to the deploy role for {stack.label}: {reason}")
    prepared = await resolver.prepare_sdk_for(stack, None, AccessMode.FOR_READING)
    return FellBackToDeployRole(prepared, reason)
