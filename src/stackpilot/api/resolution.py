"""Turns a stack reference into credentials, environment and bootstrap access."""

from dataclasses import dataclass

from stackpilot.api.bootstrap import EnvironmentResources, EnvironmentResourcesRegistry
from stackpilot.api.credentials import AccessMode, CachedClient, CredentialCache, CredentialsOptions
from stackpilot.api.environment import EnvironmentResolver, replace_env_placeholders
from stackpilot.api.protocols import Sdk
from stackpilot.core.config import Environment, StackArtifact
from stackpilot.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class PreparedSdk:
    """Everything needed to touch a stack with the deploy role.

    ``cloudformation_role_arn`` is the execution role to pass through to the
    control plane, or None to use the caller's role.
    """

    sdk: Sdk
    resolved_environment: Environment
    env_resources: EnvironmentResources
    cloudformation_role_arn: str | None = None


class StackSdkResolver:
    def __init__(
        self,
        environment_resolver: EnvironmentResolver,
        credential_cache: CredentialCache,
        environment_resources: EnvironmentResourcesRegistry,
    ):
        self.environment_resolver = environment_resolver
        self.credential_cache = credential_cache
        self.environment_resources = environment_resources

    async def resolve_environment(self, stack: StackArtifact) -> Environment:
        if stack.environment is None:
            raise ConfigurationError(f"The stack {stack.label} does not have an environment")
        return await self.environment_resolver.resolve(stack.environment)

    async def cached_client(
        self,
        environment: Environment,
        mode: AccessMode,
        options: CredentialsOptions | None = None,
    ) -> CachedClient:
        return await self.credential_cache.for_environment(environment, mode, options)

    def env_resources_for(self, environment: Environment, sdk: Sdk) -> EnvironmentResources:
        return self.environment_resources.for_environment(environment, sdk)

    async def prepare_sdk_for(
        self,
        stack: StackArtifact,
        role_arn: str | None,
        mode: AccessMode,
    ) -> PreparedSdk:
        """Resolve the deploy-role client for a stack.

        The role override wins over the stack's own execution role. Account,
        region and partition placeholders are substituted before the client
        is looked up in the credential cache.
        """
        resolved = await self.resolve_environment(stack)

        options = CredentialsOptions(
            assume_role_arn=replace_env_placeholders(stack.assume_role_arn, resolved),
            assume_role_external_id=replace_env_placeholders(stack.assume_role_external_id, resolved),
            assume_role_additional_options=replace_env_placeholders(stack.assume_role_additional_options, resolved),
        )
        cloudformation_role_arn = replace_env_placeholders(
            role_arn if role_arn is not None else stack.cloudformation_execution_role_arn,
            resolved,
        )

        client = await self.cached_client(resolved, mode, options)
        return PreparedSdk(
            sdk=client.sdk,
            resolved_environment=resolved,
            env_resources=self.env_resources_for(resolved, client.sdk),
            cloudformation_role_arn=cloudformation_role_arn,
        )
