"""The Deployments façade: one entry point per deployment use case.

A ``Deployments`` instance is the scope of one orchestration run. It owns
the credential cache, the environment-resources registry and the publisher
cache, so clients and publishers are shared across every call made through
the same instance and never beyond it.
"""

import json
from typing import Any

from stackpilot.api.assets import AssetManifest, ManifestEntry, Publisher, PublisherCache
from stackpilot.api.bootstrap import EnvironmentResourcesRegistry, validate_bootstrap_stack_version
from stackpilot.api.cloudformation import DEFAULT_POLL_INTERVAL, CloudFormationStack
from stackpilot.api.credentials import AccessMode, CredentialCache
from stackpilot.api.environment import EnvironmentResolver
from stackpilot.api.lookup_role import (
    LookupOrDeployRole,
    PreparedLookupSdk,
    prepare_sdk_with_lookup_role_for,
    resolve_lookup_or_deploy_role,
)
from stackpilot.api.nested_stacks import RootTemplateWithNestedStacks, load_current_template_with_nested_stacks
from stackpilot.api.operations import DeployStackRequest, DeployStackResult, DestroyStackRequest
from stackpilot.api.protocols import AssetHandlerFactory, SdkProvider, StackOperations
from stackpilot.api.resolution import PreparedSdk, StackSdkResolver
from stackpilot.api.rollback import BOOTSTRAP_STACK_VERSION_FOR_ROLLBACK, RollbackOrchestrator, RollbackStackResult
from stackpilot.cli import output
from stackpilot.core.config import (
    AssetManifestArtifact,
    BuildStackAssetsOptions,
    DeployStackOptions,
    DestroyStackOptions,
    Environment,
    PublishStackAssetsOptions,
    RollbackStackOptions,
    StackArtifact,
    StackExistsOptions,
)
from stackpilot.core.exceptions import AssetOperationError, ConfigurationError


class Deployments:
    """Scope for a set of deployments against one control plane."""

    def __init__(
        self,
        sdk_provider: SdkProvider,
        stack_operations: StackOperations | None = None,
        asset_handlers: AssetHandlerFactory | None = None,
        toolkit_stack_name: str | None = None,
        quiet: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.sdk_provider = sdk_provider
        self.stack_operations = stack_operations
        self.asset_handlers = asset_handlers
        self.quiet = quiet
        self.poll_interval = poll_interval
        self.credential_cache = CredentialCache(sdk_provider)
        self.environment_resources = EnvironmentResourcesRegistry(toolkit_stack_name)
        self.resolver = StackSdkResolver(
            EnvironmentResolver(sdk_provider),
            self.credential_cache,
            self.environment_resources,
        )
        self._publishers: PublisherCache | None = None

    async def resolve_environment(self, stack: StackArtifact) -> Environment:
        return await self.resolver.resolve_environment(stack)

    async def read_current_template(self, stack: StackArtifact) -> dict[str, Any]:
        output.debug(f"Reading existing template for stack {stack.label}.")
        prepared = (await self.prepare_sdk_with_lookup_or_deploy_role(stack)).prepared
        deployed = await CloudFormationStack.lookup(prepared.sdk.cloudformation(), stack.stack_name)
        return await deployed.template()

    async def read_current_template_with_nested_stacks(self, stack: StackArtifact) -> RootTemplateWithNestedStacks:
        prepared = (await self.prepare_sdk_with_lookup_or_deploy_role(stack)).prepared
        return await load_current_template_with_nested_stacks(prepared.sdk.cloudformation(), stack.stack_name)

    async def resource_identifier_summaries(self, stack: StackArtifact) -> list[dict[str, Any]]:
        output.debug(f"Retrieving template summary for stack {stack.label}.")
        # The deploy role is used because the lookup role may not read encrypted staging objects.
        prepared = await self.resolver.prepare_sdk_for(stack, None, AccessMode.FOR_READING)
        response = await prepared.sdk.cloudformation().get_template_summary(TemplateBody=json.dumps(stack.template))
        summaries = response.get("ResourceIdentifierSummaries")
        if summaries is None:
            output.debug('GetTemplateSummary API call did not return "ResourceIdentifierSummaries"')
        return summaries or []

    async def deploy_stack(self, options: DeployStackOptions) -> DeployStackResult:
        operations = self._require_stack_operations()
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)

        await validate_bootstrap_stack_version(
            options.stack.stack_name,
            options.stack.requires_bootstrap_stack_version,
            options.stack.bootstrap_stack_version_ssm_parameter,
            prepared.env_resources,
        )

        return await operations.deploy_stack(
            DeployStackRequest(
                options=options,
                sdk=prepared.sdk,
                resolved_environment=prepared.resolved_environment,
                env_resources=prepared.env_resources,
                cloudformation_role_arn=prepared.cloudformation_role_arn,
            )
        )

    async def rollback_stack(self, options: RollbackStackOptions) -> RollbackStackResult:
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)

        if options.validate_bootstrap_stack_version:
            required = max(
                BOOTSTRAP_STACK_VERSION_FOR_ROLLBACK,
                options.stack.requires_bootstrap_stack_version or 0,
            )
            await validate_bootstrap_stack_version(
                options.stack.stack_name,
                required,
                options.stack.bootstrap_stack_version_ssm_parameter,
                prepared.env_resources,
            )

        orchestrator = RollbackOrchestrator(
            prepared.sdk.cloudformation(),
            options.stack.stack_name,
            role_arn=prepared.cloudformation_role_arn,
            force=options.force,
            orphan_logical_ids=options.orphan_logical_ids,
            quiet=options.quiet,
            poll_interval=self.poll_interval,
        )
        return await orchestrator.run()

    async def destroy_stack(self, options: DestroyStackOptions) -> None:
        operations = self._require_stack_operations()
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)
        await operations.destroy_stack(
            DestroyStackRequest(
                stack=options.stack,
                sdk=prepared.sdk,
                cloudformation_role_arn=prepared.cloudformation_role_arn,
                deploy_name=options.deploy_name,
                quiet=options.quiet,
                ci=options.ci,
            )
        )

    async def stack_exists(self, options: StackExistsOptions) -> bool:
        if options.try_lookup_role:
            prepared = (await self.prepare_sdk_with_lookup_or_deploy_role(options.stack)).prepared
        else:
            prepared = await self.resolver.prepare_sdk_for(options.stack, None, AccessMode.FOR_READING)
        stack = await CloudFormationStack.lookup(
            prepared.sdk.cloudformation(),
            options.deploy_name or options.stack.stack_name,
        )
        return stack.exists

    async def prepare_sdk_with_deploy_role(self, stack: StackArtifact) -> PreparedSdk:
        return await self.resolver.prepare_sdk_for(stack, None, AccessMode.FOR_WRITING)

    async def prepare_sdk_with_lookup_role_for(self, stack: StackArtifact) -> PreparedLookupSdk:
        return await prepare_sdk_with_lookup_role_for(self.resolver, stack)

    async def prepare_sdk_with_lookup_or_deploy_role(self, stack: StackArtifact) -> LookupOrDeployRole:
        return await resolve_lookup_or_deploy_role(self.resolver, stack)

    async def build_assets(self, asset_artifact: AssetManifestArtifact, options: BuildStackAssetsOptions) -> None:
        """Build every entry of an asset manifest file."""
        publisher = await self._prepare_and_validate_assets(asset_artifact, options)
        await publisher.build_all(parallel=options.parallel)
        self._raise_on_failures(publisher, "build")

    async def publish_assets(self, asset_artifact: AssetManifestArtifact, options: PublishStackAssetsOptions) -> None:
        """Build and publish every entry of an asset manifest file."""
        publisher = await self._prepare_and_validate_assets(asset_artifact, options)
        await publisher.publish_all(parallel=options.parallel)
        self._raise_on_failures(publisher, "publish")

    async def build_single_asset(
        self,
        asset_artifact: AssetManifestArtifact,
        manifest: AssetManifest,
        entry: ManifestEntry,
        options: BuildStackAssetsOptions,
    ) -> None:
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)

        await validate_bootstrap_stack_version(
            options.stack.stack_name,
            asset_artifact.requires_bootstrap_stack_version,
            asset_artifact.bootstrap_stack_version_ssm_parameter,
            prepared.env_resources,
        )

        publisher = self.cached_publisher(manifest, prepared.resolved_environment, options.stack_name)
        await publisher.build_entry(entry)
        if publisher.has_failures:
            raise AssetOperationError(entry.id, "build")

    async def publish_single_asset(
        self,
        manifest: AssetManifest,
        entry: ManifestEntry,
        options: PublishStackAssetsOptions,
    ) -> None:
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)

        # The bootstrap version was already validated when the entry was built.
        publisher = self.cached_publisher(manifest, prepared.resolved_environment, options.stack_name)
        await publisher.publish_entry(entry)
        if publisher.has_failures:
            raise AssetOperationError(entry.id, "publish")

    async def is_single_asset_published(
        self,
        manifest: AssetManifest,
        entry: ManifestEntry,
        options: PublishStackAssetsOptions,
    ) -> bool:
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)
        publisher = self.cached_publisher(manifest, prepared.resolved_environment, options.stack_name)
        return await publisher.is_entry_published(entry)

    def cached_publisher(
        self,
        manifest: AssetManifest,
        environment: Environment,
        stack_name: str | None = None,
    ) -> Publisher:
        if self._publishers is None:
            if self.asset_handlers is None:
                raise ConfigurationError("No asset handlers configured; cannot build or publish assets")
            self._publishers = PublisherCache(self.asset_handlers, quiet=self.quiet)
        return self._publishers.get(manifest, environment, stack_name)

    async def _prepare_and_validate_assets(self, asset_artifact: AssetManifestArtifact, options) -> Publisher:
        prepared = await self.resolver.prepare_sdk_for(options.stack, options.role_arn, AccessMode.FOR_WRITING)

        await validate_bootstrap_stack_version(
            options.stack.stack_name,
            asset_artifact.requires_bootstrap_stack_version,
            asset_artifact.bootstrap_stack_version_ssm_parameter,
            prepared.env_resources,
        )

        manifest = AssetManifest.from_file(asset_artifact.file)
        return self.cached_publisher(manifest, prepared.resolved_environment, options.stack_name)

    def _raise_on_failures(self, publisher: Publisher, operation: str) -> None:
        if publisher.has_failures:
            failed = ", ".join(entry.id for entry, _ in publisher.failures)
            raise AssetOperationError(failed, operation)

    def _require_stack_operations(self) -> StackOperations:
        if self.stack_operations is None:
            raise ConfigurationError("No stack operations configured; cannot deploy or destroy stacks")
        return self.stack_operations
