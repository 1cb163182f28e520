"""Bootstrap metadata access and the version compatibility gate."""

from dataclasses import dataclass

from stackpilot.api.cloudformation import CloudFormationStack
from stackpilot.api.protocols import Sdk
from stackpilot.cli import output
from stackpilot.core.config import DEFAULT_TOOLKIT_STACK_NAME, Environment
from stackpilot.core.exceptions import ConfigurationError, ControlPlaneError, VersionMismatchError

BOOTSTRAP_VERSION_OUTPUT = "BootstrapVersion"


@dataclass(frozen=True)
class ToolkitInfo:
    found: bool
    version: int = 0


class EnvironmentResources:
    """Reads bootstrap metadata for one environment with one client."""

    def __init__(self, environment: Environment, sdk: Sdk, toolkit_stack_name: str = DEFAULT_TOOLKIT_STACK_NAME):
        self.environment = environment
        self.sdk = sdk
        self.toolkit_stack_name = toolkit_stack_name
        self._ssm_versions: dict[str, int] = {}
        self._toolkit: ToolkitInfo | None = None

    async def version_from_ssm_parameter(self, parameter_name: str) -> int:
        """Read a bootstrap version from an SSM parameter, once per parameter."""
        cached = self._ssm_versions.get(parameter_name)
        if cached is not None:
            return cached

        try:
            response = await self.sdk.ssm().get_parameter(Name=parameter_name)
        except ControlPlaneError as e:
            if e.code == "ParameterNotFound":
                raise ConfigurationError(
                    f"SSM parameter {parameter_name} not found. Has the environment been bootstrapped?"
                ) from e
            raise

        value = response.get("Parameter", {}).get("Value")
        try:
            version = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"SSM parameter {parameter_name} is not a number: {value!r}") from e

        self._ssm_versions[parameter_name] = version
        return version

    async def lookup_toolkit(self) -> ToolkitInfo:
        if self._toolkit is None:
            stack = await CloudFormationStack.lookup(self.sdk.cloudformation(), self.toolkit_stack_name)
            if not stack.exists:
                output.debug(f"The environment {self.environment} doesn't have the toolkit stack ({self.toolkit_stack_name}) installed")
                self._toolkit = ToolkitInfo(found=False)
            else:
                outputs = stack.outputs
                self._toolkit = ToolkitInfo(
                    found=True,
                    version=int(outputs.get(BOOTSTRAP_VERSION_OUTPUT, "0")),
                )
        return self._toolkit

    async def validate_version(self, expected_version: int | None, ssm_parameter: str | None = None) -> None:
        """Raise VersionMismatchError when the environment is older than expected."""
        if expected_version is None:
            return

        version: int | None = None
        if ssm_parameter is not None:
            try:
                version = await self.version_from_ssm_parameter(ssm_parameter)
            except ControlPlaneError as e:
                if e.code != "AccessDeniedException":
                    raise
                output.warn(
                    f"Could not read SSM parameter {ssm_parameter}: {e}. "
                    "Falling back to the toolkit stack outputs."
                )

        if version is None:
            version = (await self.lookup_toolkit()).version

        if version < expected_version:
            raise VersionMismatchError(
                f"This deployment requires bootstrap stack version '{expected_version}', found '{version}'. "
                f"Please upgrade the bootstrap stack ({self.toolkit_stack_name}) in {self.environment}.",
                required=expected_version,
                found=version,
            )


class EnvironmentResourcesRegistry:
    """Hands out one EnvironmentResources per (environment, client) pair."""

    def __init__(self, toolkit_stack_name: str | None = None):
        self.toolkit_stack_name = toolkit_stack_name or DEFAULT_TOOLKIT_STACK_NAME
        self._cache: dict[tuple[Environment, int], EnvironmentResources] = {}

    def for_environment(self, environment: Environment, sdk: Sdk) -> EnvironmentResources:
        # EnvironmentResources holds the sdk, so its id stays unique while cached.
        key = (environment, id(sdk))
        resources = self._cache.get(key)
        if resources is None:
            resources = EnvironmentResources(environment, sdk, self.toolkit_stack_name)
            self._cache[key] = resources
        return resources


async def validate_bootstrap_stack_version(
    stack_name: str,
    requires_bootstrap_stack_version: int | None,
    bootstrap_stack_version_ssm_parameter: str | None,
    env_resources: EnvironmentResources,
) -> None:
    """Check the environment's bootstrap version, prefixing failures with the stack name."""
    try:
        await env_resources.validate_version(requires_bootstrap_stack_version, bootstrap_stack_version_ssm_parameter)
    except VersionMismatchError as e:
        raise e.for_stack(stack_name) from e
    except ConfigurationError as e:
        raise ConfigurationError(f"{stack_name}: {e}") from e
