"""
Unit tests for bootstrap metadata and the version gate.
"""
import asyncio
from unittest.mock import patch

import pytest

from stackpilot.api.bootstrap import EnvironmentResources, EnvironmentResourcesRegistry, validate_bootstrap_stack_version
from stackpilot.core.config import DEFAULT_TOOLKIT_STACK_NAME
from stackpilot.core.exceptions import ConfigurationError, ControlPlaneError, VersionMismatchError

from conftest import BOOTSTRAP_PARAMETER, FakeSdk


@pytest.fixture
def resources(cfn, ssm, environment):
    return EnvironmentResources(environment, FakeSdk(cfn, ssm))


class TestValidateBootstrapStackVersion:
    """Tests for the bootstrap compatibility gate."""

    def test_no_requirement_reads_nothing(self, resources, ssm, cfn):
        asyncio.run(validate_bootstrap_stack_version("my-stack", None, BOOTSTRAP_PARAMETER, resources))
        assert ssm.calls == []
        assert cfn.calls == []

    def test_ssm_version_satisfies_requirement(self, resources, ssm):
        asyncio.run(validate_bootstrap_stack_version("my-stack", 30, BOOTSTRAP_PARAMETER, resources))
        assert ssm.calls == [BOOTSTRAP_PARAMETER]

    def test_mismatch_is_prefixed_with_stack_name(self, resources, ssm):
        """A too-old environment raises with the stack name in front of the message."""
        ssm.parameters[BOOTSTRAP_PARAMETER] = 5

        with pytest.raises(VersionMismatchError) as exc_info:
            asyncio.run(validate_bootstrap_stack_version("my-stack", 6, BOOTSTRAP_PARAMETER, resources))

        error = exc_info.value
        assert str(error).startswith("my-stack: ")
        assert "requires bootstrap stack version '6', found '5'" in str(error)
        assert (error.required, error.found, error.stack_name) == (6, 5, "my-stack")

    def test_missing_parameter_is_a_configuration_error(self, resources, ssm):
        ssm.parameters.clear()

        with pytest.raises(ConfigurationError, match="^my-stack: .*Has the environment been bootstrapped"):
            asyncio.run(validate_bootstrap_stack_version("my-stack", 6, BOOTSTRAP_PARAMETER, resources))

    def test_non_numeric_parameter(self, resources, ssm):
        ssm.parameters[BOOTSTRAP_PARAMETER] = "latest"

        with pytest.raises(ConfigurationError, match="is not a number"):
            asyncio.run(validate_bootstrap_stack_version("my-stack", 6, BOOTSTRAP_PARAMETER, resources))

    def test_toolkit_stack_output_without_parameter(self, resources, cfn):
        """Without an SSM parameter the toolkit stack's BootstrapVersion output is used."""
        cfn.add_stack(DEFAULT_TOOLKIT_STACK_NAME, "UPDATE_COMPLETE", outputs={"BootstrapVersion": "20"})

        asyncio.run(validate_bootstrap_stack_version("my-stack", 14, None, resources))

        with pytest.raises(VersionMismatchError):
            asyncio.run(validate_bootstrap_stack_version("my-stack", 21, None, resources))

    def test_missing_toolkit_stack_counts_as_version_zero(self, resources):
        with pytest.raises(VersionMismatchError) as exc_info:
            asyncio.run(validate_bootstrap_stack_version("my-stack", 1, None, resources))
        assert exc_info.value.found == 0

    def test_access_denied_falls_back_to_toolkit_stack(self, resources, ssm, cfn):
        ssm.error = ControlPlaneError("not allowed", code="AccessDeniedException")
        cfn.add_stack(DEFAULT_TOOLKIT_STACK_NAME, "CREATE_COMPLETE", outputs={"BootstrapVersion": "25"})

        with patch("stackpilot.api.bootstrap.output") as mock_output:
            asyncio.run(validate_bootstrap_stack_version("my-stack", 23, BOOTSTRAP_PARAMETER, resources))

        mock_output.warn.assert_called_once()

    def test_other_control_plane_errors_propagate(self, resources, ssm):
        ssm.error = ControlPlaneError("throttled", code="ThrottlingException")

        with pytest.raises(ControlPlaneError, match="throttled"):
            asyncio.run(validate_bootstrap_stack_version("my-stack", 6, BOOTSTRAP_PARAMETER, resources))


class TestEnvironmentResources:
    def test_parameter_is_read_once(self, resources, ssm):
        """The version of one parameter is cached on the resources object."""

        async def run():
            await resources.validate_version(6, BOOTSTRAP_PARAMETER)
            await resources.validate_version(10, BOOTSTRAP_PARAMETER)

        asyncio.run(run())

        assert ssm.calls == [BOOTSTRAP_PARAMETER]

    def test_registry_reuses_resources_per_environment_and_client(self, cfn, ssm, environment):
        registry = EnvironmentResourcesRegistry("CustomToolkit")
        sdk = FakeSdk(cfn, ssm)

        first = registry.for_environment(environment, sdk)

        assert registry.for_environment(environment, sdk) is first
        assert registry.for_environment(environment, FakeSdk(cfn, ssm)) is not first
        assert first.toolkit_stack_name == "CustomToolkit"
