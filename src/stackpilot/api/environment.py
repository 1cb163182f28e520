"""Environment resolution and placeholder substitution."""

from typing import Any

from stackpilot.api.protocols import SdkProvider
from stackpilot.cli import output
from stackpilot.core.config import UNKNOWN_ACCOUNT, UNKNOWN_REGION, Environment
from stackpilot.core.exceptions import ConfigurationError

ACCOUNT_PLACEHOLDER = "${AWS::AccountId}"
REGION_PLACEHOLDER = "${AWS::Region}"
PARTITION_PLACEHOLDER = "${AWS::Partition}"

_PARTITION_PREFIXES = (
    ("cn-", "aws-cn"),
    ("us-gov-", "aws-us-gov"),
    ("us-isob-", "aws-iso-b"),
    ("us-iso-", "aws-iso"),
)


def partition_for_region(region: str) -> str:
    for prefix, partition in _PARTITION_PREFIXES:
        if region.startswith(prefix):
            return partition
    return "aws"


class EnvironmentResolver:
    """Turns a stack's declared environment into a concrete account and region."""

    def __init__(self, sdk_provider: SdkProvider):
        self.sdk_provider = sdk_provider

    async def resolve(self, environment: Environment) -> Environment:
        region = environment.region
        if region == UNKNOWN_REGION:
            region = self.sdk_provider.default_region

        account = environment.account
        if account == UNKNOWN_ACCOUNT:
            account = await self.sdk_provider.default_account()
            if not account:
                raise ConfigurationError(
                    "Unable to resolve AWS account to use. It must be either configured when you "
                    "define your stack, or through the environment"
                )
            output.debug(f"Resolved unknown account to {account}")

        return Environment(account=account, region=region)


def replace_env_placeholders(value: Any, environment: Environment) -> Any:
    """Substitute account, region and partition placeholders.

    Strings are substituted directly; dicts and lists are walked recursively so
    that nested assume-role option payloads are covered too. None passes through.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return (
            value.replace(ACCOUNT_PLACEHOLDER, environment.account)
            .replace(REGION_PLACEHOLDER, environment.region)
            .replace(PARTITION_PLACEHOLDER, partition_for_region(environment.region))
        )
    if isinstance(value, dict):
        return {k: replace_env_placeholders(v, environment) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_env_placeholders(v, environment) for v in value]
    return value
