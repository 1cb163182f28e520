"""Credential resolution cache.

One ``CredentialCache`` lives on each ``Deployments`` instance. It hands out
the same ``CachedClient`` for equal (environment, mode, credentials options)
inputs and asks the SDK provider at most once per key, even when several
coroutines race on first use.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stackpilot.api.protocols import Sdk, SdkProvider
from stackpilot.cli import output
from stackpilot.core.config import Environment


class AccessMode(str, Enum):
    """Which default role class applies when no role is given explicitly."""

    FOR_READING = "ForReading"
    FOR_WRITING = "ForWriting"


@dataclass(frozen=True)
class CredentialsOptions:
    assume_role_arn: str | None = None
    assume_role_external_id: str | None = None
    assume_role_additional_options: dict[str, Any] | None = None


@dataclass(frozen=True)
class CachedClient:
    sdk: Sdk
    did_assume_role: bool


def cache_key(environment: Environment, mode: AccessMode, options: CredentialsOptions | None = None) -> str:
    options = options or CredentialsOptions()
    elements = [
        environment.account,
        environment.region,
        mode.value,
        options.assume_role_arn or "",
        options.assume_role_external_id or "",
    ]
    if options.assume_role_additional_options:
        elements.append(json.dumps(options.assume_role_additional_options, sort_keys=True))
    return ":".join(elements)


class CredentialCache:
    def __init__(self, sdk_provider: SdkProvider):
        self.sdk_provider = sdk_provider
        self._clients: dict[str, CachedClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: str) -> bool:
        return key in self._clients

    async def for_environment(
        self,
        environment: Environment,
        mode: AccessMode,
        options: CredentialsOptions | None = None,
    ) -> CachedClient:
        key = cache_key(environment, mode, options)
        existing = self._clients.get(key)
        if existing is not None:
            return existing

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            existing = self._clients.get(key)
            if existing is not None:
                return existing

            output.debug(f"Resolving credentials for {environment} ({mode.value})")
            # A failure here leaves the key unpopulated so a later attempt can retry.
            client = await self.sdk_provider.for_environment(environment, mode, options)
            self._clients[key] = client
            return client
