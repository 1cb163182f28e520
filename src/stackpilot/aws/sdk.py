"""boto3-backed SDK provider.

boto3 is synchronous; every API call is pushed to a worker thread with
``asyncio.to_thread`` so the orchestration core can stay on one event loop.
``botocore`` client errors are translated into ``ControlPlaneError`` with the
AWS error code preserved.
"""

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stackpilot.api.credentials import AccessMode, CachedClient, CredentialsOptions
from stackpilot.cli import output
from stackpilot.core.config import Environment
from stackpilot.core.exceptions import ControlPlaneError, CredentialError

DEFAULT_REGION = "us-east-1"
ROLE_SESSION_NAME = "stackpilot-session"


class AsyncBotoClient:
    """Coroutine facade over a boto3 client."""

    def __init__(self, client: Any):
        self._client = client

    def __getattr__(self, name: str):
        method = getattr(self._client, name)

        async def call(**kwargs: Any) -> Any:
            try:
                return await asyncio.to_thread(method, **kwargs)
            except ClientError as e:
                error = e.response.get("Error", {})
                raise ControlPlaneError(error.get("Message") or str(e), code=error.get("Code")) from e
            except BotoCoreError as e:
                raise ControlPlaneError(str(e)) from e

        return call


class BotoSdk:
    """Clients for one environment, created lazily from one boto3 session."""

    def __init__(self, session: boto3.Session, region: str):
        self.session = session
        self.region = region
        self._clients: dict[str, AsyncBotoClient] = {}

    def _client(self, service: str) -> AsyncBotoClient:
        if service not in self._clients:
            self._clients[service] = AsyncBotoClient(self.session.client(service, region_name=self.region))
        return self._clients[service]

    def cloudformation(self) -> AsyncBotoClient:
        return self._client("cloudformation")

    def ssm(self) -> AsyncBotoClient:
        return self._client("ssm")


class Boto3SdkProvider:
    """Resolves base credentials from the standard boto3 chain and assumes roles on top."""

    def __init__(self, profile: str | None = None, region: str | None = None):
        self.session = boto3.Session(profile_name=profile, region_name=region)
        self._default_account: str | None = None
        self._default_account_resolved = False

    @property
    def default_region(self) -> str:
        return self.session.region_name or DEFAULT_REGION

    async def default_account(self) -> str | None:
        if not self._default_account_resolved:
            sts = AsyncBotoClient(self.session.client("sts", region_name=self.default_region))
            try:
                identity = await sts.get_caller_identity()
                self._default_account = identity["Account"]
            except ControlPlaneError as e:
                output.debug(f"Unable to determine the default AWS account: {e}")
                self._default_account = None
            self._default_account_resolved = True
        return self._default_account

    async def for_environment(
        self,
        environment: Environment,
        mode: AccessMode,
        options: CredentialsOptions | None = None,
    ) -> CachedClient:
        role_arn = options.assume_role_arn if options else None
        if not role_arn:
            await self._require_default_account(environment)
            return CachedClient(BotoSdk(self.session, environment.region), did_assume_role=False)

        output.debug(f"Assuming role {role_arn} ({mode.value}) for {environment}")
        sts = AsyncBotoClient(self.session.client("sts", region_name=environment.region))
        kwargs: dict[str, Any] = {"RoleArn": role_arn, "RoleSessionName": ROLE_SESSION_NAME}
        if options.assume_role_external_id:
            kwargs["ExternalId"] = options.assume_role_external_id
        kwargs.update(options.assume_role_additional_options or {})

        try:
            response = await sts.assume_role(**kwargs)
        except ControlPlaneError as e:
            # Default credentials for the right account are an acceptable stand-in.
            if await self.default_account() == environment.account:
                output.debug(f"Assuming role {role_arn} failed: {e}")
                return CachedClient(BotoSdk(self.session, environment.region), did_assume_role=False)
            raise CredentialError(f"Could not assume role {role_arn}: {e}", role_arn=role_arn) from e

        credentials = response["Credentials"]
        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=environment.region,
        )
        return CachedClient(BotoSdk(session, environment.region), did_assume_role=True)

    async def _require_default_account(self, environment: Environment) -> None:
        account = await self.default_account()
        if account is None:
            raise CredentialError(f"Unable to resolve AWS credentials for {environment}")
        if account != environment.account:
            raise CredentialError(
                f"Need to perform AWS calls for account {environment.account}, "
                f"but the current credentials are for {account}"
            )
