"""Deployment orchestration core."""

from stackpilot.api.credentials import AccessMode, CachedClient, CredentialCache, CredentialsOptions
from stackpilot.api.deployments import Deployments
from stackpilot.api.lookup_role import AssumedLookupRole, FellBackToDeployRole
from stackpilot.api.rollback import RollbackStackResult

__all__ = [
    "AccessMode",
    "AssumedLookupRole",
    "CachedClient",
    "CredentialCache",
    "CredentialsOptions",
    "Deployments",
    "FellBackToDeployRole",
    "RollbackStackResult",
]
