"""Core module - shared types, configuration, and state management."""

from stackpilot.core.config import Environment, StackArtifact, StackPilotConfig
from stackpilot.core.exceptions import (
    StackPilotError,
    ConfigurationError,
    CredentialError,
    ControlPlaneError,
    VersionMismatchError,
    RollbackProgressError,
    RollbackExhaustedError,
    AssetOperationError,
)
from stackpilot.core.state import StateManager

__all__ = [
    "Environment",
    "StackArtifact",
    "StackPilotConfig",
    "StateManager",
    "StackPilotError",
    "ConfigurationError",
    "CredentialError",
    "ControlPlaneError",
    "VersionMismatchError",
    "RollbackProgressError",
    "RollbackExhaustedError",
    "AssetOperationError",
]
