"""boto3 adapters for the orchestration core."""

from stackpilot.aws.sdk import AsyncBotoClient, Boto3SdkProvider, BotoSdk
from stackpilot.aws.stack_operations import Boto3StackOperations

__all__ = [
    "AsyncBotoClient",
    "BotoSdk",
    "Boto3SdkProvider",
    "Boto3StackOperations",
]
