"""stackpilot - orchestrates CloudFormation stack deployments."""

__version__ = "0.1.0"
