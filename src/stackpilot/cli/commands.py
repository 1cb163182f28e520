"""stackpilot CLI commands."""

import asyncio
import json
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.markup import escape

from stackpilot.cli import output
from stackpilot.core.config import (
    DestroyStackOptions,
    RollbackStackOptions,
    StackArtifact,
    StackExistsOptions,
    StackPilotConfig,
)
from stackpilot.core.exceptions import ConfigurationError, StackPilotError
from stackpilot.core.state import StateManager


def _load_project() -> tuple[StateManager, StackPilotConfig]:
    state = StateManager(Path.cwd())
    config = state.load_config()
    if config is None:
        raise ConfigurationError(f"No config found at {state.config_path}.")
    return state, config


def _find_stack(config: StackPilotConfig, name: str) -> StackArtifact:
    stack = config.find_stack(name)
    if stack is None:
        known = ", ".join(s.stack_name for s in config.stacks) or "none"
        raise ConfigurationError(f"No stack named '{name}' in the project (known stacks: {known})")
    return stack


def _deployments(config: StackPilotConfig, quiet: bool = False):
    from stackpilot.api.deployments import Deployments
    from stackpilot.aws import Boto3SdkProvider, Boto3StackOperations

    return Deployments(
        Boto3SdkProvider(profile=config.profile, region=config.region),
        stack_operations=Boto3StackOperations(),
        toolkit_stack_name=config.toolkit_stack_name,
        quiet=quiet or config.quiet,
    )


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (StackPilotError, ValidationError) as e:
        output.error(str(e))
        raise typer.Exit(1)
    except KeyboardInterrupt:
        output.warn("Cancelled")
        raise typer.Exit(130)


def environment_cmd(
    stack_name: str = typer.Argument(..., help="Stack whose target environment to resolve."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Resolve the account and region a stack deploys to."""
    output.set_verbose(verbose)
    _run(_environment_async(stack_name))


async def _environment_async(stack_name: str) -> None:
    _, config = _load_project()
    stack = _find_stack(config, stack_name)
    environment = await _deployments(config).resolve_environment(stack)
    output.step_done(f"{stack.label}: {environment}")


def exists_cmd(
    stack_name: str = typer.Argument(..., help="Stack to check."),
    deploy_name: str = typer.Option(None, "--deploy-name", help="Deployed stack name, if different."),
    lookup_role: bool = typer.Option(False, "--lookup-role", help="Try the read-only lookup role first."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Check whether a stack is deployed."""
    output.set_verbose(verbose)
    _run(_exists_async(stack_name, deploy_name, lookup_role))


async def _exists_async(stack_name: str, deploy_name: str | None, lookup_role: bool) -> None:
    _, config = _load_project()
    stack = _find_stack(config, stack_name)
    options = StackExistsOptions(stack=stack, deploy_name=deploy_name, try_lookup_role=lookup_role)
    if await _deployments(config).stack_exists(options):
        output.step_done(f"{stack.label} is deployed")
    else:
        output.info(f"{stack.label} is not deployed")
        raise typer.Exit(1)


def template_cmd(
    stack_name: str = typer.Argument(..., help="Stack whose deployed template to print."),
    nested: bool = typer.Option(False, "--nested", help="Include nested stack templates."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Print the currently deployed template of a stack."""
    output.set_verbose(verbose)
    _run(_template_async(stack_name, nested))


async def _template_async(stack_name: str, nested: bool) -> None:
    _, config = _load_project()
    stack = _find_stack(config, stack_name)
    deployments = _deployments(config)
    if nested:
        with output.spinner(f"Reading deployed templates of {stack.label}"):
            result = await deployments.read_current_template_with_nested_stacks(stack)
        template = result.deployed_root_template
        output.console.print_json(json.dumps(template))
        for logical_id, child in result.nested_stacks.items():
            output.console.print(f"\n[bold]{escape(logical_id)}[/bold] [dim]{escape(child.physical_name or 'not deployed')}[/dim]")
            output.console.print_json(json.dumps(child.deployed_template))
    else:
        with output.spinner(f"Reading deployed template of {stack.label}"):
            template = await deployments.read_current_template(stack)
        output.console.print_json(json.dumps(template))


def rollback_cmd(
    stack_name: str = typer.Argument(..., help="Stack to roll back."),
    role_arn: str = typer.Option(None, "--role-arn", "-r", help="CloudFormation execution role to use."),
    force: bool = typer.Option(False, "--force", "-f", help="Orphan every resource that fails to roll back."),
    orphan: list[str] = typer.Option(None, "--orphan", help="Logical ID of a resource to orphan. Repeatable."),
    validate_bootstrap_version: bool = typer.Option(
        True,
        "--validate-bootstrap-version/--no-validate-bootstrap-version",
        help="Check the environment's bootstrap version before rolling back.",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print stack events."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Roll a stack back to its last stable state."""
    output.set_verbose(verbose)
    _run(_rollback_async(stack_name, role_arn, force, orphan or [], validate_bootstrap_version, quiet))


async def _rollback_async(
    stack_name: str,
    role_arn: str | None,
    force: bool,
    orphan: list[str],
    validate_bootstrap_version: bool,
    quiet: bool,
) -> None:
    output.banner()

    _, config = _load_project()
    stack = _find_stack(config, stack_name)
    options = RollbackStackOptions(
        stack=stack,
        role_arn=role_arn,
        quiet=quiet or config.quiet,
        ci=config.ci,
        toolkit_stack_name=config.toolkit_stack_name,
        force=force,
        orphan_logical_ids=orphan,
        validate_bootstrap_stack_version=validate_bootstrap_version,
    )

    output.step_start(f"Rolling back [cyan]{escape(stack.label)}[/cyan]")
    result = await _deployments(config, quiet=options.quiet).rollback_stack(options)

    if result.not_in_rollbackable_state:
        raise typer.Exit(1)
    output.success_box("Rolled back", f"{stack.label} is stable again")


def destroy_cmd(
    stack_name: str = typer.Argument(..., help="Stack to destroy."),
    role_arn: str = typer.Option(None, "--role-arn", "-r", help="CloudFormation execution role to use."),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Skip confirmation."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print stack events."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Delete a deployed stack."""
    output.set_verbose(verbose)
    _run(_destroy_async(stack_name, role_arn, auto_approve, quiet))


async def _destroy_async(stack_name: str, role_arn: str | None, auto_approve: bool, quiet: bool) -> None:
    output.banner()

    _, config = _load_project()
    stack = _find_stack(config, stack_name)

    output.warn("This cannot be undone!")
    if not auto_approve:
        if not output.confirm(f"Destroy stack {stack.label}?", default=False):
            output.warn("Cancelled")
            raise typer.Exit(0)

    options = DestroyStackOptions(stack=stack, role_arn=role_arn, quiet=quiet or config.quiet, ci=config.ci)
    output.step_start(f"Destroying [cyan]{escape(stack.label)}[/cyan]")
    await _deployments(config, quiet=options.quiet).destroy_stack(options)
    output.step_done("Destroy complete")
