"""typer application entry point."""

import typer

from stackpilot.cli.commands import destroy_cmd, environment_cmd, exists_cmd, rollback_cmd, template_cmd

app = typer.Typer(
    name="stackpilot",
    help="Deploy, inspect and recover CloudFormation stacks.",
    no_args_is_help=True,
)

app.command("environment")(environment_cmd)
app.command("exists")(exists_cmd)
app.command("template")(template_cmd)
app.command("rollback")(rollback_cmd)
app.command("destroy")(destroy_cmd)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
