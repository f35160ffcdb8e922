"""Command line entry point: global flags, profile selection and the deploy group."""

import sys
from typing import Any, NoReturn

import click
from rich.console import Console

from deployctl import __version__
from deployctl.config import load_config
from deployctl.core.context import DeployCtlContext
from deployctl.core.output import OutputFormat
from deployctl.core.exceptions import DeployCtlError, ConfigError

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Case-insensitive ``--output`` value."""

    name = "format"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            choices = ", ".join(f.value for f in OutputFormat)
            self.fail(f"Invalid format '{value}'. Choose from: {choices}", param, ctx)


def _show_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    if value and not ctx.resilient_parsing:
        Console().print(f"deployctl version {__version__}")
        ctx.exit()


def _fail(label: str, error: BaseException, code: int = 1) -> NoReturn:
    Console(stderr=True).print(f"[red]{label}:[/red] {error}")
    sys.exit(code)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="DEPLOYCTL_PROFILE",
    help="Profile whose run defaults to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OutputFormatType(),
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option("-v", "--verbose", count=True, help="Log more (-v for info, -vv for debug)")
@click.option("-q", "--quiet", is_flag=True, help="Only print errors and requested data")
@click.option("--dry-run", is_flag=True, help="Show the plan without touching any host")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=_show_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """deployctl - deploy containerized apps to remote hosts.

    Clones a repository, ships it to each host over SSH, builds and starts
    it with Docker or Docker Compose, routes nginx to it and waits for it
    to answer. Every host has its own tracked state and is rolled back on
    failure.

    \b
    Examples:
        deployctl deploy run --repo https://github.com/acme/shop.git --host 10.0.0.5
        deployctl deploy plan
        deployctl deploy list
        deployctl deploy status 20261018120000-a1b2c3

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file, profile)
    except ConfigError as e:
        _fail("Configuration error", e)

    ctx.obj = DeployCtlContext(
        config=config,
        profile=profile,
        output_format=output_format,
        verbose=verbose,
        quiet=quiet,
        dry_run=dry_run,
        color=not no_color,
    )
    if dry_run and not quiet:
        ctx.obj.output.print_warning("Dry-run mode enabled - no host will be touched")


@cli.command()
@click.pass_obj
def config(obj: DeployCtlContext) -> None:
    """Show the effective settings and run defaults."""
    settings = obj.config.global_settings
    run = obj.profile.run
    health = run.health
    obj.output.print_data(
        {
            "profile": obj.profile_name,
            "output_format": obj.output_format.value,
            "dry_run": obj.dry_run,
            "verbose": obj.verbose,
            "state_dir": str(settings.get_state_dir()),
            "log_dir": str(settings.get_log_dir()),
            "repo_url": run.get_repo_url(),
            "branch": run.get_branch(),
            "targets": ", ".join(t.name or t.address for t in run.targets) or "-",
            "concurrency": run.concurrency,
            "fail_fast": run.fail_fast,
            "sync_mode": run.sync_mode,
            "proxy": "enabled" if run.proxy.enabled else "disabled",
            "health": f"{health.scheme}://<host>{health.path} every {health.interval}s, timeout {health.timeout}s",
        },
        title="Current Configuration",
    )


def _register_groups() -> None:
    from deployctl.commands.deploy import deploy

    cli.add_command(deploy)


_register_groups()


def main() -> None:
    try:
        cli()
    except DeployCtlError as e:
        _fail("Error", e)
    except KeyboardInterrupt:
        Console(stderr=True).print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
