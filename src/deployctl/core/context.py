"""Per-invocation state shared by deployctl commands."""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import click
from rich.markup import escape

from deployctl.config import DeployCtlConfig, ProfileConfig, get_default_config
from deployctl.core.output import OutputFormat, OutputFormatter
from deployctl.core.logging import LogLevel, setup_logging, StructuredLogger

if TYPE_CHECKING:
    from deployctl.deploy.state import StateStore

F = TypeVar("F", bound=Callable[..., Any])


def _log_level(config: DeployCtlConfig, verbose: int, quiet: bool) -> LogLevel:
    if verbose >= 2:
        return LogLevel.DEBUG
    if verbose >= 1:
        return LogLevel.INFO
    if quiet:
        return LogLevel.ERROR
    return config.global_settings.verbosity


class DeployCtlContext:
    """Resolved settings for one deployctl invocation.

    Command-line flags win over the config file. The state store is opened
    on first use so commands that never read deployment state do not create
    the state directory.
    """

    def __init__(
        self,
        config: DeployCtlConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()
        self._profile_name = profile or "default"
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run

        setup_logging(_log_level(self._config, verbose, quiet), rich_output=color)
        self._output = OutputFormatter(format=self._output_format, color=color, quiet=quiet)
        self._state_store: StateStore | None = None

    @property
    def config(self) -> DeployCtlConfig:
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Run defaults of the selected profile; raises for an unknown name."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def state_store(self) -> "StateStore":
        if self._state_store is None:
            from deployctl.deploy.state import StateStore

            self._state_store = StateStore(self._config.global_settings.get_state_dir())
        return self._state_store

    def _note_dry_run(self, text: str) -> None:
        # Escaped so the literal "[dry-run]" prefix is not read as Rich markup.
        self._output.print(f"[dim]{escape(f'[dry-run] {text}')}[/dim]")

    def confirm(self, message: str, default: bool = False) -> bool:
        """Prompt before deploying; a dry run never prompts and answers yes."""
        if self._dry_run:
            self._note_dry_run(f"Would prompt: {message}")
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Describe what a dry run would have done."""
        if not self._dry_run:
            return
        if details:
            action = f"{action} ({', '.join(f'{k}={v}' for k, v in details.items())})"
        self._note_dry_run(action)


pass_context = click.make_pass_decorator(DeployCtlContext, ensure=True)


def require_confirmation(
    message: str = "Are you sure you want to proceed?",
    default: bool = False,
) -> Callable[[F], F]:
    """Guard a command that deletes deployment state.

    Skipped for dry runs, for ``--yes`` and when ``confirm_destructive`` is
    off in the config.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            ctx = click.get_current_context().find_object(DeployCtlContext)
            prompt = (
                ctx is not None
                and not ctx.dry_run
                and not kwargs.get("yes", False)
                and ctx.config.global_settings.confirm_destructive
            )
            if prompt and not ctx.confirm(message, default):
                ctx.output.print_info("Cleanup cancelled")
                raise click.Abort()
            return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
