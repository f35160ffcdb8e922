"""Deploy command group."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.live import Live
from rich.table import Table

from deployctl.config import RunConfig
from deployctl.core.async_utils import run_sync
from deployctl.core.context import DeployCtlContext, pass_context, require_confirmation
from deployctl.core.exceptions import ConfigError, DeploymentError
from deployctl.core.logging import attach_run_file, detach_run_file
from deployctl.core.output import OutputFormat, format_duration, style_status
from deployctl.deploy.models import (
    DeploymentEvent,
    DeploymentState,
    TargetSet,
    new_run_id,
)
from deployctl.deploy.orchestrator import Orchestrator
from deployctl.deploy.plan import ReleasePlan
from deployctl.deploy.report import DeploymentReport
from deployctl.deploy.runlog import RunLog, read_run_log
from deployctl.deploy.stages import build_release_plan

EXIT_INTERRUPTED = 130


def parse_host_spec(spec: str) -> dict[str, Any]:
    """Split ``[user@]address[:port]`` into HostConfig fields."""
    fields: dict[str, Any] = {}
    if "@" in spec:
        fields["user"], spec = spec.split("@", 1)
    if spec.count(":") == 1:
        spec, port = spec.split(":")
        try:
            fields["port"] = int(port)
        except ValueError:
            raise click.BadParameter(f"invalid SSH port in '{spec}:{port}'", param_hint="--host")
    if not spec:
        raise click.BadParameter("empty host address", param_hint="--host")
    fields["address"] = spec
    return fields


def resolve_run_config(
    base: RunConfig,
    repo_url: str | None = None,
    branch: str | None = None,
    hosts: tuple[str, ...] = (),
    user: str | None = None,
    key_path: str | None = None,
    app_port: int | None = None,
    remote_dir: str | None = None,
    concurrency: int | None = None,
    fail_fast: bool | None = None,
    health_path: str | None = None,
    health_interval: float | None = None,
    health_timeout: float | None = None,
    run_timeout: float | None = None,
    sync_mode: str | None = None,
    no_proxy: bool = False,
    install_missing: bool = False,
    interactive: bool = True,
) -> RunConfig:
    """Apply CLI options over the profile's run config.

    Missing repository and targets are prompted for when ``interactive``.
    """
    data = base.model_dump()

    if repo_url:
        data["repo_url"] = repo_url
    elif not base.get_repo_url():
        if not interactive:
            raise ConfigError("Repository URL is required (--repo or DEPLOYCTL_REPO_URL)")
        data["repo_url"] = click.prompt("Git repository URL")

    if branch:
        data["branch"] = branch
    elif interactive and not repo_url and not base.get_repo_url():
        data["branch"] = click.prompt("Branch", default=base.get_branch())

    host_overrides: dict[str, Any] = {}
    if user:
        host_overrides["user"] = user
    if key_path:
        host_overrides["key_path"] = key_path
    if app_port:
        host_overrides["app_port"] = app_port
    if remote_dir:
        host_overrides["remote_dir"] = remote_dir

    if hosts:
        data["targets"] = [{**host_overrides, **parse_host_spec(h)} for h in hosts]
    elif data["targets"]:
        data["targets"] = [{**t, **host_overrides} for t in data["targets"]]
    elif interactive:
        target: dict[str, Any] = {
            "user": user or click.prompt("SSH username", default="root"),
            "address": click.prompt("Server address"),
        }
        target["key_path"] = key_path or click.prompt(
            "SSH key path (empty for agent)", default="", show_default=False
        ) or None
        target["app_port"] = app_port or click.prompt("Application port", default=8000, type=int)
        if remote_dir:
            target["remote_dir"] = remote_dir
        data["targets"] = [target]
    else:
        raise ConfigError("At least one target host is required (--host)")

    if concurrency is not None:
        data["concurrency"] = concurrency
    if fail_fast is not None:
        data["fail_fast"] = fail_fast
    if run_timeout is not None:
        data["run_timeout"] = run_timeout
    if sync_mode:
        data["sync_mode"] = sync_mode
    if health_path:
        data["health"]["path"] = health_path
    if health_interval is not None:
        data["health"]["interval"] = health_interval
    if health_timeout is not None:
        data["health"]["timeout"] = health_timeout
    if no_proxy:
        data["proxy"]["enabled"] = False
    if install_missing:
        data["runtime"]["install_missing"] = True

    try:
        return RunConfig(**data)
    except ValueError as e:
        raise ConfigError(f"Invalid run configuration: {e}")


class ProgressTable:
    """Live view of every target's latest status."""

    def __init__(self, targets: TargetSet, plan: ReleasePlan):
        self._plan = plan
        self._rows: dict[str, dict[str, Any]] = {
            host.name: {"address": host.address, "status": "pending", "stage": "-", "message": ""}
            for host in targets
        }

    def update(self, state: DeploymentState, event: DeploymentEvent) -> None:
        stage = self._plan.stages[state.stage_index].name if state.stages else "-"
        self._rows[state.target].update(
            status=state.status.value,
            stage=f"{state.stage_index + 1}/{len(self._plan)} {stage}",
            message=event.message,
        )

    def __rich__(self) -> Table:
        table = Table(title="Deploying", show_header=True, header_style="bold cyan")
        table.add_column("Target")
        table.add_column("Address")
        table.add_column("Status")
        table.add_column("Stage")
        table.add_column("Last Event", overflow="fold")
        for name, row in self._rows.items():
            table.add_row(name, row["address"], style_status(row["status"]), row["stage"], row["message"])
        return table


async def _deploy_with_signals(
    orchestrator: Orchestrator,
    targets: TargetSet,
    plan: ReleasePlan,
    run_id: str,
) -> tuple[DeploymentReport, bool]:
    """Run the deployment; SIGINT cancels instead of killing the process."""
    interrupted = False

    def on_interrupt() -> None:
        nonlocal interrupted
        interrupted = True
        orchestrator.cancel()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False

    try:
        report = await orchestrator.deploy(targets, plan, run_id=run_id)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    return report, interrupted


def _write_report(report: DeploymentReport, path: str) -> None:
    data = report.to_dict()
    target = Path(path)
    with open(target, "w") as f:
        if target.suffix in (".yaml", ".yml"):
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(data, f, indent=2, default=str)


def _print_report(ctx: DeployCtlContext, report: DeploymentReport) -> None:
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(report.to_dict())
        return

    ctx.output.print_table(report.to_table())
    for target in report.targets:
        for failure in target.rollback_failures:
            ctx.output.print_warning(
                f"{target.name}: rollback of {failure.stage}/{failure.step} failed: {failure.error}"
            )

    if report.succeeded:
        ctx.output.print_success(report.summary_line())
    else:
        ctx.output.print_error(report.summary_line())


@click.group()
@pass_context
def deploy(ctx: DeployCtlContext) -> None:
    """Deployment orchestration - run, plan, status, list, log.

    \b
    Examples:
        deployctl deploy run --repo git@github.com:acme/shop.git -H deploy@10.0.0.5
        deployctl deploy run -H web1 -H web2 -H web3 --concurrency 2 --fail-fast
        deployctl deploy plan --repo https://github.com/acme/shop.git
        deployctl deploy status 20261018120000-a1b2c3
    """
    pass


def run_options(func):
    """Options shared by ``deploy run`` and ``deploy plan``."""
    options = [
        click.option("--repo", "repo_url", metavar="URL", help="Git repository URL"),
        click.option("--branch", "-b", help="Branch or tag to deploy"),
        click.option(
            "-H", "--host", "hosts", multiple=True, metavar="[USER@]ADDR[:PORT]",
            help="Target host (repeatable)",
        ),
        click.option("-u", "--user", help="SSH user for all targets"),
        click.option("-i", "--key", "key_path", metavar="PATH", help="SSH private key"),
        click.option("--app-port", type=int, help="Port the application listens on"),
        click.option("--remote-dir", metavar="PATH", help="Project directory on the targets"),
        click.option("--sync-mode", type=click.Choice(["local", "remote"]), help="Where git runs"),
        click.option("--no-proxy", is_flag=True, help="Skip the nginx stage"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@deploy.command("run")
@run_options
@click.option("-j", "--concurrency", type=click.IntRange(min=1), help="Targets deployed at once")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip queued targets after a failure")
@click.option("--health-path", metavar="PATH", help="Path polled by the health gate")
@click.option("--health-interval", type=float, help="Seconds between health polls")
@click.option("--health-timeout", type=float, help="Seconds before the health gate gives up")
@click.option("--run-timeout", type=float, help="Cancel the whole run after N seconds")
@click.option("--install-missing", is_flag=True, help="apt-install docker/nginx when absent")
@click.option("--report-file", type=click.Path(dir_okay=False), help="Write the report as JSON or YAML")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation and prompts")
@pass_context
def run_deploy(
    ctx: DeployCtlContext,
    repo_url: str | None,
    branch: str | None,
    hosts: tuple[str, ...],
    user: str | None,
    key_path: str | None,
    app_port: int | None,
    remote_dir: str | None,
    sync_mode: str | None,
    no_proxy: bool,
    concurrency: int | None,
    fail_fast: bool | None,
    health_path: str | None,
    health_interval: float | None,
    health_timeout: float | None,
    run_timeout: float | None,
    install_missing: bool,
    report_file: str | None,
    yes: bool,
) -> None:
    """Deploy the repository to every target.

    Exits 0 when every target succeeded, 1 otherwise, 130 when interrupted.

    \b
    Examples:
        deployctl deploy run --repo https://github.com/acme/shop.git -H 10.0.0.5
        deployctl deploy run -H web1 -H web2 --fail-fast --report-file report.json
    """
    try:
        run = resolve_run_config(
            ctx.profile.run,
            repo_url=repo_url,
            branch=branch,
            hosts=hosts,
            user=user,
            key_path=key_path,
            app_port=app_port,
            remote_dir=remote_dir,
            concurrency=concurrency,
            fail_fast=fail_fast,
            health_path=health_path,
            health_interval=health_interval,
            health_timeout=health_timeout,
            run_timeout=run_timeout,
            sync_mode=sync_mode,
            no_proxy=no_proxy,
            install_missing=install_missing,
            interactive=not yes and sys.stdin.isatty(),
        )
        plan = build_release_plan(run)
        targets = TargetSet(run.descriptors())
    except (ConfigError, ValueError) as e:
        ctx.output.print_error(str(e))
        raise click.Abort()

    if ctx.dry_run:
        ctx.log_dry_run(
            "deploy",
            {"project": plan.name, "ref": run.get_branch(), "targets": len(targets)},
        )
        ctx.output.print_data(plan.describe(), title=f"Plan for {plan.name}")
        ctx.output.print_data([h.to_dict() for h in targets], title="Targets")
        return

    names = ", ".join(h.name for h in targets)
    if not yes and not ctx.confirm(
        f"Deploy {plan.name}@{run.get_branch()} to {len(targets)} target(s) ({names})?"
    ):
        ctx.output.print_info("Cancelled")
        return

    settings = ctx.config.global_settings
    run_id = new_run_id()
    run_log = RunLog(run_id, settings.get_log_dir())
    progress = ProgressTable(targets, plan)
    orchestrator = Orchestrator(
        run,
        store=ctx.state_store,
        run_log=run_log,
        on_event=progress.update,
    )

    ctx.output.print_info(f"Run {run_id}: log at {run_log.path}")
    show_live = ctx.output_format == OutputFormat.TABLE and not ctx.quiet
    file_handler = attach_run_file(run_log.path.with_suffix(".log"))
    try:
        if show_live:
            with Live(progress, console=ctx.output.console, refresh_per_second=4, transient=True):
                report, interrupted = run_sync(_deploy_with_signals(orchestrator, targets, plan, run_id))
        else:
            report, interrupted = run_sync(_deploy_with_signals(orchestrator, targets, plan, run_id))
    except DeploymentError as e:
        ctx.output.print_error(f"Deployment aborted: {e}")
        raise click.Abort()
    finally:
        detach_run_file(file_handler)

    _print_report(ctx, report)
    if report_file:
        _write_report(report, report_file)
        ctx.output.print_info(f"Report written to {report_file}")

    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    if report.exit_code:
        sys.exit(report.exit_code)


@deploy.command("plan")
@run_options
@pass_context
def show_plan(
    ctx: DeployCtlContext,
    repo_url: str | None,
    branch: str | None,
    hosts: tuple[str, ...],
    user: str | None,
    key_path: str | None,
    app_port: int | None,
    remote_dir: str | None,
    sync_mode: str | None,
    no_proxy: bool,
) -> None:
    """Show the stages and steps a run would execute.

    \b
    Examples:
        deployctl deploy plan
        deployctl deploy plan --no-proxy --sync-mode remote
    """
    base = ctx.profile.run
    data = base.model_dump()
    if repo_url:
        data["repo_url"] = repo_url
    if branch:
        data["branch"] = branch
    if sync_mode:
        data["sync_mode"] = sync_mode
    if no_proxy:
        data["proxy"]["enabled"] = False
    if hosts:
        overrides = {
            k: v
            for k, v in {"user": user, "key_path": key_path, "app_port": app_port, "remote_dir": remote_dir}.items()
            if v
        }
        data["targets"] = [{**overrides, **parse_host_spec(h)} for h in hosts]

    try:
        run = RunConfig(**data)
        plan = build_release_plan(run)
    except ValueError as e:
        ctx.output.print_error(f"Invalid run configuration: {e}")
        raise click.Abort()

    ctx.output.print_data(plan.describe(), title=f"Plan for {plan.name} @ {run.get_branch()}")
    if run.targets and run.get_repo_url():
        ctx.output.print_data([h.to_dict() for h in run.descriptors()], title="Targets")


@deploy.command("status")
@click.argument("run_id")
@click.option("-t", "--target", help="Show stages and events for one target")
@pass_context
def status(ctx: DeployCtlContext, run_id: str, target: str | None) -> None:
    """Show the per-target status of a run.

    \b
    Examples:
        deployctl deploy status 20261018120000-a1b2c3
        deployctl deploy status 20261018120000-a1b2c3 --target web1
    """
    try:
        states = ctx.state_store.load_run(run_id)
    except DeploymentError as e:
        ctx.output.print_error(f"Failed to get status: {e}")
        raise click.Abort()

    if target:
        matches = [s for s in states if s.target == target]
        if not matches:
            ctx.output.print_error(f"Target {target} not part of run {run_id}")
            raise click.Abort()
        state = matches[0]
        if ctx.output_format != OutputFormat.TABLE:
            ctx.output.print_data(state.to_dict())
            return
        ctx.output.print_header(f"{state.target} ({state.address}) in run {run_id}")
        ctx.output.print(f"Status: {style_status(state.status.value)}")
        if state.error:
            ctx.output.print(f"Error: {state.error_type}: {state.error} (stage {state.failed_stage})")
        rows = [
            {
                "stage": stage.name,
                "status": stage.status.value,
                "steps": ", ".join(f"{s.name}={s.status.value}" for s in stage.steps) or "-",
                "duration": format_duration(stage.duration),
            }
            for stage in state.stages
        ]
        ctx.output.print_data(rows, title="Stages")
        for failure in state.rollback_failures:
            ctx.output.print_warning(f"Rollback of {failure.stage}/{failure.step} failed: {failure.error}")
        return

    report = DeploymentReport.from_states(run_id, "", "", states, started_at=states[0].created_at)
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([t.to_dict() for t in report.targets])
        return
    rows = [
        {
            "target": t.name,
            "address": t.address,
            "status": t.status.value + (" (rolled back)" if t.rolled_back else ""),
            "stages": t.progress,
            "failed_stage": t.failed_stage or "-",
            "error": t.error or "-",
            "duration": format_duration(t.duration_seconds),
        }
        for t in report.targets
    ]
    ctx.output.print_data(rows, title=f"Run {run_id}")


@deploy.command("list")
@click.option("--limit", default=20, help="Max runs to show")
@pass_context
def list_runs(ctx: DeployCtlContext, limit: int) -> None:
    """List recent runs.

    \b
    Examples:
        deployctl deploy list
        deployctl deploy list --limit 5 -o json
    """
    runs = ctx.state_store.list_runs(limit=limit)
    if not runs:
        ctx.output.print_info("No deployments found")
        return

    rows = [
        {
            "run_id": run["run_id"],
            "created": run["created_at"].strftime("%Y-%m-%d %H:%M"),
            "targets": run["targets"],
            "statuses": ", ".join(f"{count} {status}" for status, count in run["statuses"].items()),
        }
        for run in runs
    ]
    ctx.output.print_data(rows, headers=["run_id", "created", "targets", "statuses"], title="Runs")


@deploy.command("log")
@click.argument("run_id")
@click.option("-t", "--target", help="Only records for this target")
@click.option(
    "--kind",
    type=click.Choice(["run", "transition", "attempt", "rollback"]),
    help="Only records of this kind",
)
@pass_context
def show_log(ctx: DeployCtlContext, run_id: str, target: str | None, kind: str | None) -> None:
    """Show the durable log of a run.

    \b
    Examples:
        deployctl deploy log 20261018120000-a1b2c3
        deployctl deploy log 20261018120000-a1b2c3 --target web1 --kind attempt
    """
    path = ctx.config.global_settings.get_log_dir() / f"{run_id}.jsonl"
    if not path.exists():
        ctx.output.print_error(f"No run log for {run_id} at {path}")
        raise click.Abort()

    entries = read_run_log(path, target=target, kind=kind)
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(entries)
        return

    rows = []
    for entry in entries:
        if entry["kind"] == "transition":
            detail = f"{entry.get('from')} -> {entry.get('to')}: {entry.get('message', '')}"
        elif entry["kind"] in ("attempt", "rollback"):
            detail = f"{entry.get('stage')}/{entry.get('step')} {entry.get('outcome')}"
            if entry.get("attempt"):
                detail += f" (attempt {entry['attempt']})"
            if entry.get("error"):
                detail += f": {entry['error']}"
        else:
            detail = entry.get("event", "")
        rows.append(
            {
                "time": entry["timestamp"][11:19],
                "target": entry.get("target", "-"),
                "kind": entry["kind"],
                "detail": detail,
            }
        )
    ctx.output.print_data(rows, headers=["time", "target", "kind", "detail"], title=f"Run log {run_id}")


@deploy.command("cleanup")
@click.option("--days", default=30, help="Remove finished deployments older than this")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
@require_confirmation("Remove old finished deployment states?")
def cleanup(ctx: DeployCtlContext, days: int, yes: bool) -> None:
    """Remove old finished deployment states.

    \b
    Examples:
        deployctl deploy cleanup --days 7 --yes
    """
    if ctx.dry_run:
        ctx.log_dry_run("cleanup deployments", {"days": days})
        return
    removed = ctx.state_store.cleanup_old(days=days)
    ctx.output.print_success(f"Removed {removed} deployment state(s)")
