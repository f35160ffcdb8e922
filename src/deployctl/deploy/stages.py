"""Canonical release plan: sync, runtime, build/start, proxy, health."""

from pathlib import Path
from typing import TYPE_CHECKING

from deployctl.core.exceptions import HealthCheckTimeout, ProxyConfigInvalid, RuntimeSetupError
from deployctl.core.logging import StructuredLogger
from deployctl.core.output import format_bytes
from deployctl.deploy.health import HealthGate
from deployctl.deploy.plan import ReleasePlan, RetryPolicy, Stage, Step, StepContext, StepOutcome
from deployctl.deploy.proxy import NginxProxy
from deployctl.deploy.runtime import ContainerRuntime, RuntimeMode
from deployctl.deploy.vcs import GitRepository, SourceCheckout
from deployctl.executors.local import LocalExecutor

if TYPE_CHECKING:
    from deployctl.config import RunConfig

logger = StructuredLogger(__name__)

SYNC_SOURCE = "sync-source"
ENSURE_RUNTIME = "ensure-runtime"
BUILD_START = "build-start"
CONFIGURE_PROXY = "configure-proxy"
HEALTH_CHECK = "health-check"


def _runtime(ctx: StepContext) -> ContainerRuntime:
    return ContainerRuntime(ctx.executor, sudo=ctx.run.runtime.sudo)


def _proxy(ctx: StepContext) -> NginxProxy:
    cfg = ctx.run.proxy
    return NginxProxy(
        ctx.executor,
        sites_dir=cfg.sites_dir,
        enabled_dir=cfg.enabled_dir,
        sudo=cfg.sudo,
    )


def _image_name(ctx: StepContext) -> str:
    return ctx.project.lower()


# --- sync-source -----------------------------------------------------------


def _fetch_local(checkout: SourceCheckout):
    async def action(ctx: StepContext) -> StepOutcome:
        path, revision = await checkout.ensure(
            ctx.run.get_repo_url(), ctx.run.get_branch(), ctx.project
        )
        ctx.facts["source_dir"] = str(path)
        ctx.facts["revision"] = revision
        return StepOutcome.success(f"{ctx.run.get_branch()} at {revision[:12]}")

    return action


async def _upload_source(ctx: StepContext) -> StepOutcome:
    result = await ctx.executor.transfer(Path(ctx.facts["source_dir"]), ctx.host.remote_dir)
    return StepOutcome.success(
        f"{result.files_transferred} files ({format_bytes(result.bytes_transferred)}) to {ctx.host.remote_dir}"
    )


async def _sync_remote(ctx: StepContext) -> StepOutcome:
    repo = GitRepository(ctx.executor)
    revision = await repo.sync(ctx.run.get_repo_url(), ctx.run.get_branch(), ctx.host.remote_dir)
    ctx.facts["revision"] = revision
    return StepOutcome.success(f"{ctx.run.get_branch()} at {revision[:12]}")


def sync_source_stage(run: "RunConfig", retry: RetryPolicy, checkout: SourceCheckout | None) -> Stage:
    if run.sync_mode == "remote":
        steps = (
            Step("sync-repository", _sync_remote, retry=retry, description="git clone/fetch on the target"),
        )
    else:
        if checkout is None:
            checkout = SourceCheckout(GitRepository(LocalExecutor()), Path(run.workspace_dir).expanduser())
        steps = (
            Step("fetch-source", _fetch_local(checkout), retry=retry, description="local git clone/pull"),
            Step("upload-source", _upload_source, retry=retry, description="copy tree to remote dir"),
        )
    return Stage(SYNC_SOURCE, steps, description="Fetch the pinned ref onto the target")


# --- ensure-runtime --------------------------------------------------------


async def _ensure_tool(ctx: StepContext, binary: str, package: str, service: str) -> StepOutcome:
    runtime = _runtime(ctx)
    changes = []
    if not await runtime.is_installed(binary):
        if not ctx.run.runtime.install_missing:
            raise RuntimeSetupError(f"{binary} is not installed on {ctx.host.name}")
        await runtime.install_packages(package)
        changes.append("installed")
    if not await runtime.service_active(service):
        await runtime.start_service(service)
        changes.append("started")
    return StepOutcome.success(f"{binary} {'/'.join(changes) or 'already running'}")


async def _ensure_docker(ctx: StepContext) -> StepOutcome:
    return await _ensure_tool(ctx, "docker", "docker.io", "docker")


async def _ensure_nginx(ctx: StepContext) -> StepOutcome:
    return await _ensure_tool(ctx, "nginx", "nginx", "nginx")


def ensure_runtime_stage(run: "RunConfig", retry: RetryPolicy) -> Stage:
    steps = [Step("ensure-docker", _ensure_docker, retry=retry, description="docker installed and active")]
    if run.proxy.enabled:
        steps.append(Step("ensure-nginx", _ensure_nginx, retry=retry, description="nginx installed and active"))
    return Stage(ENSURE_RUNTIME, tuple(steps), description="Container runtime and proxy present")


# --- build-start -----------------------------------------------------------


async def _detect_descriptor(ctx: StepContext) -> StepOutcome:
    runtime = _runtime(ctx)
    mode = await runtime.detect_mode(ctx.host.remote_dir)
    if mode == RuntimeMode.COMPOSE and not await runtime.compose_available():
        raise RuntimeSetupError(f"docker compose plugin missing on {ctx.host.name}")
    ctx.facts["runtime_mode"] = mode
    return StepOutcome.success(f"{mode.value} mode")


async def _build_image(ctx: StepContext) -> StepOutcome:
    runtime = _runtime(ctx)
    if ctx.facts["runtime_mode"] == RuntimeMode.COMPOSE:
        await runtime.compose_build(ctx.host.remote_dir)
        return StepOutcome.success("compose services built")
    await runtime.build_image(ctx.host.remote_dir, _image_name(ctx))
    return StepOutcome.success(f"image {_image_name(ctx)} built")


async def _start_containers(ctx: StepContext) -> StepOutcome:
    runtime = _runtime(ctx)
    if ctx.facts["runtime_mode"] == RuntimeMode.COMPOSE:
        down = await runtime.compose_down(ctx.host.remote_dir)
        if not down.ok:
            logger.debug("compose down failed before up", target=ctx.host.name, stderr=down.stderr)
        await runtime.compose_up(ctx.host.remote_dir)
        return StepOutcome.success("compose stack recreated")

    name = _image_name(ctx)
    await runtime.remove_container(name)
    await runtime.run_container(name, name, ctx.host.app_port)
    return StepOutcome.success(f"container {name} on port {ctx.host.app_port}")


async def _stop_containers(ctx: StepContext) -> StepOutcome:
    runtime = _runtime(ctx)
    if ctx.facts.get("runtime_mode") == RuntimeMode.COMPOSE:
        result = await runtime.compose_down(ctx.host.remote_dir)
        if not result.ok:
            return StepOutcome.failure(f"compose down failed: {result.stderr}", result)
        return StepOutcome.success("compose stack stopped")
    await runtime.remove_container(_image_name(ctx))
    return StepOutcome.success("container removed")


def build_start_stage(retry: RetryPolicy) -> Stage:
    return Stage(
        BUILD_START,
        (
            Step("detect-descriptor", _detect_descriptor, retry=retry, description="compose file or Dockerfile"),
            Step("build-image", _build_image, retry=retry, description="docker build"),
            Step(
                "start-containers",
                _start_containers,
                rollback=_stop_containers,
                retry=retry,
                description="replace running containers",
            ),
        ),
        description="Build and start containers",
    )


# --- configure-proxy -------------------------------------------------------


async def _render_proxy(ctx: StepContext) -> StepOutcome:
    proxy = _proxy(ctx)
    cfg = ctx.run.proxy
    content = proxy.render(
        ctx.project,
        app_port=ctx.host.app_port,
        listen_port=cfg.listen_port,
        server_name=cfg.server_name,
    )
    ctx.facts["proxy_content"] = content
    ctx.facts["proxy_staged"] = await proxy.stage(ctx.project, content)
    return StepOutcome.success(f"rendered to {ctx.facts['proxy_staged']}")


async def _discard_proxy(ctx: StepContext) -> StepOutcome:
    # install-config may have swapped the live file before failing for good.
    if "proxy_backup" not in ctx.facts or ctx.facts.get("proxy_restored"):
        return StepOutcome.success("nothing installed")
    return await _uninstall_proxy(ctx)


async def _install_proxy(ctx: StepContext) -> StepOutcome:
    proxy = _proxy(ctx)
    if "proxy_backup" in ctx.facts:
        # Retry: the live file may already be ours and the staged file moved.
        ctx.facts["proxy_staged"] = await proxy.stage(ctx.project, ctx.facts["proxy_content"])
    else:
        ctx.facts["proxy_backup"] = await proxy.backup(ctx.project)
    backup = ctx.facts["proxy_backup"]
    await proxy.install(ctx.facts["proxy_staged"], ctx.project, take_backup=False)
    if not await proxy.validate(proxy.config_path(ctx.project)):
        await proxy.restore(ctx.project, backup)
        ctx.facts["proxy_restored"] = True
        raise ProxyConfigInvalid(
            f"nginx -t rejected the config for {ctx.project}; previous config restored"
        )
    return StepOutcome.success(f"installed {proxy.config_path(ctx.project)}")


async def _uninstall_proxy(ctx: StepContext) -> StepOutcome:
    proxy = _proxy(ctx)
    await proxy.restore(ctx.project, ctx.facts.get("proxy_backup"))
    ctx.facts["proxy_restored"] = True
    if not await proxy.reload():
        return StepOutcome.failure("nginx reload failed after removing config")
    return StepOutcome.success("proxy config removed")


async def _reload_proxy(ctx: StepContext) -> StepOutcome:
    if not await _proxy(ctx).reload():
        raise RuntimeSetupError(f"nginx reload failed on {ctx.host.name}")
    return StepOutcome.success("nginx reloaded")


def configure_proxy_stage(retry: RetryPolicy) -> Stage:
    return Stage(
        CONFIGURE_PROXY,
        (
            Step(
                "render-config",
                _render_proxy,
                rollback=_discard_proxy,
                retry=retry,
                description="render nginx site",
            ),
            Step(
                "install-config",
                _install_proxy,
                rollback=_uninstall_proxy,
                retry=retry,
                description="swap in config and nginx -t",
            ),
            Step("reload-proxy", _reload_proxy, retry=retry, description="nginx reload"),
        ),
        description="Route the public entry point to the app",
    )


# --- health-check ----------------------------------------------------------


def _await_healthy(gate: HealthGate | None):
    async def action(ctx: StepContext) -> StepOutcome:
        cfg = ctx.run.health
        health_gate = gate or HealthGate(
            success_statuses=cfg.success_statuses,
            request_timeout=cfg.request_timeout,
        )
        endpoint = ctx.host.health_endpoint(cfg.scheme, cfg.path)
        if not ctx.run.proxy.enabled and not ctx.host.public_url:
            endpoint = f"{cfg.scheme}://{ctx.host.address}:{ctx.host.app_port}{cfg.path}"
        result = await health_gate.await_healthy(
            endpoint, cfg.interval, cfg.timeout, max_polls=cfg.max_polls
        )
        if not result.healthy:
            raise HealthCheckTimeout(
                f"{endpoint} not healthy after {result.polls} polls in {result.elapsed:.1f}s "
                f"(last status {result.last_status or result.last_error})",
                timeout_seconds=cfg.timeout,
            )
        return StepOutcome.success(f"{endpoint} healthy after {result.polls} poll(s)")

    return action


def health_check_stage(gate: HealthGate | None = None) -> Stage:
    return Stage(
        HEALTH_CHECK,
        (
            Step(
                "await-healthy",
                _await_healthy(gate),
                retry=RetryPolicy.once(),
                description="poll public endpoint",
            ),
        ),
        description="Gate success on a healthy response",
    )


def build_release_plan(
    run: "RunConfig",
    checkout: SourceCheckout | None = None,
    health_gate: HealthGate | None = None,
) -> ReleasePlan:
    """Assemble the canonical plan for ``run``.

    The proxy stage is left out when ``run.proxy.enabled`` is False.
    """
    retry = RetryPolicy(
        max_attempts=run.retry.max_attempts,
        backoff=run.retry.backoff,
        backoff_multiplier=run.retry.backoff_multiplier,
        max_backoff=run.retry.max_backoff,
        attempt_timeout=run.retry.attempt_timeout,
    )
    stages = [
        sync_source_stage(run, retry, checkout),
        ensure_runtime_stage(run, retry),
        build_start_stage(retry),
    ]
    if run.proxy.enabled:
        stages.append(configure_proxy_stage(retry))
    stages.append(health_check_stage(health_gate))
    name = run.project_name if run.get_repo_url() else "release"
    return ReleasePlan(tuple(stages), name=name)
