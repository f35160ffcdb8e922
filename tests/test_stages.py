"""Tests for the canonical stages run against a scripted host."""

import httpx
import pytest

from deployctl.config import ProxyConfig, RuntimeConfig
from deployctl.core.exceptions import ConnectionError
from deployctl.deploy.health import HealthGate
from deployctl.deploy.machine import DeploymentStateMachine
from deployctl.deploy.models import DeploymentStatus, StepStatus
from deployctl.deploy.stages import build_release_plan
from deployctl.deploy.vcs import GitRepository, SourceCheckout

from conftest import REVISION, FakeExecutor, happy_executor, health_gate, make_host, no_sleep

LIVE = "/etc/nginx/sites-available/shop"


async def _deploy(run, executor, **plan_kwargs):
    plan_kwargs.setdefault("health_gate", health_gate())
    plan = build_release_plan(run, **plan_kwargs)
    machine = DeploymentStateMachine(executor.host, plan, executor, run, "run1", sleep=no_sleep)
    return await machine.run()


def _step(state, name):
    for stage in state.stages:
        for step in stage.steps:
            if step.name == name:
                return step
    raise KeyError(name)


class TestBuildStart:
    """Tests for the build-start stage."""

    @pytest.mark.asyncio
    async def test_compose_mode(self, run_config):
        executor = happy_executor(make_host())
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert executor.ran("cd /home/deploy/shop && docker compose build")
        assert executor.ran("cd /home/deploy/shop && docker compose up -d --build")
        assert not executor.ran("docker build -t")

    @pytest.mark.asyncio
    async def test_dockerfile_mode(self, run_config):
        executor = happy_executor(make_host()).on("ls -1A", stdout="Dockerfile\napp.py")
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert executor.ran("docker build -t shop .")
        assert executor.ran("docker run -d --name shop -p 8000:8000 shop")
        assert not executor.ran("compose up")

    @pytest.mark.asyncio
    async def test_missing_descriptor_fails_build_stage(self, run_config):
        executor = happy_executor(make_host()).on("ls -1A", stdout="README.md")
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.FAILED
        assert state.failed_stage == "build-start"
        assert state.error_type == "NoDeploymentDescriptor"
        assert len(_step(state, "detect-descriptor").attempts) == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, run_config):
        executor = happy_executor(make_host()).on("compose build", error=ConnectionError("reset"), times=1)
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert len(_step(state, "build-image").attempts) == 2


class TestEnsureRuntime:
    """Tests for the ensure-runtime stage."""

    @pytest.mark.asyncio
    async def test_missing_docker_fails_without_install(self, run_config):
        executor = happy_executor(make_host()).on("command -v docker", exit_code=1)
        state = await _deploy(run_config, executor)

        assert state.failed_stage == "ensure-runtime"
        assert state.error_type == "RuntimeSetupError"
        assert not executor.ran("apt-get")

    @pytest.mark.asyncio
    async def test_missing_docker_installed_when_allowed(self, run_config):
        run = run_config.model_copy(update={"runtime": RuntimeConfig(install_missing=True)})
        executor = happy_executor(make_host()).on("command -v docker", exit_code=1)
        state = await _deploy(run, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert executor.ran("apt-get install -y docker.io")

    @pytest.mark.asyncio
    async def test_inactive_service_started(self, run_config):
        executor = happy_executor(make_host()).on("is-active --quiet nginx", exit_code=1)
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert executor.ran("sudo systemctl enable --now nginx")


class TestConfigureProxy:
    """Tests for the configure-proxy stage."""

    @pytest.mark.asyncio
    async def test_invalid_config_restored_and_rolled_back(self, run_config):
        executor = happy_executor(make_host()).on("nginx -t", exit_code=1, stderr="syntax error")
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.FAILED
        assert state.failed_stage == "configure-proxy"
        assert state.error_type == "ProxyConfigInvalid"
        assert state.rolled_back is True
        assert executor.ran("sudo mv -f /etc/nginx/sites-available/shop.deployctl-backup")
        assert not executor.ran("systemctl reload nginx")
        assert executor.commands[-1] == "cd /home/deploy/shop && docker compose down"

    @pytest.mark.asyncio
    async def test_install_retry_keeps_original_backup(self, run_config):
        executor = happy_executor(make_host()).on("ln -sfn", error=ConnectionError("reset"), times=1)
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert len(_step(state, "install-config").attempts) == 2
        assert len(executor.ran(f"sudo cp -p {LIVE} {LIVE}.deployctl-backup")) == 1
        assert len(executor.ran(f"sudo mv -f /tmp/deployctl-shop.conf {LIVE}")) == 2
        assert executor.files["/tmp/deployctl-shop.conf"].startswith("# Managed by deployctl")

    @pytest.mark.asyncio
    async def test_install_exhausted_restores_original(self, run_config):
        executor = happy_executor(make_host()).on("ln -sfn", error=ConnectionError("reset"))
        state = await _deploy(run_config, executor)

        assert state.status == DeploymentStatus.FAILED
        assert state.failed_stage == "configure-proxy"
        assert len(executor.ran("sudo cp -p")) == 1
        assert executor.ran(f"sudo mv -f {LIVE}.deployctl-backup {LIVE}")
        assert _step(state, "render-config").status == StepStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_proxy_disabled_checks_app_port(self, run_config):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200)

        gate = HealthGate(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=no_sleep)
        run = run_config.model_copy(update={"proxy": ProxyConfig(enabled=False)})
        executor = happy_executor(make_host())

        state = await _deploy(run, executor, health_gate=gate)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert len(state.stages) == 4
        assert requested == ["http://web1.example.com:8000/"]
        assert not executor.ran("nginx")


class TestSyncSource:
    """Tests for both source sync modes."""

    @pytest.mark.asyncio
    async def test_local_mode_uploads_checkout(self, run_config, tmp_path):
        local = FakeExecutor().on("test -d", exit_code=1).on("rev-parse", stdout=REVISION)
        checkout = SourceCheckout(GitRepository(local), tmp_path)
        run = run_config.model_copy(update={"sync_mode": "local"})
        executor = happy_executor(make_host())

        state = await _deploy(run, executor, checkout=checkout)

        assert state.status == DeploymentStatus.SUCCEEDED
        assert local.ran("git clone")
        assert executor.transfers == [(str(tmp_path / "shop"), "/home/deploy/shop")]
        assert not executor.ran("git clone")

    @pytest.mark.asyncio
    async def test_remote_clone_failure(self, run_config):
        executor = happy_executor(make_host()).on("git clone", exit_code=128, stderr="not found")
        state = await _deploy(run_config, executor)

        assert state.failed_stage == "sync-source"
        assert state.error_type == "VcsError"
        assert state.stages_passed == 0
