"""Tests for the container runtime collaborator."""

import pytest

from deployctl.core.exceptions import BuildError, NoDeploymentDescriptor, RuntimeSetupError
from deployctl.deploy.runtime import ContainerRuntime, RuntimeMode

from conftest import FakeExecutor


class TestDetectMode:
    """Tests for descriptor detection."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "listing, expected",
        [
            ("docker-compose.yml\nDockerfile\napp.py", RuntimeMode.COMPOSE),
            ("compose.yaml\nsrc", RuntimeMode.COMPOSE),
            ("Dockerfile\napp.py", RuntimeMode.DOCKERFILE),
        ],
    )
    async def test_prefers_compose(self, listing, expected):
        executor = FakeExecutor().on("ls -1A", stdout=listing)
        assert await ContainerRuntime(executor).detect_mode("/srv/shop") == expected

    @pytest.mark.asyncio
    async def test_no_descriptor(self):
        executor = FakeExecutor().on("ls -1A", stdout="README.md\nsrc")
        with pytest.raises(NoDeploymentDescriptor):
            await ContainerRuntime(executor).detect_mode("/srv/shop")

    @pytest.mark.asyncio
    async def test_unreadable_directory(self):
        executor = FakeExecutor().on("ls -1A", exit_code=2, stderr="No such file or directory")
        with pytest.raises(NoDeploymentDescriptor):
            await ContainerRuntime(executor).detect_mode("/srv/missing")


class TestContainerRuntime:
    """Tests for build, start and tool management."""

    @pytest.mark.asyncio
    async def test_build_failure_carries_exit_code(self):
        executor = FakeExecutor().on("docker build", exit_code=1, stderr="step 3/7\nno such file: requirements.txt")

        with pytest.raises(BuildError) as exc_info:
            await ContainerRuntime(executor).build_image("/srv/shop", "shop")

        assert exc_info.value.exit_code == 1
        assert "requirements.txt" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_compose_up_failure(self):
        executor = FakeExecutor().on("compose up", exit_code=1)
        with pytest.raises(BuildError):
            await ContainerRuntime(executor).compose_up("/srv/shop")

    @pytest.mark.asyncio
    async def test_compose_down_failure_is_returned(self):
        executor = FakeExecutor().on("compose down", exit_code=1, stderr="no such project")
        result = await ContainerRuntime(executor).compose_down("/srv/shop")
        assert not result.ok

    @pytest.mark.asyncio
    async def test_run_container_publishes_port(self):
        executor = FakeExecutor()
        await ContainerRuntime(executor).run_container("shop", "shop", 8000)
        assert executor.commands == ["docker run -d --name shop -p 8000:8000 shop"]

    @pytest.mark.asyncio
    async def test_remove_container_tolerates_absence(self):
        executor = FakeExecutor()
        await ContainerRuntime(executor).remove_container("shop")
        assert all(c.endswith("|| true") for c in executor.commands)

    @pytest.mark.asyncio
    async def test_sudo_prefix(self):
        executor = FakeExecutor()
        await ContainerRuntime(executor, sudo=True).compose_build("/srv/shop")
        assert executor.commands == ["cd /srv/shop && sudo docker compose build"]

    @pytest.mark.asyncio
    async def test_tool_checks(self):
        executor = FakeExecutor().on("command -v nginx", exit_code=1)
        runtime = ContainerRuntime(executor)
        assert await runtime.is_installed("docker")
        assert not await runtime.is_installed("nginx")

    @pytest.mark.asyncio
    async def test_install_failure(self):
        executor = FakeExecutor().on("apt-get", exit_code=100, stderr="Unable to locate package")
        with pytest.raises(RuntimeSetupError):
            await ContainerRuntime(executor).install_packages("docker.io")

    @pytest.mark.asyncio
    async def test_start_service_failure(self):
        executor = FakeExecutor().on("systemctl enable", exit_code=1, stderr="unit not found")
        with pytest.raises(RuntimeSetupError):
            await ContainerRuntime(executor).start_service("docker")
