"""Container runtime collaborator (Docker / Docker Compose)."""

import shlex
from enum import Enum

from deployctl.core.exceptions import BuildError, NoDeploymentDescriptor, RuntimeSetupError
from deployctl.core.logging import StructuredLogger
from deployctl.executors.base import CommandResult, Executor

logger = StructuredLogger(__name__)

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
DOCKERFILE = "Dockerfile"


class RuntimeMode(str, Enum):
    """How the project is built and started."""

    COMPOSE = "compose"
    DOCKERFILE = "dockerfile"


class ContainerRuntime:
    """Thin wrapper over docker commands run through an executor.

    Only exit codes are interpreted; output is kept for error messages.
    """

    def __init__(self, executor: Executor, sudo: bool = False, timeout: float | None = 1800.0):
        self._executor = executor
        self._docker = "sudo docker" if sudo else "docker"
        self._timeout = timeout

    async def _run(self, command: str) -> CommandResult:
        return await self._executor.execute(command, timeout=self._timeout)

    async def detect_mode(self, project_dir: str) -> RuntimeMode:
        """Pick compose when a compose file exists, else Dockerfile.

        Raises:
            NoDeploymentDescriptor: If neither is present
        """
        result = await self._run(f"ls -1A {shlex.quote(project_dir)}")
        if not result.ok:
            raise NoDeploymentDescriptor(
                f"Project directory not readable: {project_dir}",
                details={"stderr": result.stderr},
            )

        entries = set(result.stdout.splitlines())
        compose = next((f for f in COMPOSE_FILES if f in entries), None)
        if compose:
            logger.debug("Compose descriptor found", file=compose)
            return RuntimeMode.COMPOSE
        if DOCKERFILE in entries:
            return RuntimeMode.DOCKERFILE
        raise NoDeploymentDescriptor(
            f"No Dockerfile or compose file found in {project_dir}"
        )

    async def is_installed(self, binary: str) -> bool:
        result = await self._run(f"command -v {shlex.quote(binary)}")
        return result.ok

    async def compose_available(self) -> bool:
        result = await self._run(f"{self._docker} compose version")
        return result.ok

    async def service_active(self, service: str) -> bool:
        result = await self._run(f"systemctl is-active --quiet {shlex.quote(service)}")
        return result.ok

    async def start_service(self, service: str) -> None:
        result = await self._run(f"sudo systemctl enable --now {shlex.quote(service)}")
        if not result.ok:
            raise RuntimeSetupError(
                f"Could not start {service}: {result.stderr or result.stdout}"
            )

    async def install_packages(self, *packages: str) -> None:
        names = " ".join(shlex.quote(p) for p in packages)
        result = await self._run(
            "sudo apt-get update -y && "
            f"sudo DEBIAN_FRONTEND=noninteractive apt-get install -y {names}"
        )
        if not result.ok:
            raise RuntimeSetupError(
                f"Package install failed ({names}): {result.stderr or result.stdout}"
            )

    async def compose_down(self, project_dir: str) -> CommandResult:
        """Tear down the stack. Failure is returned, not raised."""
        return await self._run(f"cd {shlex.quote(project_dir)} && {self._docker} compose down")

    async def compose_build(self, project_dir: str) -> None:
        result = await self._run(f"cd {shlex.quote(project_dir)} && {self._docker} compose build")
        self._check(result, "docker compose build")

    async def compose_up(self, project_dir: str) -> None:
        result = await self._run(
            f"cd {shlex.quote(project_dir)} && {self._docker} compose up -d --build"
        )
        self._check(result, "docker compose up")

    async def build_image(self, project_dir: str, tag: str) -> None:
        result = await self._run(
            f"cd {shlex.quote(project_dir)} && {self._docker} build -t {shlex.quote(tag)} ."
        )
        self._check(result, "docker build")

    async def remove_container(self, name: str) -> None:
        """Stop and remove ``name`` if it exists."""
        quoted = shlex.quote(name)
        await self._run(f"{self._docker} stop {quoted} >/dev/null 2>&1 || true")
        await self._run(f"{self._docker} rm {quoted} >/dev/null 2>&1 || true")

    async def run_container(self, name: str, image: str, port: int) -> None:
        result = await self._run(
            f"{self._docker} run -d --name {shlex.quote(name)} "
            f"-p {port}:{port} {shlex.quote(image)}"
        )
        self._check(result, "docker run")

    def _check(self, result: CommandResult, operation: str) -> None:
        if not result.ok:
            raise BuildError(
                f"{operation} failed: {_tail(result.stderr or result.stdout)}",
                exit_code=result.exit_code,
            )


def _tail(text: str, lines: int = 10) -> str:
    return "\n".join(text.strip().splitlines()[-lines:]) or "no output"
