"""Executor adapter contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from deployctl.deploy.models import HostDescriptor


@dataclass
class CommandResult:
    """Structured result of one command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stderr last."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class TransferResult:
    """Structured result of a file or directory transfer."""

    local_path: str
    remote_path: str
    bytes_transferred: int
    files_transferred: int
    duration: float = 0.0


class Executor(ABC):
    """Runs commands and transfers files against one host.

    An executor instance is bound to a single :class:`HostDescriptor` and
    owns that host's connection for the duration of a run. Non-zero exit
    codes are returned, not raised. Transport problems raise
    ``ConnectionError`` or ``TransportTimeout``.
    """

    def __init__(self, host: HostDescriptor):
        self.host = host

    async def __aenter__(self) -> "Executor":
        await self.open()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def open(self) -> None:
        """Establish the transport. Default is a no-op."""

    async def close(self) -> None:
        """Release the transport. Default is a no-op."""

    @abstractmethod
    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run ``command`` on the host."""

    @abstractmethod
    async def transfer(self, local_path: str | Path, remote_path: str) -> TransferResult:
        """Copy a local file or directory tree to ``remote_path``."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the host is reachable. Never raises."""

    async def write_file(self, remote_path: str, content: str) -> None:
        """Write text content to ``remote_path``."""
        import tempfile

        with tempfile.TemporaryDirectory() as tmp:
            local = Path(tmp) / Path(remote_path).name
            local.write_text(content)
            await self.transfer(local, remote_path)
