"""Local shell executor."""

import asyncio
import shutil
import time
from pathlib import Path

from deployctl.core.exceptions import ConnectionError, TransportTimeout
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import HostDescriptor
from deployctl.executors.base import CommandResult, Executor, TransferResult

logger = StructuredLogger(__name__)


class LocalExecutor(Executor):
    """Runs commands in a local shell and copies files on the local disk.

    Used for ``transport: local`` targets and for the local side of source
    syncing (clone on the operator machine, then transfer).
    """

    def __init__(
        self,
        host: HostDescriptor | None = None,
        working_dir: str | Path | None = None,
        shell: str = "/bin/bash",
    ):
        super().__init__(host or local_host())
        self.working_dir = str(working_dir) if working_dir else None
        self.shell = shell

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        start = time.monotonic()
        logger.debug("Running local command", command=command)
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
                executable=self.shell,
            )
        except OSError as e:
            raise ConnectionError(f"Cannot start local shell: {e}", host="localhost")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransportTimeout(
                f"Command timed out after {timeout}s: {command}",
                timeout_seconds=timeout,
            )

        return CommandResult(
            command=command,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            duration=time.monotonic() - start,
        )

    async def transfer(self, local_path: str | Path, remote_path: str) -> TransferResult:
        start = time.monotonic()
        source = Path(local_path)
        if not source.exists():
            raise FileNotFoundError(f"Transfer source not found: {source}")

        dest = Path(remote_path)
        if self.working_dir and not dest.is_absolute():
            dest = Path(self.working_dir) / dest

        files, size = await asyncio.to_thread(_copy, source, dest)
        return TransferResult(
            local_path=str(source),
            remote_path=str(dest),
            bytes_transferred=size,
            files_transferred=files,
            duration=time.monotonic() - start,
        )

    async def ping(self) -> bool:
        return True


def local_host() -> HostDescriptor:
    return HostDescriptor(
        address="localhost",
        user="",
        app_port=0,
        remote_dir=".",
        transport="local",
    )


def _copy(source: Path, dest: Path) -> tuple[int, int]:
    if source.is_dir():
        shutil.copytree(source, dest, dirs_exist_ok=True, symlinks=True)
        files = [p for p in source.rglob("*") if p.is_file()]
        return len(files), sum(p.stat().st_size for p in files)

    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, dest)
    return 1, source.stat().st_size
