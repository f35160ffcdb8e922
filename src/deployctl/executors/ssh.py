"""SSH and SFTP executor built on Paramiko."""

import asyncio
import posixpath
import socket
import threading
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import paramiko

from deployctl.core.exceptions import ConnectionError, DeployCtlError, TransportTimeout
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import HostDescriptor
from deployctl.executors.base import CommandResult, Executor, TransferResult

logger = StructuredLogger(__name__)

T = TypeVar("T")

READ_CHUNK = 32768
POLL_INTERVAL = 0.05


class SSHExecutor(Executor):
    """Executor that talks to one remote host over a single SSH connection.

    Paramiko is blocking, so every call runs in a worker thread. A lock
    serializes use of the connection so commands on one host never
    interleave.
    """

    def __init__(
        self,
        host: HostDescriptor,
        *,
        connect_timeout: float = 20.0,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ):
        super().__init__(host)
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: paramiko.SSHClient | None = None
        self._lock = asyncio.Lock()
        self._log = logger.bind(target=host.name)

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        if self._client is None:
            await asyncio.to_thread(self._connect)

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(client.close)

    def _connect(self) -> None:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.user,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        if self.host.key_path:
            kwargs["key_filename"] = self.host.key_path
            kwargs["look_for_keys"] = False
        if self.host.password:
            kwargs["password"] = self.host.password
        if not self.host.key_path and not self.host.password:
            kwargs["allow_agent"] = True
            kwargs["look_for_keys"] = True

        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionError(
                f"SSH connection to {self.host.ssh_target} failed: {e}",
                host=self.host.address,
            ) from e

        self._client = client
        self._log.debug("SSH connection established")

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        abort = threading.Event()
        async with self._lock:
            await self.open()
            self._log.debug("Running remote command", command=command)
            return await self._in_worker(abort.set, self._run, command, timeout, abort)

    async def _in_worker(self, interrupt: Callable[[], None], func: Callable[..., T], *args: Any) -> T:
        """Run blocking Paramiko work in a thread.

        If the caller is cancelled (e.g. an attempt timeout), the worker is
        interrupted and awaited before the host lock is released, and the
        connection is dropped so the next call starts on a fresh session.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            interrupt()
            await asyncio.wait({worker})
            if not worker.cancelled() and worker.exception() is not None:
                self._log.debug("Interrupted remote call ended", error=str(worker.exception()))
            await asyncio.to_thread(self._drop)
            raise

    def _run(self, command: str, timeout: float | None, abort: threading.Event) -> CommandResult:
        client = self._client
        assert client is not None
        start = time.monotonic()
        deadline = None if timeout is None else start + timeout
        out = bytearray()
        err = bytearray()
        try:
            _, stdout, _ = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            # Both streams are drained while waiting, or output larger than
            # the channel window stalls the command forever.
            while True:
                if channel.recv_ready():
                    out += channel.recv(READ_CHUNK)
                    continue
                if channel.recv_stderr_ready():
                    err += channel.recv_stderr(READ_CHUNK)
                    continue
                if channel.exit_status_ready():
                    break
                if abort.is_set() or (deadline is not None and time.monotonic() >= deadline):
                    channel.close()
                    raise socket.timeout()
                time.sleep(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except socket.timeout:
            raise TransportTimeout(
                f"Command timed out after {timeout}s on {self.host.name}: {command}",
                timeout_seconds=timeout,
            )
        except (paramiko.SSHException, EOFError, OSError) as e:
            self._drop()
            raise ConnectionError(
                f"SSH session to {self.host.name} lost: {e}",
                host=self.host.address,
            ) from e

        return CommandResult(
            command=command,
            exit_code=exit_code,
            stdout=out.decode("utf-8", errors="replace").strip(),
            stderr=err.decode("utf-8", errors="replace").strip(),
            duration=time.monotonic() - start,
        )

    def _drop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    async def transfer(self, local_path: str | Path, remote_path: str) -> TransferResult:
        source = Path(local_path)
        if not source.exists():
            raise FileNotFoundError(f"Transfer source not found: {source}")

        async with self._lock:
            await self.open()
            start = time.monotonic()
            files, size = await self._in_worker(self._drop, self._put, source, remote_path)

        self._log.debug("Transferred files", files=files, bytes=size, dest=remote_path)
        return TransferResult(
            local_path=str(source),
            remote_path=remote_path,
            bytes_transferred=size,
            files_transferred=files,
            duration=time.monotonic() - start,
        )

    def _put(self, source: Path, remote_path: str) -> tuple[int, int]:
        assert self._client is not None
        try:
            sftp = self._client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            self._drop()
            raise ConnectionError(f"SFTP to {self.host.name} failed: {e}", host=self.host.address) from e

        try:
            if source.is_file():
                _sftp_makedirs(sftp, posixpath.dirname(remote_path))
                sftp.put(str(source), remote_path)
                return 1, source.stat().st_size

            files = 0
            size = 0
            _sftp_makedirs(sftp, remote_path)
            for path in sorted(source.rglob("*")):
                target = posixpath.join(remote_path, path.relative_to(source).as_posix())
                if path.is_dir():
                    _sftp_makedirs(sftp, target)
                elif path.is_file():
                    sftp.put(str(path), target)
                    files += 1
                    size += path.stat().st_size
            return files, size
        except socket.timeout:
            raise TransportTimeout(f"Transfer to {self.host.name} timed out")
        except (paramiko.SSHException, EOFError) as e:
            self._drop()
            raise ConnectionError(f"Transfer to {self.host.name} failed: {e}", host=self.host.address) from e
        finally:
            sftp.close()

    async def ping(self) -> bool:
        try:
            result = await self.execute("echo connected", timeout=self.connect_timeout)
        except DeployCtlError as e:
            self._log.warning("Connectivity probe failed", error=str(e))
            return False
        return result.ok and "connected" in result.stdout


def _sftp_makedirs(sftp: paramiko.SFTPClient, path: str) -> None:
    """``mkdir -p`` over SFTP."""
    if not path or path in ("/", "."):
        return
    try:
        sftp.stat(path)
        return
    except IOError:
        pass
    _sftp_makedirs(sftp, posixpath.dirname(path))
    sftp.mkdir(path)
