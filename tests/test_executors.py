"""Tests for executor adapters."""

import socket
from pathlib import Path
from unittest.mock import MagicMock

import paramiko
import pytest

from deployctl.core.async_utils import run_with_timeout
from deployctl.core.exceptions import ConnectionError, TransportTimeout
from deployctl.executors import LocalExecutor, create_executor
from deployctl.executors.ssh import SSHExecutor

from conftest import make_host


class TestLocalExecutor:
    """Tests for LocalExecutor."""

    @pytest.mark.asyncio
    async def test_execute_success(self):
        result = await LocalExecutor().execute("echo hello")
        assert result.ok
        assert result.stdout == "hello"
        assert result.command == "echo hello"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_returned(self):
        result = await LocalExecutor().execute("echo oops >&2; exit 3")
        assert result.exit_code == 3
        assert result.stderr == "oops"
        assert not result.ok

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(TransportTimeout):
            await LocalExecutor().execute("sleep 5", timeout=0.1)

    @pytest.mark.asyncio
    async def test_working_dir(self, tmp_path):
        result = await LocalExecutor(working_dir=tmp_path).execute("pwd")
        assert Path(result.stdout).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_transfer_directory(self, tmp_path):
        src = tmp_path / "src"
        (src / "app").mkdir(parents=True)
        (src / "app" / "main.py").write_text("print('hi')\n")
        (src / "Dockerfile").write_text("FROM python:3.12\n")

        result = await LocalExecutor().transfer(src, str(tmp_path / "dest"))

        assert result.files_transferred == 2
        assert (tmp_path / "dest" / "app" / "main.py").read_text() == "print('hi')\n"

    @pytest.mark.asyncio
    async def test_transfer_missing_source(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await LocalExecutor().transfer(tmp_path / "nope", str(tmp_path / "dest"))

    @pytest.mark.asyncio
    async def test_write_file(self, tmp_path):
        target = tmp_path / "conf" / "site.conf"
        await LocalExecutor().write_file(str(target), "server {}")
        assert target.read_text() == "server {}"

    @pytest.mark.asyncio
    async def test_ping(self):
        assert await LocalExecutor().ping()


class FakeChannel:
    """Paramiko channel stand-in: output arrives in chunks, then the exit status.

    As with a full window, the exit status is not ready until every chunk
    has been read. ``hang`` models a command that never exits.
    """

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0, chunk: int = 4, hang: bool = False):
        self._out = [stdout[i : i + chunk] for i in range(0, len(stdout), chunk)]
        self._err = [stderr[i : i + chunk] for i in range(0, len(stderr), chunk)]
        self.exit_code = exit_code
        self.hang = hang
        self.closed = False

    def recv_ready(self) -> bool:
        return bool(self._out)

    def recv(self, nbytes: int) -> bytes:
        return self._out.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._err)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._err.pop(0)

    def exit_status_ready(self) -> bool:
        if self.closed:
            return True
        return not self.hang and not self._out and not self._err

    def recv_exit_status(self) -> int:
        return self.exit_code

    def close(self) -> None:
        self.closed = True


def _ssh_client(stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0, hang: bool = False) -> MagicMock:
    client = MagicMock(spec=paramiko.SSHClient)
    stdout_file = MagicMock()
    stdout_file.channel = FakeChannel(stdout, stderr, exit_code, hang=hang)
    client.exec_command.return_value = (MagicMock(), stdout_file, MagicMock())
    return client


def _channel(client: MagicMock) -> FakeChannel:
    return client.exec_command.return_value[1].channel


class TestSSHExecutor:
    """Tests for SSHExecutor with a mocked Paramiko client."""

    @pytest.mark.asyncio
    async def test_execute(self):
        client = _ssh_client(b"ok\n")
        executor = SSHExecutor(make_host(key_path="/keys/id_ed25519"), client_factory=lambda: client)

        result = await executor.execute("uptime", timeout=10)

        assert result.ok
        assert result.stdout == "ok"
        client.exec_command.assert_called_once_with("uptime", timeout=10)
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "web1.example.com"
        assert kwargs["username"] == "deploy"
        assert kwargs["key_filename"] == "/keys/id_ed25519"
        assert kwargs["look_for_keys"] is False

    @pytest.mark.asyncio
    async def test_connection_reused(self):
        client = _ssh_client()
        factory = MagicMock(return_value=client)
        executor = SSHExecutor(make_host(), client_factory=factory)

        await executor.execute("true")
        await executor.execute("true")

        assert factory.call_count == 1
        assert executor.connected

    @pytest.mark.asyncio
    async def test_exit_code_and_stderr(self):
        client = _ssh_client(stderr=b"denied\n", exit_code=126)
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        result = await executor.execute("cat /root/secret")

        assert result.exit_code == 126
        assert result.stderr == "denied"

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        client = _ssh_client()
        client.connect.side_effect = paramiko.AuthenticationException("bad key")
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        with pytest.raises(ConnectionError):
            await executor.execute("true")
        assert not executor.connected

    @pytest.mark.asyncio
    async def test_ping_false_on_connection_error(self):
        client = _ssh_client()
        client.connect.side_effect = OSError("no route to host")
        executor = SSHExecutor(make_host(), client_factory=lambda: client)
        assert await executor.ping() is False

    @pytest.mark.asyncio
    async def test_ping(self):
        client = _ssh_client(b"connected\n")
        executor = SSHExecutor(make_host(), client_factory=lambda: client)
        assert await executor.ping() is True

    @pytest.mark.asyncio
    async def test_lost_session_reconnects(self):
        broken = _ssh_client()
        broken.exec_command.side_effect = EOFError()
        healthy = _ssh_client(b"back\n")
        factory = MagicMock(side_effect=[broken, healthy])
        executor = SSHExecutor(make_host(), client_factory=factory)

        with pytest.raises(ConnectionError):
            await executor.execute("true")
        result = await executor.execute("true")

        assert result.stdout == "back"
        broken.close.assert_called()

    @pytest.mark.asyncio
    async def test_open_timeout(self):
        client = _ssh_client()
        client.exec_command.side_effect = socket.timeout()
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        with pytest.raises(TransportTimeout):
            await executor.execute("sleep 100", timeout=1)

    @pytest.mark.asyncio
    async def test_large_output_drained_before_exit(self):
        log = b"".join(f"step {i}/200\n".encode() for i in range(200))
        client = _ssh_client(log, stderr=b"warning: cache miss\n")
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        result = await executor.execute("docker compose build")

        assert result.stdout == log.decode().strip()
        assert result.stderr == "warning: cache miss"

    @pytest.mark.asyncio
    async def test_hung_command_times_out(self):
        client = _ssh_client(hang=True)
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        with pytest.raises(TransportTimeout):
            await executor.execute("sleep 100", timeout=0.1)
        assert _channel(client).closed

    @pytest.mark.asyncio
    async def test_cancelled_call_stops_worker_before_unlocking(self):
        hung = _ssh_client(hang=True)
        fresh = _ssh_client(b"done\n")
        factory = MagicMock(side_effect=[hung, fresh])
        executor = SSHExecutor(make_host(), client_factory=factory)

        with pytest.raises(TransportTimeout):
            await run_with_timeout(executor.execute("sleep 100"), 0.1)

        assert _channel(hung).closed
        assert not executor._lock.locked()
        hung.close.assert_called()
        assert not executor.connected

        result = await executor.execute("true")
        assert result.stdout == "done"

    @pytest.mark.asyncio
    async def test_transfer_directory(self, tmp_path):
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "main.py").write_text("x = 1\n")
        (tmp_path / "compose.yml").write_text("services: {}\n")
        sftp = MagicMock()
        sftp.stat.side_effect = IOError("missing")
        client = _ssh_client()
        client.open_sftp.return_value = sftp
        executor = SSHExecutor(make_host(), client_factory=lambda: client)

        result = await executor.transfer(tmp_path, "/srv/shop")

        assert result.files_transferred == 2
        put_targets = sorted(call.args[1] for call in sftp.put.call_args_list)
        assert put_targets == ["/srv/shop/app/main.py", "/srv/shop/compose.yml"]
        sftp.mkdir.assert_any_call("/srv/shop/app")
        sftp.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close(self):
        client = _ssh_client()
        executor = SSHExecutor(make_host(), client_factory=lambda: client)
        await executor.execute("true")
        await executor.close()
        client.close.assert_called_once()
        assert not executor.connected


class TestCreateExecutor:
    """Tests for create_executor."""

    def test_ssh(self):
        assert isinstance(create_executor(make_host()), SSHExecutor)

    def test_local(self):
        assert isinstance(create_executor(make_host(transport="local")), LocalExecutor)

    def test_unknown_transport(self):
        with pytest.raises(ValueError):
            create_executor(make_host(transport="telnet"))
