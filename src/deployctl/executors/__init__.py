"""Executor adapters: local shell and SSH/SFTP backends."""

from deployctl.deploy.models import HostDescriptor
from deployctl.executors.base import CommandResult, Executor, TransferResult
from deployctl.executors.local import LocalExecutor


def create_executor(host: HostDescriptor, connect_timeout: float = 20.0) -> Executor:
    """Build a fresh executor for ``host`` based on its transport."""
    if host.transport == "local":
        return LocalExecutor(host, working_dir=None)
    if host.transport == "ssh":
        from deployctl.executors.ssh import SSHExecutor

        return SSHExecutor(host, connect_timeout=connect_timeout)
    raise ValueError(f"Unknown transport: {host.transport}")


__all__ = [
    "CommandResult",
    "Executor",
    "LocalExecutor",
    "TransferResult",
    "create_executor",
]
