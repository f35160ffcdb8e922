"""Pytest fixtures for deployctl tests."""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import httpx
import pytest
from click.testing import CliRunner

from deployctl.config import (
    DeployCtlConfig,
    GlobalConfig,
    HealthCheckConfig,
    HostConfig,
    ProfileConfig,
    RetryConfig,
    RunConfig,
)
from deployctl.core.context import DeployCtlContext
from deployctl.core.output import OutputFormat
from deployctl.deploy.health import HealthGate
from deployctl.deploy.models import HostDescriptor
from deployctl.executors.base import CommandResult, Executor, TransferResult

REVISION = "0123456789abcdef0123456789abcdef01234567"


@dataclass
class Rule:
    """Scripted response for commands containing ``pattern``."""

    pattern: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    error: Exception | None = None
    times: int | None = None


class FakeExecutor(Executor):
    """Scripted in-memory executor.

    Rules are matched by substring, newest first. A rule with ``times`` is
    consumed after that many matches. Unmatched commands succeed silently.
    """

    def __init__(self, host: HostDescriptor | None = None, reachable: bool = True):
        super().__init__(host or make_host())
        self.reachable = reachable
        self.commands: list[str] = []
        self.transfers: list[tuple[str, str]] = []
        self.files: dict[str, str] = {}
        self.rules: list[Rule] = []
        self.closed = False

    def on(
        self,
        pattern: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        error: Exception | None = None,
        times: int | None = None,
    ) -> "FakeExecutor":
        self.rules.insert(0, Rule(pattern, exit_code, stdout, stderr, error, times))
        return self

    def ran(self, pattern: str) -> list[str]:
        return [c for c in self.commands if pattern in c]

    async def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        for rule in self.rules:
            if rule.pattern not in command:
                continue
            if rule.times is not None:
                if rule.times <= 0:
                    continue
                rule.times -= 1
            if rule.error is not None:
                raise rule.error
            return CommandResult(command, rule.exit_code, rule.stdout, rule.stderr)
        return CommandResult(command, 0)

    async def transfer(self, local_path, remote_path: str) -> TransferResult:
        self.transfers.append((str(local_path), remote_path))
        return TransferResult(str(local_path), remote_path, 0, 0)

    async def write_file(self, remote_path: str, content: str) -> None:
        self.files[remote_path] = content

    async def ping(self) -> bool:
        self.commands.append("echo connected")
        await asyncio.sleep(0)
        return self.reachable

    async def close(self) -> None:
        self.closed = True


def make_host(name: str = "web1", **kwargs) -> HostDescriptor:
    fields = {
        "address": f"{name}.example.com",
        "user": "deploy",
        "app_port": 8000,
        "remote_dir": "/home/deploy/shop",
        "name": name,
    }
    fields.update(kwargs)
    return HostDescriptor(**fields)


def happy_executor(host: HostDescriptor | None = None) -> FakeExecutor:
    """Executor on which every canonical stage succeeds in compose mode."""
    executor = FakeExecutor(host)
    executor.on("test -d", exit_code=1)
    executor.on("rev-parse", stdout=REVISION)
    executor.on("ls -1A", stdout="docker-compose.yml\nsrc\nREADME.md")
    return executor


def health_gate(*statuses: int) -> HealthGate:
    """Health gate whose endpoint answers with ``statuses`` in order, then 200."""
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        status = remaining.pop(0) if remaining else 200
        return httpx.Response(status)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HealthGate(client=client, sleep=no_sleep)


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def host() -> HostDescriptor:
    return make_host()


@pytest.fixture
def run_config() -> RunConfig:
    """Run config that needs no local git and polls health quickly."""
    return RunConfig(
        repo_url="https://github.com/acme/shop.git",
        branch="main",
        targets=[HostConfig(address="web1.example.com", user="deploy", name="web1")],
        sync_mode="remote",
        retry=RetryConfig(max_attempts=3, backoff=0.0, attempt_timeout=5.0),
        health=HealthCheckConfig(interval=0.01, timeout=1.0),
    )


@pytest.fixture
def mock_config(run_config: RunConfig, tmp_path: Path) -> DeployCtlConfig:
    """Create a mock configuration."""
    return DeployCtlConfig(
        global_settings=GlobalConfig(
            state_dir=str(tmp_path / "deployments"),
            log_dir=str(tmp_path / "runs"),
        ),
        profiles={"default": ProfileConfig(run=run_config)},
    )


@pytest.fixture
def mock_context(mock_config: DeployCtlConfig) -> DeployCtlContext:
    """Create a mock deployctl context."""
    return DeployCtlContext(
        config=mock_config,
        profile="default",
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        dry_run=False,
        color=False,
    )


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path) -> Generator[None, None, None]:
    """Clean environment variables before each test."""
    env_vars = [
        "DEPLOYCTL_PROFILE",
        "DEPLOYCTL_CONFIG",
        "DEPLOYCTL_REPO_URL",
        "DEPLOYCTL_BRANCH",
        "DEPLOYCTL_SSH_KEY",
        "DEPLOYCTL_SSH_PASSWORD",
        "DEPLOYCTL_STATE_DIR",
        "DEPLOYCTL_LOG_DIR",
    ]

    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)

    # Keep CLI tests away from the real ~/.deployctl
    os.environ["DEPLOYCTL_STATE_DIR"] = str(tmp_path / "state")
    os.environ["DEPLOYCTL_LOG_DIR"] = str(tmp_path / "logs")

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture
def temp_config_file(tmp_path: Path) -> str:
    """Create a temporary config file."""
    config_content = """
version: "1"
global:
  output_format: table
profiles:
  default:
    run:
      repo_url: https://github.com/acme/shop.git
      branch: release
      concurrency: 2
      targets:
        - address: 10.0.0.5
          user: deploy
          name: web1
        - address: 10.0.0.6
          user: deploy
          name: web2
          app_port: 9000
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return str(config_file)
