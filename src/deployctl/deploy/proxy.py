"""Nginx reverse-proxy collaborator."""

import posixpath
import shlex

from jinja2 import Environment, BaseLoader, StrictUndefined

from deployctl.core.exceptions import DeploymentError
from deployctl.core.logging import StructuredLogger
from deployctl.executors.base import CommandResult, Executor

logger = StructuredLogger(__name__)

SITE_TEMPLATE = """\
# Managed by deployctl for {{ project }}. Changes are overwritten on deploy.
server {
    listen {{ listen_port }};
    listen [::]:{{ listen_port }};
    server_name {{ server_name }};

    location / {
        proxy_pass http://127.0.0.1:{{ app_port }};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
    }
}
"""


class NginxProxy:
    """Render, install, validate and reload a per-project nginx site.

    The live config is only ever replaced with ``mv`` so nginx never sees a
    half-written file, and reload is refused until ``nginx -t`` passes.
    """

    def __init__(
        self,
        executor: Executor,
        sites_dir: str = "/etc/nginx/sites-available",
        enabled_dir: str | None = "/etc/nginx/sites-enabled",
        sudo: bool = True,
        timeout: float | None = 60.0,
    ):
        self._executor = executor
        self.sites_dir = sites_dir
        self.enabled_dir = enabled_dir
        self._sudo = "sudo " if sudo else ""
        self._timeout = timeout
        self._env = Environment(loader=BaseLoader(), undefined=StrictUndefined)

    async def _run(self, command: str) -> CommandResult:
        return await self._executor.execute(f"{self._sudo}{command}", timeout=self._timeout)

    def config_path(self, project: str) -> str:
        return posixpath.join(self.sites_dir, project)

    def backup_path(self, project: str) -> str:
        return f"{self.config_path(project)}.deployctl-backup"

    def render(
        self,
        project: str,
        app_port: int,
        listen_port: int = 80,
        server_name: str = "_",
    ) -> str:
        template = self._env.from_string(SITE_TEMPLATE)
        return template.render(
            project=project,
            app_port=app_port,
            listen_port=listen_port,
            server_name=server_name,
        )

    async def stage(self, project: str, content: str) -> str:
        """Upload rendered content to a temporary path; returns that path."""
        staged = f"/tmp/deployctl-{project}.conf"
        await self._executor.write_file(staged, content)
        return staged

    async def backup(self, project: str) -> str | None:
        """Copy the live config aside. Returns the backup path, or None if there was none."""
        live = shlex.quote(self.config_path(project))
        existed = await self._run(f"test -f {live}")
        if not existed.ok:
            return None
        backup = self.backup_path(project)
        result = await self._run(f"cp -p {live} {shlex.quote(backup)}")
        if not result.ok:
            raise DeploymentError(f"Could not back up {live}: {result.stderr}")
        return backup

    async def install(self, staged_path: str, project: str, take_backup: bool = True) -> str | None:
        """Move the staged file into place, keeping a backup of the old one.

        Pass ``take_backup=False`` when a backup was already taken, so a
        repeated install never overwrites it with our own config.

        Returns:
            Backup path when a previous config was backed up, else None
        """
        live = shlex.quote(self.config_path(project))
        backup = await self.backup(project) if take_backup else None

        result = await self._run(f"mv -f {shlex.quote(staged_path)} {live}")
        if not result.ok:
            raise DeploymentError(f"Could not install proxy config: {result.stderr}")

        if self.enabled_dir:
            link = shlex.quote(posixpath.join(self.enabled_dir, project))
            result = await self._run(f"ln -sfn {live} {link}")
            if not result.ok:
                raise DeploymentError(f"Could not enable proxy config: {result.stderr}")

        logger.debug("Proxy config installed", project=project, backup=backup)
        return backup

    async def validate(self, path: str | None = None) -> bool:
        """Run ``nginx -t``. With ``path``, also require the file to exist."""
        if path is not None:
            exists = await self._run(f"test -f {shlex.quote(path)}")
            if not exists.ok:
                return False
        result = await self._run("nginx -t")
        if not result.ok:
            logger.warning("nginx config test failed", output=result.stderr or result.stdout)
        return result.ok

    async def reload(self) -> bool:
        """Reload, never restart, so in-flight connections survive."""
        result = await self._run("systemctl reload nginx")
        if result.ok:
            return True
        result = await self._run("nginx -s reload")
        return result.ok

    async def remove(self, project: str) -> None:
        commands = [f"rm -f {shlex.quote(self.config_path(project))}"]
        if self.enabled_dir:
            commands.append(f"rm -f {shlex.quote(posixpath.join(self.enabled_dir, project))}")
        for command in commands:
            result = await self._run(command)
            if not result.ok:
                raise DeploymentError(f"Could not remove proxy config: {result.stderr}")

    async def restore(self, project: str, backup: str | None) -> None:
        """Put the previous config back, or remove ours if there was none."""
        if backup is None:
            await self.remove(project)
            return
        result = await self._run(
            f"mv -f {shlex.quote(backup)} {shlex.quote(self.config_path(project))}"
        )
        if not result.ok:
            raise DeploymentError(f"Could not restore proxy config: {result.stderr}")
