"""Git collaborator. Runs through any executor, local or remote."""

import asyncio
import shlex
from pathlib import Path

from deployctl.core.exceptions import VcsError
from deployctl.core.logging import StructuredLogger
from deployctl.executors.base import CommandResult, Executor

logger = StructuredLogger(__name__)


class GitRepository:
    """Idempotent clone/update of a repository at a pinned ref."""

    def __init__(self, executor: Executor, timeout: float | None = 600.0):
        self._executor = executor
        self._timeout = timeout

    async def _git(self, operation: str, args: str, ref: str | None = None) -> CommandResult:
        result = await self._executor.execute(f"git {args}", timeout=self._timeout)
        if not result.ok:
            reason = result.stderr or result.stdout or f"exit {result.exit_code}"
            raise VcsError(
                f"git {operation} failed: {reason}",
                ref=ref,
                details={"exit_code": result.exit_code},
            )
        return result

    async def exists(self, dest: str) -> bool:
        result = await self._executor.execute(
            f"test -d {shlex.quote(dest)}/.git", timeout=self._timeout
        )
        return result.ok

    async def clone(self, url: str, ref: str, dest: str) -> str:
        """Fresh clone of ``url`` at ``ref`` into ``dest``."""
        logger.info("Cloning repository", url=url, ref=ref, dest=dest)
        await self._git(
            "clone",
            f"clone --branch {shlex.quote(ref)} {shlex.quote(url)} {shlex.quote(dest)}",
            ref=ref,
        )
        return await self.head(dest)

    async def pull(self, dest: str, ref: str) -> str:
        """Bring ``dest`` to the tip of ``ref`` on origin, discarding local edits."""
        logger.info("Updating repository", dest=dest, ref=ref)
        repo = shlex.quote(dest)
        await self._git("fetch", f"-C {repo} fetch --prune origin {shlex.quote(ref)}", ref=ref)
        await self._git("checkout", f"-C {repo} checkout --force --detach FETCH_HEAD", ref=ref)
        return await self.head(dest)

    async def sync(self, url: str, ref: str, dest: str) -> str:
        """Clone or update; returns the checked-out commit."""
        if await self.exists(dest):
            return await self.pull(dest, ref)
        return await self.clone(url, ref, dest)

    async def head(self, dest: str) -> str:
        result = await self._git("rev-parse", f"-C {shlex.quote(dest)} rev-parse HEAD")
        return result.stdout.strip()


class SourceCheckout:
    """Single local checkout shared by every target of a run.

    The first target to reach sync-source clones or updates; the others
    wait on the lock and reuse the result for the same ref.
    """

    def __init__(self, repo: GitRepository, workspace: str | Path):
        self._repo = repo
        self._workspace = Path(workspace)
        self._lock = asyncio.Lock()
        self._synced: dict[tuple[str, str], str] = {}

    def path_for(self, project: str) -> Path:
        return self._workspace / project

    async def ensure(self, url: str, ref: str, project: str) -> tuple[Path, str]:
        dest = self.path_for(project)
        async with self._lock:
            key = (url, ref)
            if key not in self._synced:
                self._workspace.mkdir(parents=True, exist_ok=True)
                self._synced[key] = await self._repo.sync(url, ref, str(dest))
            return dest, self._synced[key]
