"""Deployment state persistence."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

from deployctl.core.exceptions import DeploymentError
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import DeploymentState, DeploymentStatus, utcnow

logger = StructuredLogger(__name__)


class StateStore:
    """Persist per-target deployment state as one JSON file each."""

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize the store.

        Args:
            state_dir: Directory to store deployment state
        """
        if state_dir:
            self._state_dir = Path(state_dir).expanduser()
        else:
            self._state_dir = Path.home() / ".deployctl" / "deployments"
        self._state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, deployment_id: str) -> Path:
        return self._state_dir / f"{deployment_id}.json"

    def save(self, state: DeploymentState) -> None:
        """Save deployment state, replacing the file atomically."""
        state_file = self._path(state.id)
        tmp_file = state_file.with_suffix(".json.tmp")

        try:
            with open(tmp_file, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            tmp_file.replace(state_file)
            logger.debug("Saved deployment state", id=state.id, status=state.status.value)

        except OSError as e:
            raise DeploymentError(
                f"Failed to save deployment state: {e}",
                deployment_id=state.id,
            )

    def load(self, deployment_id: str) -> DeploymentState:
        """Load deployment state.

        Args:
            deployment_id: Deployment ID (``<run_id>-<target>``)

        Returns:
            Loaded DeploymentState
        """
        state_file = self._path(deployment_id)

        if not state_file.exists():
            raise DeploymentError(
                f"Deployment not found: {deployment_id}",
                deployment_id=deployment_id,
            )

        try:
            with open(state_file) as f:
                data = json.load(f)
            return DeploymentState.from_dict(data)

        except (OSError, ValueError, KeyError) as e:
            raise DeploymentError(
                f"Failed to load deployment state: {e}",
                deployment_id=deployment_id,
            )

    def load_run(self, run_id: str) -> list[DeploymentState]:
        """Load every target state recorded for ``run_id``."""
        states = [s for s in self.list(limit=None) if s.run_id == run_id]
        if not states:
            raise DeploymentError(f"Run not found: {run_id}", deployment_id=run_id)
        states.sort(key=lambda s: s.created_at)
        return states

    def delete(self, deployment_id: str) -> None:
        state_file = self._path(deployment_id)

        if state_file.exists():
            state_file.unlink()
            logger.debug("Deleted deployment state", id=deployment_id)

    def list(
        self,
        status: DeploymentStatus | None = None,
        target: str | None = None,
        limit: int | None = 50,
    ) -> list[DeploymentState]:
        """List deployments, newest first.

        Args:
            status: Filter by status
            target: Filter by target name
            limit: Maximum deployments to return, None for all

        Returns:
            List of DeploymentState
        """
        states: list[DeploymentState] = []

        for state_file in self._state_dir.glob("*.json"):
            try:
                with open(state_file) as f:
                    data = json.load(f)
                state = DeploymentState.from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to load deployment {state_file}: {e}")
                continue

            if status and state.status != status:
                continue
            if target and state.target != target:
                continue
            states.append(state)

        states.sort(key=lambda s: s.created_at, reverse=True)
        return states if limit is None else states[:limit]

    def list_runs(self, limit: int = 20) -> list[dict]:
        """Summarize recent runs: id, start time, status counts."""
        runs: dict[str, dict] = {}
        for state in self.list(limit=None):
            run = runs.setdefault(
                state.run_id,
                {"run_id": state.run_id, "created_at": state.created_at, "targets": 0, "statuses": {}},
            )
            run["targets"] += 1
            run["created_at"] = min(run["created_at"], state.created_at)
            run["statuses"][state.status.value] = run["statuses"].get(state.status.value, 0) + 1

        ordered = sorted(runs.values(), key=lambda r: r["created_at"], reverse=True)
        return ordered[:limit]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove completed deployments older than ``days``.

        Returns:
            Number of deployments removed
        """
        cutoff = utcnow() - timedelta(days=days)
        removed = 0

        for state in self.list(limit=None):
            if not state.is_complete:
                continue
            if state.created_at < cutoff:
                self.delete(state.id)
                removed += 1

        if removed > 0:
            logger.info(f"Cleaned up {removed} old deployments")

        return removed
