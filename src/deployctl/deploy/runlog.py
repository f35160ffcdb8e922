"""Durable per-run log of step attempts, rollbacks and transitions."""

import json
import threading
from pathlib import Path
from typing import Any

from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import DeploymentEvent, DeploymentState, StepAttempt, utcnow

logger = StructuredLogger(__name__)


class RunLog:
    """Append-only JSON lines file, one per run.

    Every record carries the run id and target so interleaved output from
    concurrent targets can be filtered afterwards.
    """

    def __init__(self, run_id: str, log_dir: str | Path | None = None, max_logs: int = 500):
        """Initialize the run log.

        Args:
            run_id: Run identifier, used as the file name
            log_dir: Directory to store run logs
            max_logs: Maximum number of run logs to retain
        """
        if log_dir:
            self._log_dir = Path(log_dir).expanduser()
        else:
            self._log_dir = Path.home() / ".deployctl" / "runs"
        self._log_dir.mkdir(parents=True, exist_ok=True)

        self.run_id = run_id
        self._max_logs = max_logs
        self._lock = threading.Lock()
        self._cleanup_old_logs()

    @property
    def path(self) -> Path:
        return self._log_dir / f"{self.run_id}.jsonl"

    def _write(self, entry: dict[str, Any]) -> None:
        entry = {"timestamp": utcnow().isoformat(), "run_id": self.run_id, **entry}
        line = json.dumps(entry, default=str)
        with self._lock:
            with open(self.path, "a") as f:
                f.write(line + "\n")

    def record_run(self, event: str, **data: Any) -> None:
        """Run-level record such as start or completion."""
        self._write({"kind": "run", "event": event, **data})

    def record_event(self, state: DeploymentState, event: DeploymentEvent) -> None:
        self._write(
            {
                "kind": "transition",
                "target": state.target,
                "from": event.from_status,
                "to": event.to_status,
                "stage_index": event.stage_index,
                "message": event.message,
            }
        )

    def record_attempt(
        self,
        state: DeploymentState,
        stage: str,
        step: str,
        attempt: StepAttempt,
    ) -> None:
        self._write(
            {
                "kind": "attempt",
                "target": state.target,
                "stage": stage,
                "step": step,
                "attempt": attempt.attempt,
                "outcome": "ok" if attempt.ok else "error",
                "duration": round(attempt.duration, 3),
                "message": attempt.message,
                "error": attempt.error,
                "error_type": attempt.error_type,
                "transient": attempt.transient,
            }
        )

    def record_rollback(
        self,
        state: DeploymentState,
        stage: str,
        step: str,
        attempt: StepAttempt,
    ) -> None:
        self._write(
            {
                "kind": "rollback",
                "target": state.target,
                "stage": stage,
                "step": step,
                "outcome": "ok" if attempt.ok else "error",
                "duration": round(attempt.duration, 3),
                "error": attempt.error,
            }
        )

    def read(self, target: str | None = None, kind: str | None = None) -> list[dict[str, Any]]:
        """Read records back, optionally filtered."""
        return read_run_log(self.path, target=target, kind=kind)

    def _cleanup_old_logs(self) -> None:
        """Remove old run logs beyond the max_logs limit."""
        files = sorted(self._log_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime)
        if len(files) > self._max_logs:
            for old_file in files[: -self._max_logs]:
                old_file.unlink(missing_ok=True)
                old_file.with_suffix(".log").unlink(missing_ok=True)


def read_run_log(
    path: str | Path,
    target: str | None = None,
    kind: str | None = None,
) -> list[dict[str, Any]]:
    """Parse a run log file, skipping unreadable lines."""
    entries: list[dict[str, Any]] = []
    with open(path) as f:
        for number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                logger.warning("Skipping malformed run log line", path=str(path), line=number)
                continue
            if target and entry.get("target") != target:
                continue
            if kind and entry.get("kind") != kind:
                continue
            entries.append(entry)
    return entries
