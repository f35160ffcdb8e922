"""Run-level deployment report."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rich.table import Table

from deployctl.core.output import format_duration, style_status
from deployctl.deploy.models import (
    DeploymentState,
    DeploymentStatus,
    RollbackFailureRecord,
    StageRecord,
    utcnow,
)


@dataclass
class TargetReport:
    """Final outcome of one target."""

    name: str
    address: str
    status: DeploymentStatus
    stages_passed: int
    stages_total: int
    stages: list[StageRecord] = field(default_factory=list)
    rolled_back: bool = False
    failed_stage: str | None = None
    error: str | None = None
    error_type: str | None = None
    rollback_failures: list[RollbackFailureRecord] = field(default_factory=list)
    attempts: int = 0
    duration_seconds: float | None = None

    @classmethod
    def from_state(cls, state: DeploymentState) -> "TargetReport":
        return cls(
            name=state.target,
            address=state.address,
            status=state.status,
            stages_passed=state.stages_passed,
            stages_total=len(state.stages),
            stages=list(state.stages),
            rolled_back=state.rolled_back,
            failed_stage=state.failed_stage,
            error=state.error,
            error_type=state.error_type,
            rollback_failures=list(state.rollback_failures),
            attempts=sum(len(step.attempts) for stage in state.stages for step in stage.steps),
            duration_seconds=state.duration_seconds,
        )

    @property
    def progress(self) -> str:
        return f"{self.stages_passed}/{self.stages_total}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "status": self.status.value,
            "stages_passed": self.stages_passed,
            "stages_total": self.stages_total,
            "stages": [
                {"name": s.name, "status": s.status.value, "duration": s.duration}
                for s in self.stages
            ],
            "rolled_back": self.rolled_back,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "error_type": self.error_type,
            "rollback_failures": [r.to_dict() for r in self.rollback_failures],
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class DeploymentReport:
    """Summary of a whole run, produced once every target is terminal."""

    run_id: str
    project: str
    ref: str
    targets: list[TargetReport] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled: bool = False

    @classmethod
    def from_states(
        cls,
        run_id: str,
        project: str,
        ref: str,
        states: list[DeploymentState],
        started_at: datetime | None = None,
        cancelled: bool = False,
    ) -> "DeploymentReport":
        return cls(
            run_id=run_id,
            project=project,
            ref=ref,
            targets=[TargetReport.from_state(s) for s in states],
            started_at=started_at or utcnow(),
            completed_at=utcnow(),
            cancelled=cancelled,
        )

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(t.status.value for t in self.targets)
        return {s.value: counter[s.value] for s in DeploymentStatus if counter[s.value]}

    @property
    def succeeded(self) -> bool:
        return bool(self.targets) and all(
            t.status == DeploymentStatus.SUCCEEDED for t in self.targets
        )

    @property
    def exit_code(self) -> int:
        """0 only when every target succeeded."""
        return 0 if self.succeeded else 1

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def target(self, name: str) -> TargetReport:
        for t in self.targets:
            if t.name == name:
                return t
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "project": self.project,
            "ref": self.ref,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "counts": self.counts,
            "exit_code": self.exit_code,
            "targets": [t.to_dict() for t in self.targets],
        }

    def to_table(self) -> Table:
        table = Table(
            title=f"{self.project} @ {self.ref} (run {self.run_id})",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Target")
        table.add_column("Address")
        table.add_column("Status")
        table.add_column("Stages")
        table.add_column("Failed Stage")
        table.add_column("Error")
        table.add_column("Duration")

        for t in self.targets:
            status = style_status(t.status.value)
            if t.rolled_back:
                status += " [dim](rolled back)[/dim]"
            error = t.error or ""
            if t.error_type and error:
                error = f"{t.error_type}: {error}"
            if t.rollback_failures:
                error += f" [red]+{len(t.rollback_failures)} rollback failure(s)[/red]"
            table.add_row(
                t.name,
                t.address,
                status,
                t.progress,
                t.failed_stage or "-",
                error or "-",
                format_duration(t.duration_seconds),
            )
        return table

    def summary_line(self) -> str:
        parts = [f"{count} {status}" for status, count in self.counts.items()]
        return f"{len(self.targets)} target(s): " + ", ".join(parts)
