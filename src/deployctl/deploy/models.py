"""Deployment data models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from deployctl.core.exceptions import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def project_name_from_url(url: str) -> str:
    """Derive the project name from a repository URL (like ``basename -s .git``)."""
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


def new_run_id() -> str:
    return f"{utcnow().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class HostDescriptor:
    """One deployment target. Immutable for the duration of a run."""

    address: str
    user: str
    app_port: int
    remote_dir: str
    port: int = 22
    key_path: str | None = None
    password: str | None = field(default=None, repr=False)
    name: str = ""
    transport: str = "ssh"
    public_url: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.address)

    @property
    def ssh_target(self) -> str:
        return f"{self.user}@{self.address}"

    def health_endpoint(self, scheme: str = "http", path: str = "/") -> str:
        """Public URL the health gate polls."""
        if self.public_url:
            return self.public_url
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{scheme}://{self.address}{path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "user": self.user,
            "port": self.port,
            "app_port": self.app_port,
            "remote_dir": self.remote_dir,
            "transport": self.transport,
            "public_url": self.public_url,
        }


@dataclass(frozen=True)
class TargetSet:
    """Ordered group of targets deployed together."""

    hosts: tuple[HostDescriptor, ...]

    def __post_init__(self) -> None:
        names = [h.name for h in self.hosts]
        if len(names) != len(set(names)):
            raise ValueError("target names must be unique")

    def __iter__(self):
        return iter(self.hosts)

    def __len__(self) -> int:
        return len(self.hosts)


class DeploymentStatus(str, Enum):
    """Per-target deployment status."""

    PENDING = "pending"
    RUNNING = "running"
    STAGE_FAILED = "stage_failed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        DeploymentStatus.FAILED,
        DeploymentStatus.SUCCEEDED,
        DeploymentStatus.CANCELLED,
        DeploymentStatus.SKIPPED,
    }
)

# Legal status graph. RUNNING -> RUNNING is a stage advance.
TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset(
        {
            DeploymentStatus.RUNNING,
            DeploymentStatus.FAILED,
            DeploymentStatus.SKIPPED,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.RUNNING: frozenset(
        {
            DeploymentStatus.RUNNING,
            DeploymentStatus.STAGE_FAILED,
            DeploymentStatus.ROLLING_BACK,
            DeploymentStatus.SUCCEEDED,
        }
    ),
    DeploymentStatus.STAGE_FAILED: frozenset({DeploymentStatus.ROLLING_BACK}),
    DeploymentStatus.ROLLING_BACK: frozenset(
        {DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
    ),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.SUCCEEDED: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
    DeploymentStatus.SKIPPED: frozenset(),
}


class StepStatus(str, Enum):
    """Step execution status."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class StageStatus(str, Enum):
    """Stage execution status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class StepAttempt:
    """One try of a step."""

    attempt: int
    ok: bool
    started_at: datetime
    duration: float
    message: str = ""
    error: str | None = None
    error_type: str | None = None
    transient: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "ok": self.ok,
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "message": self.message,
            "error": self.error,
            "error_type": self.error_type,
            "transient": self.transient,
        }


@dataclass
class StepRecord:
    """Outcome of a step within one target's run."""

    name: str
    status: StepStatus
    attempts: list[StepAttempt] = field(default_factory=list)
    rollback_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "rollback_error": self.rollback_error,
        }


@dataclass
class StageRecord:
    """Outcome and timing of a stage within one target's run."""

    name: str
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    steps: list[StepRecord] = field(default_factory=list)

    @property
    def duration(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class DeploymentEvent:
    """Status transition or notable occurrence for audit trail."""

    timestamp: datetime
    event_type: str
    message: str
    target: str = ""
    from_status: str | None = None
    to_status: str | None = None
    stage_index: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "message": self.message,
            "target": self.target,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "stage_index": self.stage_index,
            "details": self.details,
        }


@dataclass
class RollbackFailureRecord:
    stage: str
    step: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "step": self.step, "error": self.error}


@dataclass
class DeploymentState:
    """Progress of one target through one run.

    Owned by a single state machine. Status changes go through
    :meth:`transition`, which enforces the legal status graph.
    """

    run_id: str
    target: str
    address: str = ""
    status: DeploymentStatus = DeploymentStatus.PENDING
    stage_index: int = 0
    stages: list[StageRecord] = field(default_factory=list)
    rolled_back: bool = False
    failed_stage: str | None = None
    error: str | None = None
    error_type: str | None = None
    rollback_failures: list[RollbackFailureRecord] = field(default_factory=list)
    events: list[DeploymentEvent] = field(default_factory=list)
    history: list[tuple[DeploymentStatus, int]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def id(self) -> str:
        return f"{self.run_id}-{self.target}"

    def transition(
        self,
        new_status: DeploymentStatus,
        message: str = "",
        stage_index: int | None = None,
        **details: Any,
    ) -> DeploymentEvent:
        """Move to ``new_status`` and record the event.

        Raises:
            InvalidTransition: If the move is not in the status graph
        """
        if new_status not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Illegal transition {self.status.value} -> {new_status.value}",
                deployment_id=self.id,
            )

        previous = self.status
        self.status = new_status
        if stage_index is not None:
            self.stage_index = stage_index
        if new_status == DeploymentStatus.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        if new_status.is_terminal:
            self.completed_at = utcnow()

        self.history.append((new_status, self.stage_index))
        event = DeploymentEvent(
            timestamp=utcnow(),
            event_type="transition",
            message=message or f"{previous.value} -> {new_status.value}",
            target=self.target,
            from_status=previous.value,
            to_status=new_status.value,
            stage_index=self.stage_index,
            details=details,
        )
        self.events.append(event)
        return event

    def record_error(self, stage: str | None, error: BaseException) -> None:
        """Keep only the first underlying error."""
        if self.error is not None:
            return
        self.failed_stage = stage
        self.error = str(error)
        self.error_type = type(error).__name__

    @property
    def stages_passed(self) -> int:
        return sum(1 for s in self.stages if s.status == StageStatus.SUCCEEDED)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at:
            end = self.completed_at or utcnow()
            return (end - self.started_at).total_seconds()
        return None

    @property
    def is_complete(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "target": self.target,
            "address": self.address,
            "status": self.status.value,
            "stage_index": self.stage_index,
            "stages": [s.to_dict() for s in self.stages],
            "rolled_back": self.rolled_back,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "error_type": self.error_type,
            "rollback_failures": [r.to_dict() for r in self.rollback_failures],
            "events": [e.to_dict() for e in self.events],
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentState":
        """Rebuild a state summary from its persisted form.

        Step attempts and events are not restored; the result is meant for
        status display, not for resuming a run.
        """
        state = cls(
            run_id=data["run_id"],
            target=data["target"],
            address=data.get("address", ""),
            status=DeploymentStatus(data.get("status", "pending")),
            stage_index=data.get("stage_index", 0),
            rolled_back=data.get("rolled_back", False),
            failed_stage=data.get("failed_stage"),
            error=data.get("error"),
            error_type=data.get("error_type"),
        )
        for stage in data.get("stages", []):
            record = StageRecord(name=stage["name"], status=StageStatus(stage["status"]))
            if stage.get("started_at"):
                record.started_at = datetime.fromisoformat(stage["started_at"])
            if stage.get("completed_at"):
                record.completed_at = datetime.fromisoformat(stage["completed_at"])
            record.steps = [
                StepRecord(name=s["name"], status=StepStatus(s["status"]), rollback_error=s.get("rollback_error"))
                for s in stage.get("steps", [])
            ]
            state.stages.append(record)
        state.rollback_failures = [
            RollbackFailureRecord(**r) for r in data.get("rollback_failures", [])
        ]
        if data.get("created_at"):
            state.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("started_at"):
            state.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("completed_at"):
            state.completed_at = datetime.fromisoformat(data["completed_at"])
        return state
