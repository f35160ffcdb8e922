"""Release plan: stages made of idempotent, retryable steps."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from deployctl.deploy.models import HostDescriptor
from deployctl.executors.base import CommandResult, Executor

if TYPE_CHECKING:
    from deployctl.config import RunConfig


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a step is retried on transient errors."""

    max_attempts: int = 3
    backoff: float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    attempt_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed ``attempt`` (1-based)."""
        delay = self.backoff * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)

    @classmethod
    def once(cls) -> "RetryPolicy":
        return cls(max_attempts=1, backoff=0.0)


@dataclass
class StepOutcome:
    """What a step action or rollback returns."""

    ok: bool
    message: str = ""
    result: CommandResult | None = None

    @classmethod
    def success(cls, message: str = "", result: CommandResult | None = None) -> "StepOutcome":
        return cls(ok=True, message=message, result=result)

    @classmethod
    def failure(cls, message: str, result: CommandResult | None = None) -> "StepOutcome":
        return cls(ok=False, message=message, result=result)


@dataclass
class StepContext:
    """Per-target view handed to step actions.

    ``facts`` is private to one target and lets later steps read what
    earlier ones discovered (for example the selected runtime mode).
    """

    host: HostDescriptor
    executor: Executor
    run: "RunConfig"
    run_id: str = ""
    facts: dict[str, Any] = field(default_factory=dict)

    @property
    def project(self) -> str:
        return self.run.project_name


StepAction = Callable[[StepContext], Awaitable[StepOutcome]]


@dataclass(frozen=True)
class Step:
    """Smallest retryable unit of work."""

    name: str
    action: StepAction
    rollback: StepAction | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    description: str = ""


@dataclass(frozen=True)
class Stage:
    """Named phase; all steps must succeed for the stage to succeed."""

    name: str
    steps: tuple[Step, ...]
    description: str = ""

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"stage '{self.name}' has no steps")
        names = [s.name for s in self.steps]
        if len(names) != len(set(names)):
            raise ValueError(f"stage '{self.name}' has duplicate step names")


@dataclass(frozen=True)
class ReleasePlan:
    """Ordered stages defining what deploying means. Shared read-only."""

    stages: tuple[Stage, ...]
    name: str = "release"

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("release plan has no stages")
        names = [s.name for s in self.stages]
        if len(names) != len(set(names)):
            raise ValueError("release plan has duplicate stage names")

    def __len__(self) -> int:
        return len(self.stages)

    def describe(self) -> list[dict[str, Any]]:
        """Flat stage/step listing for display."""
        rows = []
        for i, stage in enumerate(self.stages, start=1):
            for step in stage.steps:
                rows.append(
                    {
                        "stage": f"{i}. {stage.name}",
                        "step": step.name,
                        "attempts": step.retry.max_attempts,
                        "rollback": "yes" if step.rollback else "-",
                        "description": step.description,
                    }
                )
        return rows
