"""Per-target deployment state machine."""

import asyncio
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from deployctl.core.async_utils import run_with_timeout
from deployctl.core.exceptions import (
    DeployCtlError,
    DeploymentCancelled,
    DeploymentError,
    RollbackFailure,
    UnreachableHost,
    is_transient,
)
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import (
    DeploymentEvent,
    DeploymentState,
    DeploymentStatus,
    HostDescriptor,
    RollbackFailureRecord,
    StageRecord,
    StageStatus,
    StepAttempt,
    StepRecord,
    StepStatus,
    utcnow,
)
from deployctl.deploy.plan import ReleasePlan, Stage, Step, StepContext
from deployctl.executors.base import Executor

if TYPE_CHECKING:
    from deployctl.config import RunConfig
    from deployctl.deploy.runlog import RunLog
    from deployctl.deploy.state import StateStore

logger = StructuredLogger(__name__)

EventCallback = Callable[[DeploymentState, DeploymentEvent], None]


class DeploymentStateMachine:
    """Drive one target through a release plan.

    The state is owned exclusively by this instance. Stages run strictly in
    order; a failing stage rolls back every completed step of the run in
    reverse order, and rollback failures are recorded but never rolled back
    themselves.
    """

    def __init__(
        self,
        host: HostDescriptor,
        plan: ReleasePlan,
        executor: Executor,
        run: "RunConfig",
        run_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        store: "StateStore | None" = None,
        run_log: "RunLog | None" = None,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.host = host
        self.plan = plan
        self.executor = executor
        self.run_id = run_id
        self.context = StepContext(host=host, executor=executor, run=run, run_id=run_id)
        self.state = DeploymentState(
            run_id=run_id,
            target=host.name,
            address=host.address,
            stages=[StageRecord(name=stage.name) for stage in plan.stages],
        )
        self._cancel_event = cancel_event or asyncio.Event()
        self._store = store
        self._run_log = run_log
        self._on_event = on_event
        self._sleep = sleep
        self._completed: list[tuple[Stage, Step, StepRecord]] = []
        self._log = logger.bind(target=host.name)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _transition(self, status: DeploymentStatus, message: str = "", stage_index: int | None = None) -> None:
        event = self.state.transition(status, message, stage_index=stage_index)
        self._log.debug("Status changed", status=status.value, stage=self.state.stage_index)
        if self._store:
            self._store.save(self.state)
        if self._run_log:
            self._run_log.record_event(self.state, event)
        if self._on_event:
            self._on_event(self.state, event)

    def skip(self, reason: str = "skipped after another target failed") -> DeploymentState:
        """Mark a never-started target as skipped."""
        self._transition(DeploymentStatus.SKIPPED, reason)
        return self.state

    async def run(self) -> DeploymentState:
        """Execute the plan and return the terminal state."""
        if self.cancelled:
            self.state.record_error(None, DeploymentCancelled("Run cancelled before start"))
            self._transition(DeploymentStatus.CANCELLED, "cancelled before start")
            return self.state

        try:
            reachable = await self.executor.ping()
        except Exception as e:
            self._log.warning("Connectivity probe raised", error=str(e))
            reachable = False

        if not reachable:
            error = UnreachableHost(
                f"Cannot reach {self.host.ssh_target}:{self.host.port}",
                host=self.host.address,
            )
            self.state.record_error(None, error)
            self._transition(DeploymentStatus.FAILED, str(error))
            self._log.error("Target unreachable")
            return self.state

        self._transition(DeploymentStatus.RUNNING, "connectivity probe passed", stage_index=0)
        self._log.info("Deployment started", run_id=self.run_id)

        for index, stage in enumerate(self.plan.stages):
            if index > 0:
                self._transition(
                    DeploymentStatus.RUNNING, f"advancing to {stage.name}", stage_index=index
                )
            if self.cancelled:
                return await self._abort_cancelled(stage)

            record = self.state.stages[index]
            record.status = StageStatus.RUNNING
            record.started_at = utcnow()
            self._log.info("Stage started", stage=stage.name, index=index)

            for step in stage.steps:
                if self.cancelled:
                    record.status = StageStatus.FAILED
                    record.completed_at = utcnow()
                    return await self._abort_cancelled(stage)

                step_record, error = await self._run_step(stage, step)
                record.steps.append(step_record)

                if error is not None:
                    record.status = StageStatus.FAILED
                    record.completed_at = utcnow()
                    if isinstance(error, DeploymentCancelled) or self.cancelled:
                        return await self._abort_cancelled(stage)
                    return await self._fail(stage, step, error)

                self._completed.append((stage, step, step_record))

            record.status = StageStatus.SUCCEEDED
            record.completed_at = utcnow()
            self._log.info("Stage succeeded", stage=stage.name)

        self._transition(DeploymentStatus.SUCCEEDED, "all stages passed")
        self._log.info("Deployment succeeded", stages=len(self.plan))
        return self.state

    async def _run_step(self, stage: Stage, step: Step) -> tuple[StepRecord, BaseException | None]:
        """Run one step with its retry policy.

        Only transient transport errors are retried. A failed outcome or any
        other error ends the step immediately.
        """
        record = StepRecord(name=step.name, status=StepStatus.FAILED)
        policy = step.retry
        log = self._log.bind(stage=stage.name, step=step.name)
        error: BaseException | None = None

        for attempt in range(1, policy.max_attempts + 1):
            started_at = utcnow()
            start = time.monotonic()
            error = None
            message = ""
            try:
                outcome = await run_with_timeout(
                    step.action(self.context),
                    policy.attempt_timeout,
                    f"Step {step.name} timed out after {policy.attempt_timeout}s",
                )
                message = outcome.message
                if not outcome.ok:
                    error = DeploymentError(
                        outcome.message or f"Step {step.name} failed",
                        deployment_id=self.state.id,
                        details={"exit_code": outcome.result.exit_code} if outcome.result else None,
                    )
            except Exception as e:
                if not isinstance(e, DeployCtlError):
                    log.exception("Unexpected error in step", attempt=attempt)
                error = e

            attempt_record = StepAttempt(
                attempt=attempt,
                ok=error is None,
                started_at=started_at,
                duration=time.monotonic() - start,
                message=message,
                error=str(error) if error else None,
                error_type=type(error).__name__ if error else None,
                transient=error is not None and is_transient(error),
            )
            record.attempts.append(attempt_record)
            if self._run_log:
                self._run_log.record_attempt(self.state, stage.name, step.name, attempt_record)

            if error is None:
                record.status = StepStatus.SUCCEEDED
                log.info("Step succeeded", attempt=attempt, detail=message)
                return record, None

            if not is_transient(error) or attempt == policy.max_attempts:
                log.error("Step failed", attempt=attempt, error=str(error))
                return record, error

            delay = policy.delay_for(attempt)
            log.warning("Transient error, retrying", attempt=attempt, delay=f"{delay:.1f}s", error=str(error))
            if await self._wait_or_cancel(delay):
                log.warning("Cancelled while waiting to retry", error=str(error))
                return record, DeploymentCancelled(f"Run cancelled while retrying {step.name}")

        return record, error

    async def _wait_or_cancel(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; return True if cancelled meanwhile."""
        if self._sleep is not None:
            await self._sleep(delay)
            return self.cancelled
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _fail(self, stage: Stage, step: Step, error: BaseException) -> DeploymentState:
        self.state.record_error(stage.name, error)
        self._transition(
            DeploymentStatus.STAGE_FAILED, f"{stage.name}/{step.name}: {error}"
        )
        self._transition(DeploymentStatus.ROLLING_BACK, f"rolling back after {stage.name} failure")
        await self._rollback()
        self._transition(DeploymentStatus.FAILED, f"failed in {stage.name}")
        return self.state

    async def _abort_cancelled(self, stage: Stage) -> DeploymentState:
        self.state.record_error(stage.name, DeploymentCancelled("Run cancelled"))
        self._transition(DeploymentStatus.ROLLING_BACK, "rolling back after cancellation")
        await self._rollback()
        self._transition(DeploymentStatus.CANCELLED, f"cancelled during {stage.name}")
        self._log.warning("Deployment cancelled", stage=stage.name)
        return self.state

    async def abort(self, error: BaseException) -> DeploymentState:
        """End a target whose run raised outside any step as failed.

        The store and run log are bypassed for the remaining transitions,
        since either may be what raised.
        """
        if self.state.status.is_terminal:
            return self.state

        stage = None
        if self.state.status != DeploymentStatus.PENDING:
            stage = self.plan.stages[self.state.stage_index].name
        self.state.record_error(stage, error)
        self._store = None
        self._run_log = None

        if self.state.status == DeploymentStatus.RUNNING:
            self.state.transition(DeploymentStatus.STAGE_FAILED, f"aborted: {error}")
        if self.state.status == DeploymentStatus.STAGE_FAILED:
            self.state.transition(DeploymentStatus.ROLLING_BACK, "rolling back after abort")
        if self.state.status == DeploymentStatus.ROLLING_BACK:
            await self._rollback()
        self.state.transition(DeploymentStatus.FAILED, f"aborted: {error}")
        self._log.error("Deployment aborted", error=str(error))
        return self.state

    async def _rollback(self) -> None:
        """Undo completed steps, newest first. Failures are recorded only."""
        for stage, step, record in reversed(self._completed):
            if step.rollback is None:
                continue

            log = self._log.bind(stage=stage.name, step=step.name)
            start = time.monotonic()
            started_at = utcnow()
            error: BaseException | None = None
            try:
                outcome = await run_with_timeout(
                    step.rollback(self.context),
                    step.retry.attempt_timeout,
                    f"Rollback of {step.name} timed out",
                )
                if not outcome.ok:
                    error = RollbackFailure(outcome.message, stage=stage.name, step=step.name)
            except Exception as e:
                error = RollbackFailure(str(e), stage=stage.name, step=step.name)

            if self._run_log:
                self._run_log.record_rollback(
                    self.state,
                    stage.name,
                    step.name,
                    StepAttempt(
                        attempt=1,
                        ok=error is None,
                        started_at=started_at,
                        duration=time.monotonic() - start,
                        error=str(error) if error else None,
                        error_type=type(error).__name__ if error else None,
                    ),
                )

            if error is None:
                record.status = StepStatus.ROLLED_BACK
                log.info("Rolled back")
            else:
                record.status = StepStatus.ROLLBACK_FAILED
                record.rollback_error = str(error)
                self.state.rollback_failures.append(
                    RollbackFailureRecord(stage=stage.name, step=step.name, error=str(error))
                )
                log.error("Rollback failed", error=str(error))

        self._completed.clear()
        self.state.rolled_back = True
