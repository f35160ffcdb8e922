"""Run a release plan across a target set."""

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable

from deployctl.core.logging import StructuredLogger
from deployctl.deploy.machine import DeploymentStateMachine, EventCallback
from deployctl.deploy.models import (
    DeploymentState,
    DeploymentStatus,
    HostDescriptor,
    TargetSet,
    new_run_id,
    utcnow,
)
from deployctl.deploy.plan import ReleasePlan
from deployctl.deploy.report import DeploymentReport
from deployctl.executors import create_executor
from deployctl.executors.base import Executor

if TYPE_CHECKING:
    from deployctl.config import RunConfig
    from deployctl.deploy.runlog import RunLog
    from deployctl.deploy.state import StateStore

logger = StructuredLogger(__name__)

ExecutorFactory = Callable[[HostDescriptor], Executor]


class Orchestrator:
    """Coordinates per-target state machines under a concurrency limit.

    Targets are independent failure domains unless ``fail_fast`` is set, in
    which case a failure stops targets that have not started yet. Running
    targets are always allowed to reach a terminal state.
    """

    def __init__(
        self,
        run: "RunConfig",
        executor_factory: ExecutorFactory = create_executor,
        store: "StateStore | None" = None,
        run_log: "RunLog | None" = None,
        on_event: EventCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.run = run
        self._executor_factory = executor_factory
        self._store = store
        self._run_log = run_log
        self._on_event = on_event
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._failure_event = asyncio.Event()
        self._running = 0
        self.peak_concurrency = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop issuing new steps. Mid-run targets roll back and end cancelled."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested")
            self._cancel_event.set()

    async def deploy(
        self,
        target_set: TargetSet,
        plan: ReleasePlan,
        concurrency_limit: int | None = None,
        fail_fast: bool | None = None,
        run_timeout: float | None = None,
        run_id: str | None = None,
    ) -> DeploymentReport:
        """Deploy ``plan`` to every target and return the report.

        Args:
            target_set: Hosts to deploy to, in queue order
            plan: Release plan shared read-only by all targets
            concurrency_limit: Maximum targets in flight, defaults to run config
            fail_fast: Skip not-yet-started targets after a failure
            run_timeout: Cancel the run after this many seconds
            run_id: Run identifier, generated when omitted

        Returns:
            DeploymentReport once every target is terminal
        """
        limit = concurrency_limit if concurrency_limit is not None else self.run.concurrency
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if fail_fast is None:
            fail_fast = self.run.fail_fast
        if run_timeout is None:
            run_timeout = self.run.run_timeout
        if run_id is None:
            run_id = self._run_log.run_id if self._run_log else new_run_id()

        started_at = utcnow()
        semaphore = asyncio.Semaphore(limit)
        log = logger.bind(run_id=run_id)
        log.info(
            "Run started",
            targets=len(target_set),
            stages=len(plan),
            concurrency=limit,
            fail_fast=fail_fast,
        )
        if self._run_log:
            self._run_log.record_run(
                "started",
                project=plan.name,
                ref=self.run.get_branch(),
                targets=[h.name for h in target_set],
                stages=[s.name for s in plan.stages],
            )

        machines = [
            DeploymentStateMachine(
                host,
                plan,
                self._executor_factory(host),
                self.run,
                run_id,
                cancel_event=self._cancel_event,
                store=self._store,
                run_log=self._run_log,
                on_event=self._on_event,
                sleep=self._sleep,
            )
            for host in target_set
        ]
        tasks = [
            asyncio.create_task(self._run_target(machine, semaphore, fail_fast))
            for machine in machines
        ]

        if run_timeout:
            _, pending = await asyncio.wait(tasks, timeout=run_timeout)
            if pending:
                log.warning("Run timeout elapsed, cancelling", timeout=run_timeout)
                self.cancel()
        states: list[DeploymentState] = await asyncio.gather(*tasks)

        report = DeploymentReport.from_states(
            run_id,
            plan.name,
            self.run.get_branch(),
            states,
            started_at=started_at,
            cancelled=self.cancelled,
        )
        log.info("Run finished", **report.counts)
        if self._run_log:
            self._run_log.record_run("finished", counts=report.counts, exit_code=report.exit_code)
        return report

    async def _run_target(
        self,
        machine: DeploymentStateMachine,
        semaphore: asyncio.Semaphore,
        fail_fast: bool,
    ) -> DeploymentState:
        async with semaphore:
            if fail_fast and self._failure_event.is_set():
                await machine.executor.close()
                return machine.skip()

            self._running += 1
            self.peak_concurrency = max(self.peak_concurrency, self._running)
            try:
                state = await machine.run()
            except Exception as e:
                logger.exception("Target raised outside its steps", target=machine.host.name)
                state = await machine.abort(e)
            finally:
                self._running -= 1
                await machine.executor.close()
            if state.status == DeploymentStatus.FAILED:
                self._failure_event.set()
        return state
