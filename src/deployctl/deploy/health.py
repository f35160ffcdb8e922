"""Health gate: poll a public endpoint until it reports ready."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable

import httpx

from deployctl.core.logging import StructuredLogger

logger = StructuredLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    TIMEOUT = "timeout"


@dataclass
class HealthResult:
    """Outcome of :meth:`HealthGate.await_healthy`."""

    status: HealthStatus
    endpoint: str
    polls: int
    elapsed: float
    last_status: int | None = None
    last_error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


class HealthGate:
    """Fixed-interval poller.

    Only elapsed time decides the timeout; ``max_polls`` is an optional
    extra cap. A poll is never started after the deadline. Any status
    outside ``success_statuses`` and any transport error count as a failed
    poll.
    """

    def __init__(
        self,
        success_statuses: Iterable[int] = (200,),
        request_timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.success_statuses = frozenset(success_statuses)
        self.request_timeout = request_timeout
        self._client = client
        self._clock = clock
        self._sleep = sleep

    async def await_healthy(
        self,
        endpoint: str,
        interval: float,
        timeout: float,
        max_polls: int | None = None,
    ) -> HealthResult:
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")

        log = logger.bind(endpoint=endpoint)
        own_client = self._client is None
        client = self._client or httpx.AsyncClient(
            timeout=self.request_timeout, follow_redirects=True
        )

        start = self._clock()
        deadline = start + timeout
        polls = 0
        last_status: int | None = None
        last_error: str | None = None

        try:
            while True:
                polls += 1
                try:
                    response = await client.get(endpoint)
                    last_status = response.status_code
                    last_error = None
                except httpx.HTTPError as e:
                    last_status = None
                    last_error = f"{type(e).__name__}: {e}"

                elapsed = self._clock() - start
                if last_status in self.success_statuses:
                    log.info("Endpoint healthy", polls=polls, elapsed=f"{elapsed:.1f}s")
                    return HealthResult(
                        HealthStatus.HEALTHY, endpoint, polls, elapsed, last_status
                    )

                log.debug("Health poll failed", poll=polls, status=last_status, error=last_error)

                if max_polls is not None and polls >= max_polls:
                    break
                if self._clock() + interval > deadline:
                    break
                await self._sleep(interval)
        finally:
            if own_client:
                await client.aclose()

        elapsed = self._clock() - start
        log.warning("Health gate timed out", polls=polls, elapsed=f"{elapsed:.1f}s")
        return HealthResult(
            HealthStatus.TIMEOUT, endpoint, polls, elapsed, last_status, last_error
        )
