"""Health verification for newly started containers.

HealthProbe polls an HTTP health endpoint until it answers with a 2xx status or
an overall deadline passes. Each request carries its own short timeout so a
single hung request cannot use up the whole budget, and the wait between
attempts is an asyncio sleep, so other deployments keep running.

The final outcome separates two kinds of failure:
- UNHEALTHY: at least one request got an HTTP response, but never a 2xx
- UNREACHABLE: every request failed at the transport level (refused, timed out)

Example usage:
    >>> from hotswap.config import HealthConfig
    >>> from hotswap.pipeline.health import HealthProbe
    >>>
    >>> probe = HealthProbe(HealthConfig(interval_seconds=1.0))
    >>> outcome = await probe.probe("http://localhost:8080/health", timeout_seconds=30.0)
    >>> if outcome.healthy:
    ...     print(f"Healthy after {len(outcome.attempts)} attempts")
    >>> await probe.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable
from datetime import datetime, timezone
from enum import Enum

import httpx
from pydantic import BaseModel, Field

from hotswap.config import HealthConfig
from hotswap.logging import get_logger


class ProbeStatus(str, Enum):
    """Outcome classification of a probe or a whole health check.

    Attributes:
        HEALTHY: Endpoint answered with a 2xx status
        UNHEALTHY: Endpoint answered, but with a non-2xx status
        UNREACHABLE: No HTTP response (connection refused, timeout, DNS failure)
    """

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"


class ProbeResult(BaseModel):
    """Result of one probe attempt.

    Attributes:
        status: Probe classification
        url: Probed URL
        attempt: 1-based attempt index within the health check
        checked_at: Timestamp of the attempt
        response_code: HTTP status code (None without a response)
        response_time_seconds: Request duration
        error: Error description for non-healthy probes
    """

    status: ProbeStatus = Field(description="Probe status")
    url: str = Field(description="Probed URL")
    attempt: int = Field(default=1, ge=1, description="Attempt index")
    checked_at: datetime = Field(description="Probe timestamp")
    response_code: int | None = Field(default=None, description="HTTP status code")
    response_time_seconds: float | None = Field(default=None, description="Response time")
    error: str | None = Field(default=None, description="Error message")


class HealthOutcome(BaseModel):
    """Final result of polling a health endpoint.

    Attributes:
        status: HEALTHY, UNHEALTHY or UNREACHABLE
        url: Probed URL
        attempts: Every probe made, in order
        elapsed_seconds: Time spent polling
        cancelled: Polling was interrupted by the caller
        last_error: Error of the last failed probe
    """

    status: ProbeStatus = Field(description="Overall status")
    url: str = Field(description="Probed URL")
    attempts: list[ProbeResult] = Field(default_factory=list, description="Probe attempts")
    elapsed_seconds: float = Field(default=0.0, ge=0.0, description="Polling duration")
    cancelled: bool = Field(default=False, description="Interrupted by caller")
    last_error: str | None = Field(default=None, description="Last probe error")

    @property
    def healthy(self) -> bool:
        return self.status == ProbeStatus.HEALTHY

    def describe(self) -> str:
        """One-line human readable summary."""
        if self.healthy:
            return f"{self.url} healthy after {len(self.attempts)} attempt(s)"
        prefix = "cancelled" if self.cancelled else f"{self.status.value} after {self.elapsed_seconds:.1f}s"
        detail = f": {self.last_error}" if self.last_error else ""
        return f"{self.url} {prefix} ({len(self.attempts)} attempt(s)){detail}"


class HealthProbe:
    """HTTP health endpoint poller with an overall deadline.

    Attributes:
        config: Health policy (request timeout, interval, grace period)
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: HealthConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HealthProbe.

        Args:
            config: Health check policy
            transport: Custom httpx transport (used by tests to serve canned responses)
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._transport = transport
        self._session: httpx.AsyncClient | None = None

    async def _get_session(self) -> httpx.AsyncClient:
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(transport=self._transport)
        return self._session

    async def check_once(
        self, url: str, attempt: int = 1, request_timeout: float | None = None
    ) -> ProbeResult:
        """Perform a single probe.

        Args:
            url: Health endpoint URL
            attempt: Attempt index recorded on the result
            request_timeout: Override of the per-request timeout

        Returns:
            ProbeResult classifying the response
        """
        timeout = request_timeout or self.config.request_timeout_seconds
        start_time = time.monotonic()
        checked_at = datetime.now(timezone.utc)

        try:
            session = await self._get_session()
            # wait_for bounds transports that do not enforce httpx timeouts
            response = await asyncio.wait_for(session.get(url, timeout=timeout), timeout=timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            self.logger.debug("probe_timeout", url=url, attempt=attempt, timeout=timeout)
            return ProbeResult(
                status=ProbeStatus.UNREACHABLE,
                url=url,
                attempt=attempt,
                checked_at=checked_at,
                response_time_seconds=time.monotonic() - start_time,
                error=f"Request timed out after {timeout}s",
            )
        except httpx.RequestError as e:
            self.logger.debug(
                "probe_connection_error",
                url=url,
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProbeResult(
                status=ProbeStatus.UNREACHABLE,
                url=url,
                attempt=attempt,
                checked_at=checked_at,
                response_time_seconds=time.monotonic() - start_time,
                error=f"Connection error: {e}",
            )

        response_time = time.monotonic() - start_time
        if response.is_success:
            return ProbeResult(
                status=ProbeStatus.HEALTHY,
                url=url,
                attempt=attempt,
                checked_at=checked_at,
                response_code=response.status_code,
                response_time_seconds=response_time,
            )

        self.logger.debug("probe_bad_status", url=url, attempt=attempt, status_code=response.status_code)
        return ProbeResult(
            status=ProbeStatus.UNHEALTHY,
            url=url,
            attempt=attempt,
            checked_at=checked_at,
            response_code=response.status_code,
            response_time_seconds=response_time,
            error=f"Unexpected status code: {response.status_code}",
        )

    async def probe(
        self,
        url: str,
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
        cancel: asyncio.Event | None = None,
        request_timeout_seconds: float | None = None,
        initial_delay_seconds: float | None = None,
    ) -> HealthOutcome:
        """Poll until the endpoint is healthy, the deadline passes, or cancel is set.

        The initial delay is a grace period for the service to boot; the
        deadline starts counting after it.

        Args:
            url: Health endpoint URL
            timeout_seconds: Overall deadline (defaults to config.timeout_seconds)
            interval_seconds: Pause between attempts (defaults to config.interval_seconds)
            cancel: Event that stops polling immediately when set
            request_timeout_seconds: Per-request timeout override
            initial_delay_seconds: Grace period override

        Returns:
            HealthOutcome; HEALTHY on the first 2xx response
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.config.timeout_seconds
        interval = interval_seconds if interval_seconds is not None else self.config.interval_seconds
        per_request = request_timeout_seconds or self.config.request_timeout_seconds
        delay = (
            initial_delay_seconds
            if initial_delay_seconds is not None
            else self.config.initial_delay_seconds
        )
        cancel = cancel or asyncio.Event()
        attempts: list[ProbeResult] = []

        self.logger.info(
            "health_probe_started",
            url=url,
            timeout_seconds=timeout,
            interval_seconds=interval,
            initial_delay_seconds=delay,
        )

        cancelled = False
        if delay > 0:
            cancelled = await self._sleep_or_cancel(delay, cancel)

        start_time = time.monotonic()

        def remaining() -> float:
            return timeout - (time.monotonic() - start_time)

        while not cancelled:
            budget = remaining()
            if budget <= 0:
                break
            if cancel.is_set():
                cancelled = True
                break

            request_timeout = min(per_request, budget)
            result = await self._race_cancel(
                self.check_once(url, attempt=len(attempts) + 1, request_timeout=request_timeout),
                cancel,
            )
            if result is None:
                cancelled = True
                break

            attempts.append(result)
            if result.status == ProbeStatus.HEALTHY:
                elapsed = time.monotonic() - start_time
                self.logger.info(
                    "health_probe_succeeded",
                    url=url,
                    attempts=len(attempts),
                    elapsed_seconds=round(elapsed, 2),
                )
                return HealthOutcome(
                    status=ProbeStatus.HEALTHY,
                    url=url,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                )

            wait_time = min(interval, remaining())
            if wait_time <= 0:
                break
            cancelled = await self._sleep_or_cancel(wait_time, cancel)

        return self._failed_outcome(url, attempts, time.monotonic() - start_time, cancelled)

    def _failed_outcome(
        self, url: str, attempts: list[ProbeResult], elapsed: float, cancelled: bool
    ) -> HealthOutcome:
        # Any HTTP answer at all means the service is up but not healthy
        answered = any(a.status == ProbeStatus.UNHEALTHY for a in attempts)
        status = ProbeStatus.UNHEALTHY if answered else ProbeStatus.UNREACHABLE
        last_error = attempts[-1].error if attempts else None

        self.logger.warning(
            "health_probe_cancelled" if cancelled else "health_probe_deadline_exceeded",
            url=url,
            status=status.value,
            attempts=len(attempts),
            elapsed_seconds=round(elapsed, 2),
            last_error=last_error,
        )
        return HealthOutcome(
            status=status,
            url=url,
            attempts=attempts,
            elapsed_seconds=elapsed,
            cancelled=cancelled,
            last_error=last_error,
        )

    @staticmethod
    async def _sleep_or_cancel(seconds: float, cancel: asyncio.Event) -> bool:
        """Sleep for ``seconds``; return True if cancel was set meanwhile."""
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    async def _race_cancel(
        operation: Awaitable[ProbeResult], cancel: asyncio.Event
    ) -> ProbeResult | None:
        """Run a probe, abandoning it if cancel is set first."""
        probe_task = asyncio.ensure_future(operation)
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {probe_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (probe_task, cancel_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if probe_task in done:
            return probe_task.result()
        return None

    async def close(self) -> None:
        """Close the httpx client session. Safe to call multiple times."""
        if self._session is not None and not self._session.is_closed:
            await self._session.aclose()
        self._session = None
