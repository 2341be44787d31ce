"""Periodic driver for reconciliation passes.

Runs a background asyncio task that asks the service for a pass every
``interval_seconds``.  A firing while a pass is in flight is a no-op.  An
authentication failure pauses the timer until an on-demand :meth:`trigger`
succeeds; transient failures are logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime

from pydantic import BaseModel

from tradesync.core.enums import SchedulerState
from tradesync.core.ids import IClock, WallClock
from tradesync.core.models import PassSummary

from .service import ReconciliationService

logger = logging.getLogger(__name__)


class SchedulerStatus(BaseModel):
    """Snapshot for a sync indicator."""

    state: SchedulerState
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    passes: int = 0


class ReconciliationScheduler:
    """Background loop around :meth:`ReconciliationService.run_reconciliation_pass`.

    Parameters
    ----------
    service:
        The reconciliation service to drive.
    interval_seconds:
        Seconds between timer-driven passes.
    pass_timeout_seconds:
        Upper bound for one whole pass.
    """

    def __init__(
        self,
        service: ReconciliationService,
        *,
        interval_seconds: float = 60.0,
        pass_timeout_seconds: float = 30.0,
        clock: IClock | None = None,
    ) -> None:
        self._service = service
        self._interval = interval_seconds
        self._timeout = pass_timeout_seconds
        self._clock = clock or WallClock()
        self._task: asyncio.Task | None = None
        self._running = False
        self._state = SchedulerState.IDLE
        self._passes = 0
        self._consecutive_failures = 0
        self._last_run_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> SchedulerState:
        return self._state

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self._state,
            last_run_at=self._last_run_at,
            last_success_at=self._last_success_at,
            last_error=self._last_error,
            consecutive_failures=self._consecutive_failures,
            passes=self._passes,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background loop.  The first pass runs immediately."""
        if self._running:
            logger.warning("Scheduler is already running")
            return
        self._running = True
        self._state = SchedulerState.RUNNING
        self._task = asyncio.create_task(self._loop(), name="tradesync-scheduler")
        logger.info(
            "Scheduler started (interval=%ss, pass timeout=%ss)",
            self._interval, self._timeout,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        logger.info("Scheduler stopped after %d pass(es)", self._passes)

    async def wait(self) -> None:
        """Block until the background loop ends."""
        if self._task is not None:
            await self._task

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def trigger(self) -> PassSummary | None:
        """Run one pass now.

        Returns ``None`` when a pass is already in flight.  A successful
        pass clears an authentication pause.
        """
        return await self._run_once(manual=True)

    async def _loop(self) -> None:
        while self._running:
            if self._state == SchedulerState.AUTH_FAILED:
                logger.debug("Timer pass skipped: waiting for credentials to be fixed")
            else:
                await self._run_once(manual=False)
            await asyncio.sleep(self._interval)

    async def _run_once(self, *, manual: bool) -> PassSummary | None:
        if self._service.is_running:
            logger.info("Pass already in flight, %s firing ignored",
                        "manual" if manual else "timer")
            return None

        self._last_run_at = self._clock.now()
        try:
            summary = await asyncio.wait_for(
                self._service.run_reconciliation_pass(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            self._record_failure(f"Pass timed out after {self._timeout}s")
            return None
        except Exception as exc:
            logger.exception("Reconciliation pass failed")
            self._record_failure(str(exc))
            return None

        if summary is None:
            return None
        self._passes += 1

        if summary.auth_failed:
            self._record_failure("; ".join(summary.exchange_errors.values()) or
                                 "authentication failed")
            self._state = SchedulerState.AUTH_FAILED
            logger.error("Authentication failed, timer passes paused until a manual sync")
            return summary

        if summary.exchange_errors:
            self._record_failure("; ".join(summary.exchange_errors.values()))
        else:
            self._consecutive_failures = 0
            self._last_error = None
            self._last_success_at = self._clock.now()
        if self._running:
            self._state = SchedulerState.RUNNING
        elif self._state == SchedulerState.AUTH_FAILED:
            self._state = SchedulerState.IDLE
        return summary

    def _record_failure(self, message: str) -> None:
        self._consecutive_failures += 1
        self._last_error = message
        logger.warning(
            "Pass failed (%d in a row): %s", self._consecutive_failures, message
        )
