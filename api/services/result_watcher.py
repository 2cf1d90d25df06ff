"""
Waiting for a job to finish.

Two interchangeable strategies resolve a job id to its completed
``AnalysisRecord``:

- ``ResultPoller`` reads the job store on a ``PollSchedule``. A missing row
  means "still processing" and never ends the loop early.
- ``RealtimeWatcher`` subscribes to the change feed for the job, after an
  initial read that catches jobs which finished before the subscription.

Both raise ``PollingTimeout`` when the budget runs out (the message says
whether the row ever appeared), ``WatcherDatabaseError`` on store errors and
``AnalysisFailed`` when the job reached a failed status.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from api.services.job_store import AnalysisRecord, JobRecordStore
from core.change_feed import ChangeFeed, Subscription
from core.exceptions import (
    AnalysisError,
    AnalysisFailed,
    JobNotFound,
    PollingTimeout,
    WatcherDatabaseError,
)
from core.polling import AsyncioSleeper, PollSchedule, Sleeper
from database.models.analyses import JobStatus

logger = logging.getLogger(__name__)

ResultCallback = Callable[[AnalysisRecord], Any]
ErrorCallback = Callable[[AnalysisError], Any]

FAILED_STATUSES = (JobStatus.FAILED.value, JobStatus.ERROR.value)


def failure_from_record(record: AnalysisRecord) -> AnalysisFailed:
    payload = record.error or {}
    return AnalysisFailed(
        payload.get("message") or f"Analysis {record.id} {record.status}",
        error_payload=payload,
    )


class OnceLatch:
    """Lets exactly one caller through."""

    def __init__(self):
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self) -> bool:
        if self._fired:
            return False
        self._fired = True
        return True


class WatchHandle:
    """Running watch; ``stop()`` when the consuming view goes away."""

    def __init__(self, task: "asyncio.Task[None]", latch: OnceLatch):
        self._task = task
        self._latch = latch

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def delivered(self) -> bool:
        return self._latch.fired

    def stop(self) -> None:
        """Stop watching. The remote run itself is not cancelled."""
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class ResultWatcher:
    """Common contract of the polling and subscribe strategies."""

    def __init__(self, store: JobRecordStore):
        self.store = store

    async def wait_for_result(self, job_id: str, user_id: Optional[str] = None) -> AnalysisRecord:
        """
        Resolve ``job_id`` to its completed record.

        With ``user_id`` the record must belong to that user, otherwise
        ``JobNotFound`` is raised.
        """
        record = await self._wait(job_id)
        if user_id is not None and record.user_id != user_id:
            raise JobNotFound(f"Analysis {job_id} not found")
        return record

    async def _wait(self, job_id: str) -> AnalysisRecord:
        raise NotImplementedError

    def watch(
        self,
        job_id: str,
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> WatchHandle:
        """Wait in a background task and deliver the outcome to one callback, once."""
        latch = OnceLatch()

        async def deliver(callback: Optional[Callable[[Any], Any]], value: Any) -> None:
            if callback is None or not latch.fire():
                return
            outcome = callback(value)
            if inspect.isawaitable(outcome):
                await outcome

        async def run() -> None:
            try:
                record = await self.wait_for_result(job_id)
            except AnalysisError as exc:
                logger.info(f"Watch for {job_id} ended with {exc.code}")
                await deliver(on_error, exc)
            else:
                await deliver(on_result, record)

        return WatchHandle(asyncio.create_task(run()), latch)

    async def _timeout_error(self, job_id: str, waited: str, row_seen: bool = False) -> PollingTimeout:
        """Final diagnostic read: did the row never appear, or never become ready?"""
        final = await self.store.get_analysis_by_id(job_id)
        if not final.success and not final.not_found:
            raise WatcherDatabaseError(f"Database error while waiting for {job_id}: {final.error}")

        if final.success:
            return PollingTimeout(
                f"Analysis {job_id} exists (status: {final.data.status}) but was not ready after {waited}",
                row_seen=True,
                details={"status": final.data.status},
            )
        if row_seen:
            return PollingTimeout(
                f"Analysis {job_id} disappeared while waiting ({waited})",
                row_seen=True,
            )
        return PollingTimeout(
            f"Analysis {job_id} never appeared after {waited}",
            row_seen=False,
        )


class ResultPoller(ResultWatcher):
    """Pull strategy: read the row on a schedule until it is ready."""

    def __init__(
        self,
        store: JobRecordStore,
        schedule: PollSchedule,
        sleeper: Optional[Sleeper] = None,
    ):
        super().__init__(store)
        self.schedule = schedule
        self.sleeper = sleeper or AsyncioSleeper()

    async def _wait(self, job_id: str) -> AnalysisRecord:
        max_attempts = self.schedule.max_attempts
        row_seen = False

        for attempt in range(1, max_attempts + 1):
            result = await self.store.get_analysis_by_id(job_id)

            if result.success:
                row_seen = True
                record = result.data
                if record.status in FAILED_STATUSES:
                    raise failure_from_record(record)
                if record.is_ready:
                    logger.info(f"Analysis {job_id} ready after {attempt} poll(s)")
                    return record
            elif not result.not_found:
                raise WatcherDatabaseError(f"Database error while polling {job_id}: {result.error}")

            logger.debug(f"Analysis {job_id} not ready (attempt {attempt}/{max_attempts})")
            if attempt < max_attempts:
                await self.sleeper.sleep(self.schedule.delay_after(attempt))

        final = await self.store.get_ready_analysis(job_id)
        if final.success:
            return final.data
        raise await self._timeout_error(job_id, f"{max_attempts} attempts", row_seen=row_seen)


class RealtimeWatcher(ResultWatcher):
    """Push strategy: resolve on the change event that completes the job."""

    def __init__(self, store: JobRecordStore, feed: ChangeFeed, timeout: float = 90.0):
        super().__init__(store)
        self.feed = feed
        self.timeout = timeout

    async def _wait(self, job_id: str) -> AnalysisRecord:
        subscription = await self.feed.subscribe(job_id)
        try:
            initial = await self.store.get_analysis_by_id(job_id)
            if initial.success:
                if initial.data.status in FAILED_STATUSES:
                    raise failure_from_record(initial.data)
                if initial.data.is_ready:
                    return initial.data
            elif not initial.not_found:
                raise WatcherDatabaseError(f"Database error while watching {job_id}: {initial.error}")

            try:
                return await asyncio.wait_for(
                    self._next_terminal(job_id, subscription), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                raise await self._timeout_error(
                    job_id, f"{self.timeout:g}s", row_seen=initial.success
                ) from None
        finally:
            await subscription.close()

    async def _next_terminal(self, job_id: str, subscription: Subscription) -> AnalysisRecord:
        while True:
            event = await subscription.next_event()

            if event.status in FAILED_STATUSES:
                payload = event.error or {}
                raise AnalysisFailed(
                    payload.get("message") or f"Analysis {job_id} {event.status}",
                    error_payload=payload,
                )

            if event.status == JobStatus.COMPLETED.value or event.is_ready:
                result = await self.store.get_analysis_by_id(job_id)
                if result.success and result.data.is_ready:
                    return result.data
                if not result.success and not result.not_found:
                    raise WatcherDatabaseError(f"Database error while watching {job_id}: {result.error}")
