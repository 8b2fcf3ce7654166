"""One-shot, cancellable expiration jobs keyed by user.

Responsibilities:
- Run a callback at (or after) a target instant on a background worker
- Track the outstanding jobs of every user so they can all be cancelled
- Enforce the job state machine: SCHEDULED -> FIRED or SCHEDULED -> CANCELLED
- Follow the service clock when it is fast-forwarded

Jobs are never rescheduled to another instant: replacing an expiry is always
cancel_all() followed by schedule().
"""

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from subscription_core.logging_config import get_logger
from subscription_core.services.time_controller import TimeController
from subscription_core.state_logger import log_job_state_change

logger = get_logger(__name__)


class JobKind(str, Enum):
    """What a scheduled job expires."""

    SUBSCRIPTION_EXPIRY = "subscription_expiry"
    INVOICE_EXPIRY = "invoice_expiry"


class JobState(str, Enum):
    """Lifecycle of a scheduled job."""

    SCHEDULED = "scheduled"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass
class JobHandle:
    """Identifies one deferred job."""

    job_id: str
    user_id: str
    kind: JobKind
    run_at_millis: int
    state: JobState = JobState.SCHEDULED


class ExpirationScheduler:
    """Deferred job runner built on APScheduler's BackgroundScheduler.

    Each job fires on the executor's worker threads, independent of the
    thread that scheduled it. Cancellation is cooperative: a job whose
    callback is already running is not interrupted, so callbacks must check
    current state before acting.

    Args:
        time_controller: service clock; a private real-time clock if missing
        max_workers: worker threads for fired jobs
    """

    def __init__(
            self,
            time_controller: Optional[TimeController] = None,
            max_workers: int = 4,
    ) -> None:
        self._clock = time_controller or TimeController()
        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone="UTC",
        )
        self._lock = threading.RLock()
        self._handles: Dict[str, JobHandle] = {}
        self._jobs_by_user: Dict[str, Set[str]] = {}

        self._clock.add_listener(self._on_clock_changed)

    # Lifecycle

    def start(self) -> None:
        """Start the background worker. Jobs added before start wait for it."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("expiration_scheduler_started", pending_jobs=self.live_count())

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: wait for running callbacks to finish
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("expiration_scheduler_stopped", live_jobs=self.live_count())
        self._clock.remove_listener(self._on_clock_changed)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # Jobs

    def schedule(
            self,
            user_id: str,
            at_millis: int,
            callback: Callable[..., Any],
            *args: Any,
            kind: JobKind = JobKind.SUBSCRIPTION_EXPIRY,
    ) -> JobHandle:
        """Register a one-shot job.

        Never fails for a past instant: such a job fires as soon as the
        scheduler gets to it.

        Args:
            user_id: User the job belongs to
            at_millis: Target instant (service time, Unix millis)
            callback: Called with *args when the job fires
            kind: What the job expires

        Returns:
            JobHandle in SCHEDULED state
        """
        job_id = f"{user_id}:{kind.value}:{uuid.uuid4().hex}"
        handle = JobHandle(job_id=job_id, user_id=user_id, kind=kind, run_at_millis=at_millis)

        with self._lock:
            self._handles[job_id] = handle
            self._jobs_by_user.setdefault(user_id, set()).add(job_id)
            self._scheduler.add_job(
                self._run,
                trigger="date",
                run_date=self._real_run_date(at_millis),
                args=(job_id, callback, args),
                id=job_id,
                name=f"{kind.value}:{user_id}",
                misfire_grace_time=None,
            )

        log_job_state_change(
            job_id=job_id,
            user_id=user_id,
            kind=kind.value,
            old_state=None,
            new_state=JobState.SCHEDULED.value,
            run_at_millis=at_millis,
        )
        return replace(handle)

    def cancel_all(self, user_id: str) -> List[JobHandle]:
        """Cancel every not-yet-fired job of a user.

        Jobs that already fired are left alone. The user's outstanding set is
        empty afterwards.

        Returns:
            Handles of the cancelled jobs
        """
        cancelled: List[JobHandle] = []
        with self._lock:
            for job_id in self._jobs_by_user.pop(user_id, set()):
                handle = self._handles.pop(job_id, None)
                if handle is None:
                    continue
                handle.state = JobState.CANCELLED
                try:
                    self._scheduler.remove_job(job_id)
                except JobLookupError:
                    # Already handed to a worker; _run finds no live handle
                    pass
                cancelled.append(replace(handle))

        for handle in cancelled:
            log_job_state_change(
                job_id=handle.job_id,
                user_id=user_id,
                kind=handle.kind.value,
                old_state=JobState.SCHEDULED.value,
                new_state=JobState.CANCELLED.value,
                run_at_millis=handle.run_at_millis,
            )
        return cancelled

    def outstanding(self, user_id: str, kind: Optional[JobKind] = None) -> List[JobHandle]:
        """Get the user's SCHEDULED jobs, optionally filtered by kind."""
        with self._lock:
            handles = [self._handles[job_id] for job_id in self._jobs_by_user.get(user_id, ())]
            return [replace(h) for h in handles if kind is None or h.kind == kind]

    def outstanding_ids(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._jobs_by_user.get(user_id, ()))

    def live_count(self) -> int:
        with self._lock:
            return len(self._handles)

    def _run(self, job_id: str, callback: Callable[..., Any], args: tuple) -> None:
        """Worker entry point: SCHEDULED -> FIRED, then the callback."""
        with self._lock:
            handle = self._handles.pop(job_id, None)
            if handle is None or handle.state != JobState.SCHEDULED:
                return
            handle.state = JobState.FIRED
            user_jobs = self._jobs_by_user.get(handle.user_id)
            if user_jobs is not None:
                user_jobs.discard(job_id)
                if not user_jobs:
                    del self._jobs_by_user[handle.user_id]

        log_job_state_change(
            job_id=job_id,
            user_id=handle.user_id,
            kind=handle.kind.value,
            old_state=JobState.SCHEDULED.value,
            new_state=JobState.FIRED.value,
            run_at_millis=handle.run_at_millis,
        )

        try:
            callback(*args)
        except Exception as e:
            # The job counts as fired; there is no retry queue
            logger.error(
                "expiration_callback_failed",
                job_id=job_id,
                user_id=handle.user_id,
                kind=handle.kind.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    # Recurring jobs (payment polling)

    def add_recurring(self, job_id: str, func: Callable[[], Any], seconds: int) -> None:
        """Run func every `seconds` seconds, skipping overlapping runs."""
        self._scheduler.add_job(
            func,
            trigger="interval",
            seconds=seconds,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("recurring_job_added", job_id=job_id, interval_seconds=seconds)

    def remove_recurring(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    # Clock

    def _real_run_date(self, at_millis: int) -> datetime:
        real_millis = self._clock.to_real_time_millis(at_millis)
        return datetime.fromtimestamp(real_millis / 1000, tz=timezone.utc)

    def _on_clock_changed(self, current_time_millis: int) -> None:
        """Re-target live jobs after the clock offset changed.

        The target instant of a job does not change; only its wall-clock run
        date does, so jobs that became due fire right away.
        """
        due = 0
        with self._lock:
            for handle in list(self._handles.values()):
                try:
                    self._scheduler.modify_job(
                        handle.job_id, next_run_time=self._real_run_date(handle.run_at_millis)
                    )
                except JobLookupError:
                    continue
                if handle.run_at_millis <= current_time_millis:
                    due += 1

        logger.debug(
            "expiration_jobs_retargeted",
            current_time_millis=current_time_millis,
            due_jobs=due,
        )

    def __repr__(self) -> str:
        return f"ExpirationScheduler(live_jobs={self.live_count()}, running={self.running})"
