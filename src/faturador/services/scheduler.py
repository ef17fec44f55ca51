"""Cancellable, keyed delayed callbacks on top of APScheduler.

Scheduling a key that is already pending replaces the earlier job. The
underlying ``BackgroundScheduler`` is created paused, so jobs wait in its
job store until ``start()`` resumes it. Tests drive the store with
``run_pending(now=...)`` or ``flush()`` instead of waiting on the clock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeferredScheduler:
    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._scheduler = BackgroundScheduler(
            timezone=timezone.utc,
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        )
        self._scheduler.start(paused=True)
        self._resumed = False

    def schedule(self, key: str, delay: float, callback: Callable[[], object]) -> None:
        """Run *callback* after *delay* seconds, replacing any pending job for *key*."""
        run_date = self._clock() + timedelta(seconds=max(0.0, delay))
        self._scheduler.add_job(
            callback,
            trigger="date",
            run_date=run_date,
            id=key,
            name=key,
            replace_existing=True,
        )
        logger.debug("Scheduled %s in %.1fs", key, delay)

    def cancel(self, key: str) -> bool:
        """Drop the pending job for *key*. Returns False if there was none."""
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            return False
        return True

    def pending(self) -> list[str]:
        """Keys still waiting to run, soonest first."""
        jobs = sorted(self._scheduler.get_jobs(), key=lambda job: job.next_run_time)
        return [job.id for job in jobs]

    def run_pending(self, now: datetime | None = None) -> int:
        """Run every job due at *now* (default: the clock). Returns how many ran."""
        return self._run_due(self._clock() if now is None else now)

    def flush(self) -> int:
        """Run every pending job regardless of its due time."""
        return self._run_due(None)

    def _run_due(self, due: datetime | None) -> int:
        ran = 0
        for job in sorted(self._scheduler.get_jobs(), key=lambda job: job.next_run_time):
            if due is not None and job.next_run_time > due:
                break
            try:
                # the background thread may have claimed it first
                self._scheduler.remove_job(job.id)
            except JobLookupError:
                continue
            try:
                job.func(*job.args, **job.kwargs)
            except Exception:
                logger.exception("Deferred task %s failed", job.id)
            ran += 1
        return ran

    # --- Background execution ---

    def start(self) -> None:
        if not self._resumed:
            self._scheduler.resume()
            self._resumed = True

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._resumed = False
