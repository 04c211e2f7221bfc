"""In-process task dispatch for archive jobs.

Jobs run on an APScheduler ``BackgroundScheduler`` thread pool. Each delivery
takes the job's lease lock first, so a redelivered or recovered job never has
two builders working on it at once. Without a scheduler every job runs inline
on the caller's thread.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from filevault.config import (
    ARCHIVE_LOCK_TTL_SECONDS,
    ARCHIVE_MAX_ATTEMPTS,
    ARCHIVE_RETRY_BASE_DELAY_SECONDS,
    RECOVERY_INTERVAL_MINUTES,
    RECOVERY_QUEUED_GRACE_MINUTES,
    WORKER_POOL_SIZE,
)
from filevault.core.exceptions import FileVaultError, TransientIOError
from filevault.locks import archive_lock_key, get_lock_manager
from filevault.models import ArchiveStatus, utcnow
from filevault.services.archive_builder import ArchiveBuilder
from filevault.services.job_store import ArchiveJobStore

logger = logging.getLogger("filevault.worker")


def build_scheduler(pool_size: int = WORKER_POOL_SIZE) -> BackgroundScheduler:
    return BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(pool_size)},
        job_defaults={"coalesce": True, "misfire_grace_time": None},
    )


class ArchiveDispatcher:
    def __init__(
        self,
        scheduler: Optional[BackgroundScheduler] = None,
        builder: Optional[ArchiveBuilder] = None,
        jobs: Optional[ArchiveJobStore] = None,
        locks=None,
        max_attempts: int = ARCHIVE_MAX_ATTEMPTS,
        retry_base_delay: float = ARCHIVE_RETRY_BASE_DELAY_SECONDS,
        lock_ttl_seconds: int = ARCHIVE_LOCK_TTL_SECONDS,
        queued_grace: timedelta = timedelta(minutes=RECOVERY_QUEUED_GRACE_MINUTES),
        sleep=time.sleep,
    ) -> None:
        self.scheduler = scheduler
        self.jobs = jobs or ArchiveJobStore()
        self.builder = builder or ArchiveBuilder(jobs=self.jobs)
        self.locks = locks or get_lock_manager()
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.lock_ttl_seconds = lock_ttl_seconds
        self.queued_grace = queued_grace
        self._sleep = sleep

    def enqueue(self, job_id: str, attempt: int = 1, delay_seconds: float = 0) -> None:
        if self.scheduler is None:
            if delay_seconds:
                self._sleep(delay_seconds)
            self.run(job_id, attempt)
            return

        self.scheduler.add_job(
            self.run,
            "date",
            run_date=datetime.now() + timedelta(seconds=delay_seconds),
            args=[job_id, attempt],
            id=f"archive:{job_id}:{attempt}",
            replace_existing=True,
        )
        logger.info("event=archive_job_dispatched job_id=%s attempt=%s delay_seconds=%s", job_id, attempt, delay_seconds)

    def run(self, job_id: str, attempt: int = 1) -> None:
        """One delivery of an archive task."""
        try:
            with self.locks.hold(archive_lock_key(job_id), self.lock_ttl_seconds) as acquired:
                if not acquired:
                    logger.warning("event=archive_job_locked job_id=%s attempt=%s", job_id, attempt)
                    return
                self.builder.run(job_id)
        except TransientIOError as exc:
            self._retry_or_fail(job_id, attempt, exc)

    def _retry_or_fail(self, job_id: str, attempt: int, exc: TransientIOError) -> None:
        if attempt < self.max_attempts:
            delay = self.retry_base_delay * 2 ** (attempt - 1)
            logger.warning(
                "event=archive_job_retry job_id=%s attempt=%s delay_seconds=%s error=%s",
                job_id,
                attempt,
                delay,
                exc,
            )
            self.enqueue(job_id, attempt + 1, delay)
            return

        logger.error("event=archive_job_exhausted job_id=%s attempts=%s error=%s", job_id, attempt, exc)
        try:
            self.jobs.fail(job_id, str(exc))
        except FileVaultError as store_exc:
            logger.error("event=archive_job_fail_unrecorded job_id=%s error=%s", job_id, store_exc)

    def recover_stale_jobs(self) -> int:
        """Put abandoned jobs back in the queue and dispatch them again."""
        now = utcnow()
        stale_before = now - timedelta(seconds=self.lock_ttl_seconds)
        recovered = 0

        for job_id in self.jobs.ids_with_status(ArchiveStatus.PROCESSING, stale_before):
            if self.locks.is_held(archive_lock_key(job_id)):
                continue
            if self.jobs.requeue(job_id, stale_before):
                logger.warning("event=archive_job_requeued job_id=%s", job_id)
                self.enqueue(job_id)
                recovered += 1

        for job_id in self.jobs.ids_with_status(ArchiveStatus.QUEUED, now - self.queued_grace):
            if self.locks.is_held(archive_lock_key(job_id)):
                continue
            logger.warning("event=archive_job_redispatched job_id=%s", job_id)
            self.enqueue(job_id)
            recovered += 1

        return recovered


def start_worker(dispatcher: ArchiveDispatcher, interval_minutes: int = RECOVERY_INTERVAL_MINUTES) -> BackgroundScheduler:
    scheduler = dispatcher.scheduler
    if scheduler is None:
        raise ValueError("start_worker needs a dispatcher bound to a scheduler")

    def _job():
        try:
            recovered = dispatcher.recover_stale_jobs()
            if recovered:
                logger.info("event=recovery_sweep recovered=%s", recovered)
        except TransientIOError as e:
            logger.error("Store unavailable during recovery sweep: %s", str(e))
        except Exception as e:
            logger.error("Unexpected error in recovery sweep: %s", str(e))

    scheduler.add_job(_job, "interval", minutes=interval_minutes, id="archive-recovery", replace_existing=True)
    scheduler.start()
    logger.info("event=worker_started pool_size=%s recovery_interval_minutes=%s", WORKER_POOL_SIZE, interval_minutes)
    return scheduler
