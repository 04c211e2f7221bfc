"""Archive job persistence.

Every status change is a single conditional UPDATE, so a transition only
happens when the row is still in the state the caller expects. That is what
makes redelivered tasks and the recovery sweep safe to run concurrently with a
live worker.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from filevault import db
from filevault.core.exceptions import TransientIOError
from filevault.models import ArchiveJob, ArchiveStatus, utcnow

_MAX_ERROR_LENGTH = 2000


class ArchiveJobStore:
    def __init__(self, engine=None) -> None:
        self._engine = engine or db.engine

    @contextmanager
    def _guard(self):
        try:
            yield
        except OperationalError as exc:
            raise TransientIOError(f"Archive job store unavailable: {exc}") from exc

    def create(self, document_ids: Sequence[int], disk: str, archive_disk: Optional[str]) -> ArchiveJob:
        job = ArchiveJob(
            document_ids=list(document_ids),
            disk=disk,
            archive_disk=archive_disk,
            status=ArchiveStatus.QUEUED,
            progress=0,
        )
        with self._guard(), Session(self._engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        return job

    def get(self, job_id: str) -> Optional[ArchiveJob]:
        with self._guard(), Session(self._engine) as session:
            return session.get(ArchiveJob, job_id)

    def _transition(self, job_id: str, conditions, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        statement = update(ArchiveJob).where(ArchiveJob.id == job_id, *conditions).values(**values)
        with self._guard(), self._engine.begin() as conn:
            result = conn.execute(statement)
        return result.rowcount == 1

    def claim(self, job_id: str) -> bool:
        """queued -> processing. False means another execution got there first."""
        now = utcnow()
        return self._transition(
            job_id,
            [ArchiveJob.status == ArchiveStatus.QUEUED],
            status=ArchiveStatus.PROCESSING,
            progress=5,
            error=None,
            started_at=now,
            updated_at=now,
            attempts=ArchiveJob.attempts + 1,
        )

    def set_progress(self, job_id: str, progress: int) -> bool:
        return self._transition(
            job_id,
            [ArchiveJob.status == ArchiveStatus.PROCESSING, ArchiveJob.progress <= progress],
            progress=progress,
        )

    def complete(self, job_id: str, result_path: str, result_filename: str) -> bool:
        now = utcnow()
        return self._transition(
            job_id,
            [ArchiveJob.status == ArchiveStatus.PROCESSING],
            status=ArchiveStatus.COMPLETED,
            progress=100,
            result_path=result_path,
            result_filename=result_filename,
            completed_at=now,
            updated_at=now,
        )

    def fail(self, job_id: str, error: str) -> bool:
        return self._transition(
            job_id,
            [ArchiveJob.status.in_([ArchiveStatus.QUEUED, ArchiveStatus.PROCESSING])],
            status=ArchiveStatus.FAILED,
            progress=0,
            error=(error or "Archive job failed.")[:_MAX_ERROR_LENGTH],
        )

    def requeue(self, job_id: str, stale_before: datetime) -> bool:
        """processing -> queued for a job whose worker stopped reporting."""
        return self._transition(
            job_id,
            [ArchiveJob.status == ArchiveStatus.PROCESSING, ArchiveJob.updated_at < stale_before],
            status=ArchiveStatus.QUEUED,
            progress=0,
        )

    def ids_with_status(self, status: str, updated_before: datetime) -> List[str]:
        with self._guard(), Session(self._engine) as session:
            rows = session.exec(
                select(ArchiveJob.id).where(
                    ArchiveJob.status == status,
                    ArchiveJob.updated_at < updated_before,
                )
            ).all()
        return list(rows)
