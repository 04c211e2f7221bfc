from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

from filevault.config import ARCHIVE_DISK, ARCHIVE_DOWNLOAD_TTL_MINUTES
from filevault.core.exceptions import DocumentsNotFound, JobNotFound, MixedDisks, ValidationError
from filevault.core.metrics import MetricsStore, metrics
from filevault.models import ArchiveJob, ArchiveStatus
from filevault.services.documents import DocumentRegistry
from filevault.services.job_store import ArchiveJobStore
from filevault.storage import Disk, get_disk

logger = logging.getLogger("filevault.archives")

ZIP_CONTENT_TYPE = "application/zip"


def _unique_ids(document_ids: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for document_id in document_ids:
        if document_id not in seen:
            seen.add(document_id)
            ordered.append(document_id)
    return ordered


class ArchiveService:
    """Request side of archive jobs: validation, enqueueing and status reads."""

    def __init__(
        self,
        jobs: Optional[ArchiveJobStore] = None,
        documents: Optional[DocumentRegistry] = None,
        dispatcher=None,
        disk_resolver: Callable[[str], Disk] = get_disk,
        archive_disk: Optional[str] = ARCHIVE_DISK,
        download_ttl_minutes: int = ARCHIVE_DOWNLOAD_TTL_MINUTES,
        metrics_store: MetricsStore = metrics,
    ) -> None:
        self.jobs = jobs or ArchiveJobStore()
        self.documents = documents or DocumentRegistry()
        self.dispatcher = dispatcher
        self._disk = disk_resolver
        self.archive_disk = archive_disk
        self.download_ttl_minutes = download_ttl_minutes
        self._metrics = metrics_store

    def request_archive(self, document_ids: Iterable[int]) -> ArchiveJob:
        ids = _unique_ids(document_ids)
        if not ids:
            raise ValidationError("The document_ids field must contain at least one id.")

        found = self.documents.get_many(ids)
        if len(found) != len(ids):
            known = {document.id for document in found}
            raise DocumentsNotFound(
                "One or more documents were not found.",
                missing=[document_id for document_id in ids if document_id not in known],
            )

        disks = {document.disk for document in found}
        if len(disks) != 1:
            raise MixedDisks("All documents must be stored on the same remote disk.", disks=sorted(disks))
        source_disk = disks.pop()
        if not self._disk(source_disk).is_remote:
            raise MixedDisks("All documents must be stored on the same remote disk.", disks=[source_disk])

        job = self.jobs.create(ids, disk=source_disk, archive_disk=self.archive_disk or source_disk)
        self._metrics.record_archive_requested()
        logger.info(
            "event=archive_job_queued job_id=%s documents=%s found=%s disk=%s",
            job.id,
            len(ids),
            len(found),
            source_disk,
        )
        if self.dispatcher is not None:
            self.dispatcher.enqueue(job.id)
        return self.jobs.get(job.id) or job

    def get_job_status(self, job_id: str) -> dict:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFound("Archive job not found.")

        payload = {
            "job_id": job.id,
            "status": job.status,
            "progress": job.progress,
            "error": job.error,
        }
        if job.status == ArchiveStatus.COMPLETED and job.result_path:
            disk = self._disk(job.archive_disk or job.disk)
            payload["download_url"] = disk.signed_download_url(
                job.result_path,
                timedelta(minutes=self.download_ttl_minutes),
                job.result_filename or job.result_path.rsplit("/", 1)[-1],
                ZIP_CONTENT_TYPE,
            )
            payload["expires_in_minutes"] = self.download_ttl_minutes
        return payload

    def list_documents(self, page: int = 1) -> dict:
        return self.documents.paginate(page)
