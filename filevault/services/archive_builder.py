"""Worker routine that turns an archive job's documents into one ZIP file.

The archive is store-only and written entry by entry into a local scratch file,
then uploaded to the archive disk in a single put. Entries follow the job's
``document_ids`` order; a document that cannot be opened is skipped, it never
fails the whole job. A read that breaks after its entry was started does.
"""
from __future__ import annotations

import logging
import math
import os
import shutil
import tempfile
import time
import zipfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import PurePosixPath
from typing import Callable, Iterator, List, NamedTuple, Optional, Set, Tuple

from filevault.config import (
    ARCHIVE_DISK,
    ARCHIVE_FILENAME_PREFIX,
    ARCHIVE_JOB_TIMEOUT_SECONDS,
    ARCHIVE_PREFIX,
    FILESYSTEM_DISK,
)
from filevault.core.exceptions import BlobNotFound, FatalBuildError, FileVaultError
from filevault.core.metrics import MetricsStore, metrics
from filevault.models import ArchiveJob, ArchiveStatus, Document, utcnow
from filevault.services.documents import DocumentRegistry
from filevault.services.job_store import ArchiveJobStore
from filevault.storage import Disk, get_disk, reserve_path

logger = logging.getLogger("filevault.archives")

_COPY_BUFSIZE = 1024 * 1024


class BuildResult(NamedTuple):
    ok: bool
    error: Optional[str] = None
    result_path: Optional[str] = None
    result_filename: Optional[str] = None
    entries: int = 0
    skipped: int = 0


def archive_progress(processed: int, total: int) -> int:
    return min(95, 5 + math.floor(90 * processed / max(total, 1) + 0.5))


def entry_name_for(document: Document) -> str:
    name = document.original_name or PurePosixPath(document.path).name
    return PurePosixPath(name.replace("\\", "/")).name or f"document-{document.id}"


def unique_entry_name(name: str, used: Set[str]) -> str:
    if name not in used:
        return name
    stem, suffix = os.path.splitext(name)
    counter = 2
    while f"{stem} ({counter}){suffix}" in used:
        counter += 1
    return f"{stem} ({counter}){suffix}"


def _zip_timestamp(moment: Optional[datetime]) -> Tuple[int, int, int, int, int, int]:
    moment = moment or datetime(1980, 1, 1)
    if moment.year < 1980:
        moment = datetime(1980, 1, 1)
    return (moment.year, moment.month, moment.day, moment.hour, moment.minute, moment.second)


@contextmanager
def _scratch_file() -> Iterator[str]:
    try:
        fd, path = tempfile.mkstemp(prefix="filevault_archive_", suffix=".zip")
    except OSError as exc:
        raise FatalBuildError("Unable to allocate temporary storage for archive.") from exc
    os.close(fd)
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class ArchiveBuilder:
    def __init__(
        self,
        jobs: Optional[ArchiveJobStore] = None,
        documents: Optional[DocumentRegistry] = None,
        disk_resolver: Callable[[str], Disk] = get_disk,
        default_disk: str = FILESYSTEM_DISK,
        archive_disk: Optional[str] = ARCHIVE_DISK,
        archive_prefix: str = ARCHIVE_PREFIX,
        filename_prefix: str = ARCHIVE_FILENAME_PREFIX,
        timeout_seconds: int = ARCHIVE_JOB_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics_store: MetricsStore = metrics,
    ) -> None:
        self.jobs = jobs or ArchiveJobStore()
        self.documents = documents or DocumentRegistry()
        self._disk = disk_resolver
        self.default_disk = default_disk
        self.archive_disk = archive_disk
        self.archive_prefix = archive_prefix.strip("/")
        self.filename_prefix = filename_prefix
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._metrics = metrics_store

    def run(self, job_id: str) -> Optional[str]:
        """Execute one delivery of ``job_id``. Returns the status this execution left behind."""
        job = self.jobs.get(job_id)
        if job is None:
            logger.warning("event=archive_job_missing job_id=%s", job_id)
            return None
        if job.status != ArchiveStatus.QUEUED:
            logger.warning("event=archive_job_duplicate job_id=%s status=%s pid=%s", job_id, job.status, os.getpid())
            return None
        if not self.jobs.claim(job_id):
            logger.warning("event=archive_job_claim_lost job_id=%s pid=%s", job_id, os.getpid())
            return None

        logger.info("event=archive_job_started job_id=%s documents=%s pid=%s", job_id, len(job.document_ids), os.getpid())
        try:
            result = self._build(job)
        except Exception as exc:
            logger.exception("event=archive_job_error job_id=%s error_type=%s", job_id, type(exc).__name__)
            result = BuildResult(ok=False, error=str(exc) or type(exc).__name__)
        return self._finish(job_id, result)

    def _finish(self, job_id: str, result: BuildResult) -> str:
        if result.ok:
            self.jobs.complete(job_id, result.result_path, result.result_filename)
            self._metrics.record_archive_result(completed=True)
            logger.info(
                "event=archive_job_completed job_id=%s path=%s entries=%s skipped=%s",
                job_id,
                result.result_path,
                result.entries,
                result.skipped,
            )
            return ArchiveStatus.COMPLETED

        self.jobs.fail(job_id, result.error)
        self._metrics.record_archive_result(completed=False)
        logger.error("event=archive_job_failed job_id=%s error=%s", job_id, result.error)
        return ArchiveStatus.FAILED

    def _build(self, job: ArchiveJob) -> BuildResult:
        documents = self.documents.get_many(job.document_ids or [])
        if not documents:
            return BuildResult(ok=False, error="No documents found for the requested job.")

        source_name = job.disk or self.default_disk
        archive_name = job.archive_disk or self.archive_disk or source_name
        source = self._disk(source_name)
        target = self._disk(archive_name)
        logger.info("event=archive_disks job_id=%s source_disk=%s archive_disk=%s", job.id, source_name, archive_name)

        deadline = self._clock() + self.timeout_seconds

        def checkpoint() -> None:
            if self._clock() > deadline:
                raise FatalBuildError(f"Archive build exceeded the {self.timeout_seconds} second timeout.")

        now = utcnow()
        archive_path = reserve_path(target, lambda unique: f"{self.archive_prefix}/{now:%Y/%m/%d}/{unique}.zip")
        archive_filename = f"{self.filename_prefix}_{now:%Y%m%d_%H%M%S}.zip"

        with _scratch_file() as scratch_path:
            entries, skipped = self._write_archive(job.id, scratch_path, source, documents, checkpoint)
            checkpoint()
            self._upload(target, archive_path, scratch_path)

        return BuildResult(
            ok=True,
            result_path=archive_path,
            result_filename=archive_filename,
            entries=entries,
            skipped=skipped,
        )

    def _write_archive(
        self,
        job_id: str,
        scratch_path: str,
        source: Disk,
        documents: List[Document],
        checkpoint: Callable[[], None],
    ) -> Tuple[int, int]:
        total = len(documents)
        processed = 0
        skipped = 0
        used_names: Set[str] = set()

        try:
            handle = open(scratch_path, "wb")
        except OSError as exc:
            raise FatalBuildError("Unable to open temporary archive handle.") from exc

        try:
            with handle, zipfile.ZipFile(handle, mode="w", compression=zipfile.ZIP_STORED, allowZip64=True) as archive:
                for document in documents:
                    checkpoint()
                    entry_name = unique_entry_name(entry_name_for(document), used_names)
                    try:
                        self._add_entry(archive, source, document, entry_name, checkpoint)
                    except FatalBuildError:
                        raise
                    except BlobNotFound:
                        skipped += 1
                        logger.warning(
                            "event=archive_entry_missing job_id=%s document_id=%s path=%s disk=%s",
                            job_id,
                            document.id,
                            document.path,
                            source.name,
                        )
                        continue
                    except (FileVaultError, OSError, ValueError) as exc:
                        skipped += 1
                        logger.error(
                            "event=archive_entry_failed job_id=%s document_id=%s path=%s error=%s",
                            job_id,
                            document.id,
                            document.path,
                            exc,
                        )
                        continue

                    used_names.add(entry_name)
                    processed += 1
                    progress = archive_progress(processed, total)
                    self.jobs.set_progress(job_id, progress)
                    logger.info(
                        "event=archive_entry_added job_id=%s document_id=%s entry=%s processed=%s/%s progress=%s",
                        job_id,
                        document.id,
                        entry_name,
                        processed,
                        total,
                        progress,
                    )
        except OSError as exc:
            raise FatalBuildError(f"Unable to finalize archive: {exc}") from exc

        logger.info(
            "event=archive_written job_id=%s entries=%s skipped=%s size_bytes=%s",
            job_id,
            processed,
            skipped,
            os.path.getsize(scratch_path),
        )
        return processed, skipped

    @staticmethod
    def _add_entry(
        archive: zipfile.ZipFile,
        source: Disk,
        document: Document,
        entry_name: str,
        checkpoint: Callable[[], None],
    ) -> None:
        with source.open_entry_source(document.path, checkpoint) as stream:
            info = zipfile.ZipInfo(entry_name, date_time=_zip_timestamp(document.created_at))
            info.compress_type = zipfile.ZIP_STORED
            info.external_attr = 0o644 << 16
            with archive.open(info, mode="w", force_zip64=True) as entry:
                try:
                    shutil.copyfileobj(stream, entry, _COPY_BUFSIZE)
                except FatalBuildError:
                    raise
                except (FileVaultError, OSError) as exc:
                    # The entry header is already written; the archive cannot drop it.
                    raise FatalBuildError(f"Entry '{entry_name}' was cut short: {exc}") from exc

    @staticmethod
    def _upload(target: Disk, archive_path: str, scratch_path: str) -> None:
        try:
            with open(scratch_path, "rb") as stream:
                target.put(archive_path, stream)
        except (FileVaultError, OSError) as exc:
            raise FatalBuildError(f"Failed to upload archive to storage: {exc}") from exc
