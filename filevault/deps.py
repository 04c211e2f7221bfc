"""Process-wide service instances, created on first use."""
from typing import Optional

from filevault.config import ENABLE_WORKER
from filevault.services.archive_builder import ArchiveBuilder
from filevault.services.archives import ArchiveService
from filevault.services.documents import DocumentRegistry
from filevault.services.job_store import ArchiveJobStore
from filevault.services.uploads import ChunkedUploadManager
from filevault.worker import ArchiveDispatcher, build_scheduler

_documents: Optional[DocumentRegistry] = None
_jobs: Optional[ArchiveJobStore] = None
_dispatcher: Optional[ArchiveDispatcher] = None
_uploads: Optional[ChunkedUploadManager] = None
_archives: Optional[ArchiveService] = None


def get_document_registry() -> DocumentRegistry:
    global _documents
    if _documents is None:
        _documents = DocumentRegistry()
    return _documents


def get_job_store() -> ArchiveJobStore:
    global _jobs
    if _jobs is None:
        _jobs = ArchiveJobStore()
    return _jobs


def get_dispatcher() -> ArchiveDispatcher:
    global _dispatcher
    if _dispatcher is None:
        jobs = get_job_store()
        _dispatcher = ArchiveDispatcher(
            scheduler=build_scheduler() if ENABLE_WORKER else None,
            builder=ArchiveBuilder(jobs=jobs, documents=get_document_registry()),
            jobs=jobs,
        )
    return _dispatcher


def get_upload_manager() -> ChunkedUploadManager:
    global _uploads
    if _uploads is None:
        _uploads = ChunkedUploadManager(documents=get_document_registry())
    return _uploads


def get_archive_service() -> ArchiveService:
    global _archives
    if _archives is None:
        _archives = ArchiveService(
            jobs=get_job_store(),
            documents=get_document_registry(),
            dispatcher=get_dispatcher(),
        )
    return _archives
