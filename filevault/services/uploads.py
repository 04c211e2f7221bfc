"""Chunked upload protocol: init, accept-chunk, finalize, abort.

Chunks go straight to the session's disk under ``<temp_prefix>/chunk_<n>``;
only finalize materializes a full local copy, because size and MIME type are
read from the finished bytes.
"""
from __future__ import annotations

import logging
import mimetypes
import os
import tempfile
import uuid
from contextlib import contextmanager
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Callable, Iterator, NamedTuple, Optional, Tuple

import magic

from filevault.config import (
    FILESYSTEM_DISK,
    MAX_FILENAME_LENGTH,
    UPLOAD_CHUNK_SIZE,
    UPLOAD_DEFAULT_FOLDER,
    UPLOAD_SESSION_TTL_HOURS,
    UPLOAD_TEMP_PREFIX,
)
from filevault.core.exceptions import (
    FileVaultError,
    IncompleteUpload,
    InvalidChunkIndex,
    MissingChunk,
    SessionNotFound,
    ValidationError,
)
from filevault.core.metrics import MetricsStore, metrics
from filevault.models import Document
from filevault.services.documents import DocumentRegistry
from filevault.sessions import UploadSession, get_session_store
from filevault.storage import Disk, get_disk, reserve_path

logger = logging.getLogger("filevault.uploads")


class ChunkReceipt(NamedTuple):
    uploaded_chunks: int
    total_chunks: int
    complete: bool
    duplicate: bool = False


def normalize_folder(folder: Optional[str], default: str = UPLOAD_DEFAULT_FOLDER) -> str:
    cleaned = (folder or "").replace("\\", "/").strip("/")
    if not cleaned or ".." in cleaned.split("/"):
        return default
    return "/".join(part for part in cleaned.split("/") if part and part != ".") or default


def validate_filename(filename: Optional[str]) -> str:
    if not filename or not filename.strip():
        raise ValidationError("The filename field is required.")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise ValidationError(f"The filename may not be greater than {MAX_FILENAME_LENGTH} characters.")
    if "/" in filename or "\\" in filename or filename in {".", ".."}:
        raise ValidationError("The filename may not contain path separators.")
    return filename


def detect_mime_type(path: str, filename: str) -> str:
    detected = magic.from_file(path, mime=True)
    if detected:
        return detected
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


@contextmanager
def _combine_buffer() -> Iterator[str]:
    fd, path = tempfile.mkstemp(prefix="chunked_upload_")
    os.close(fd)
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class ChunkedUploadManager:
    def __init__(
        self,
        sessions=None,
        documents: Optional[DocumentRegistry] = None,
        disk_resolver: Callable[[str], Disk] = get_disk,
        upload_disk: str = FILESYSTEM_DISK,
        session_ttl: timedelta = timedelta(hours=UPLOAD_SESSION_TTL_HOURS),
        chunk_size: int = UPLOAD_CHUNK_SIZE,
        temp_prefix: str = UPLOAD_TEMP_PREFIX,
        metrics_store: MetricsStore = metrics,
    ) -> None:
        self.sessions = sessions or get_session_store()
        self.documents = documents or DocumentRegistry()
        self._disk = disk_resolver
        self.upload_disk = upload_disk
        self.session_ttl = session_ttl
        self.chunk_size = chunk_size
        self.temp_prefix = temp_prefix
        self._metrics = metrics_store

    def _require(self, session_id: str) -> UploadSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Upload session not found or expired.")
        return session

    def init(self, filename: str, total_size: int, total_chunks: int, folder: Optional[str] = None) -> Tuple[str, int]:
        filename = validate_filename(filename)
        if total_size is None or total_size < 1:
            raise ValidationError("The total_size must be at least 1.")
        if total_chunks is None or total_chunks < 1:
            raise ValidationError("The total_chunks must be at least 1.")
        if total_chunks > total_size:
            raise ValidationError("The total_chunks may not exceed total_size.")

        disk = self._disk(self.upload_disk)
        if not disk.is_remote:
            raise ValidationError(f"Chunked uploads require a remote disk; '{self.upload_disk}' is not one.")

        session_id = str(uuid.uuid4())
        session = UploadSession(
            id=session_id,
            filename=filename,
            total_size=total_size,
            total_chunks=total_chunks,
            folder=normalize_folder(folder),
            disk=disk.name,
            temp_prefix=f"{self.temp_prefix}/{session_id}",
        )
        self.sessions.put(session, self.session_ttl)

        logger.info(
            "event=upload_initialized upload_id=%s filename=%s total_size=%s total_chunks=%s folder=%s",
            session_id,
            filename,
            total_size,
            total_chunks,
            session.folder,
        )
        return session_id, self.chunk_size

    def status(self, session_id: str) -> UploadSession:
        return self._require(session_id)

    def accept_chunk(self, session_id: str, chunk_index: int, chunk: bytes) -> ChunkReceipt:
        if chunk_index is None or chunk_index < 0:
            raise InvalidChunkIndex("Invalid chunk index.")
        session = self._require(session_id)
        if chunk_index >= session.total_chunks:
            raise InvalidChunkIndex("Invalid chunk index.")

        if chunk_index in session.uploaded_chunks:
            logger.info("event=chunk_duplicate upload_id=%s chunk_index=%s", session_id, chunk_index)
            return ChunkReceipt(session.uploaded_count, session.total_chunks, session.complete, duplicate=True)

        if not chunk:
            raise ValidationError("The chunk may not be empty.")

        chunk_path = session.chunk_path(chunk_index)
        written = self._disk(session.disk).put_if_absent(chunk_path, chunk)
        uploaded = self.sessions.add_chunk(session_id, chunk_index, self.session_ttl)
        if written:
            self._metrics.record_chunk(len(chunk))

        logger.info(
            "event=chunk_stored upload_id=%s chunk_index=%s chunk_path=%s written=%s progress=%s/%s",
            session_id,
            chunk_index,
            chunk_path,
            written,
            uploaded,
            session.total_chunks,
        )
        return ChunkReceipt(uploaded, session.total_chunks, uploaded == session.total_chunks, duplicate=not written)

    def finalize(self, session_id: str) -> Document:
        session = self._require(session_id)
        if not session.complete:
            raise IncompleteUpload(
                "Not all chunks have been uploaded.",
                uploaded_chunks=session.uploaded_count,
                total_chunks=session.total_chunks,
            )

        disk = self._disk(session.disk)
        with _combine_buffer() as buffer_path:
            try:
                with open(buffer_path, "wb") as combined:
                    for index in range(session.total_chunks):
                        chunk_path = session.chunk_path(index)
                        if not disk.exists(chunk_path):
                            raise MissingChunk(f"Chunk {index} not found.", chunk_index=index)
                        combined.write(disk.get(chunk_path))

                size = os.path.getsize(buffer_path)
                mime_type = detect_mime_type(buffer_path, session.filename)
                final_path = reserve_path(disk, lambda unique: f"{session.folder}/{unique}_{session.filename}")
                with open(buffer_path, "rb") as source:
                    disk.put(final_path, source)
            except Exception as exc:
                logger.error("event=finalize_failed upload_id=%s error=%s", session_id, exc)
                raise

        if size != session.total_size:
            logger.warning(
                "event=finalize_size_mismatch upload_id=%s declared=%s actual=%s",
                session_id,
                session.total_size,
                size,
            )

        extension = PurePosixPath(session.filename).suffix.lstrip(".") or None
        try:
            document = self.documents.create(
                disk=disk.name,
                path=final_path,
                original_name=session.filename,
                extension=extension,
                size=size,
                mime_type=mime_type,
            )
        except Exception:
            disk.delete(final_path)
            raise

        self._delete_chunks(disk, session, range(session.total_chunks))
        self.sessions.delete(session_id)
        self._metrics.record_finalized_upload()

        logger.info(
            "event=upload_completed upload_id=%s document_id=%s path=%s size_bytes=%s mime_type=%s",
            session_id,
            document.id,
            final_path,
            size,
            mime_type,
        )
        return document

    def abort(self, session_id: str) -> None:
        session = self._require(session_id)
        self._delete_chunks(self._disk(session.disk), session, session.uploaded_chunks)
        self.sessions.delete(session_id)
        logger.info("event=upload_aborted upload_id=%s chunks=%s", session_id, session.uploaded_count)

    @staticmethod
    def _delete_chunks(disk: Disk, session: UploadSession, indices) -> None:
        for index in indices:
            try:
                disk.delete(session.chunk_path(index))
            except (FileVaultError, OSError) as exc:
                logger.warning(
                    "event=chunk_delete_failed upload_id=%s chunk_index=%s error=%s",
                    session.id,
                    index,
                    exc,
                )
