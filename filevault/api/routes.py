from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from sqlmodel import Session

from filevault.db import ensure_connection, get_session
from filevault.core.metrics import metrics
from filevault.deps import get_archive_service, get_upload_manager
from filevault.services.archives import ArchiveService
from filevault.services.stats import fetch_storage_totals
from filevault.services.uploads import ChunkedUploadManager
from filevault.storage import LocalDisk, content_disposition, get_disk

router = APIRouter()

logger = logging.getLogger("filevault")


class InitUploadRequest(BaseModel):
    filename: str
    total_size: int = Field(ge=1)
    total_chunks: int = Field(ge=1)
    folder: Optional[str] = None


class UploadRef(BaseModel):
    upload_id: str


class ZipJobRequest(BaseModel):
    document_ids: List[int] = Field(min_length=1)


@router.post("/files/chunked/init", status_code=201)
def init_chunked_upload(payload: InitUploadRequest, manager: ChunkedUploadManager = Depends(get_upload_manager)):
    upload_id, chunk_size = manager.init(
        payload.filename,
        payload.total_size,
        payload.total_chunks,
        payload.folder,
    )
    return {"upload_id": upload_id, "chunk_size": chunk_size}


@router.post("/files/chunked/upload")
def upload_chunk(
    upload_id: str = Form(...),
    chunk_index: int = Form(...),
    chunk: UploadFile = File(...),
    manager: ChunkedUploadManager = Depends(get_upload_manager),
):
    data = chunk.file.read()
    receipt = manager.accept_chunk(upload_id, chunk_index, data)
    return {
        "message": "Chunk already received" if receipt.duplicate else "Chunk uploaded successfully",
        "uploaded_chunks": receipt.uploaded_chunks,
        "total_chunks": receipt.total_chunks,
        "complete": receipt.complete,
    }


@router.get("/files/chunked/{upload_id}")
def chunked_upload_status(upload_id: str, manager: ChunkedUploadManager = Depends(get_upload_manager)):
    session = manager.status(upload_id)
    return {
        "upload_id": session.id,
        "filename": session.filename,
        "total_size": session.total_size,
        "total_chunks": session.total_chunks,
        "uploaded_chunks": session.uploaded_chunks,
        "complete": session.complete,
    }


@router.post("/files/chunked/finalize", status_code=201)
def finalize_chunked_upload(payload: UploadRef, manager: ChunkedUploadManager = Depends(get_upload_manager)):
    document = manager.finalize(payload.upload_id)
    return {"message": "File uploaded successfully", "document": document.model_dump()}


@router.post("/files/chunked/abort")
def abort_chunked_upload(payload: UploadRef, manager: ChunkedUploadManager = Depends(get_upload_manager)):
    manager.abort(payload.upload_id)
    return {"message": "Upload aborted"}


@router.get("/files")
def list_documents(page: int = Query(1, ge=1), service: ArchiveService = Depends(get_archive_service)):
    return service.list_documents(page)


@router.post("/files/zip-jobs", status_code=202)
def create_zip_job(payload: ZipJobRequest, service: ArchiveService = Depends(get_archive_service)):
    job = service.request_archive(payload.document_ids)
    return {"job_id": job.id, "status": job.status, "progress": job.progress}


@router.get("/files/zip-jobs/{job_id}")
def zip_job_status(job_id: str, service: ArchiveService = Depends(get_archive_service)):
    return service.get_job_status(job_id)


@router.get("/files/local/{path:path}")
def download_local(path: str, expires: int, filename: str, content_type: str, signature: str):
    disk = get_disk("local")
    if not isinstance(disk, LocalDisk) or not disk.verify_signature(path, expires, filename, content_type, signature):
        logger.warning("event=local_download_rejected path=%s", path)
        raise HTTPException(status_code=403, detail="Invalid or expired signature")

    target = disk.local_path(path)
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Not found")

    logger.info("event=local_download path=%s filename=%s", path, filename)
    return FileResponse(
        target,
        media_type=content_type,
        headers={"Content-Disposition": content_disposition(filename)},
    )


@router.get("/metrics")
def metrics_snapshot(session: Session = Depends(get_session)):
    payload = metrics.snapshot()
    payload.update(fetch_storage_totals(session))
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.get("/health")
def health():
    if not ensure_connection():
        return JSONResponse({"status": "degraded", "database": False}, status_code=503)
    return {"status": "ok", "database": True}
