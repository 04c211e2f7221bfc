import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("filevault")


class FileVaultError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(FileVaultError):
    status_code = 422


class InvalidChunkIndex(ValidationError):
    pass


class MixedDisks(ValidationError):
    pass


class NotFoundError(FileVaultError):
    status_code = 404


class SessionNotFound(NotFoundError):
    pass


class JobNotFound(NotFoundError):
    pass


class DocumentsNotFound(NotFoundError):
    pass


class BlobNotFound(NotFoundError):
    pass


class ConflictError(FileVaultError):
    status_code = 409


class IncompleteUpload(ConflictError):
    pass


class TransientIOError(FileVaultError):
    """Object store, database or queue hiccup; safe to retry."""

    status_code = 503


class FatalBuildError(FileVaultError):
    pass


class ConsistencyFault(FileVaultError):
    """Stored state contradicts recorded bookkeeping."""


class MissingChunk(ConsistencyFault):
    pass


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FileVaultError)
    async def filevault_error_handler(request: Request, exc: FileVaultError):
        if exc.status_code >= 500:
            logger.error(
                "event=request_failed path=%s error_type=%s error=%s",
                request.url.path,
                type(exc).__name__,
                exc.message,
            )
        payload = {"detail": exc.message}
        payload.update(exc.context)
        return JSONResponse(payload, status_code=exc.status_code)
