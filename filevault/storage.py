from __future__ import annotations

import hashlib
import hmac
import logging
import os
import shutil
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from filevault.config import (
    ARCHIVE_RANGE_CHUNK_SIZE,
    AWS_ACCESS_KEY_ID,
    AWS_SECRET_ACCESS_KEY,
    LOCAL_DISK_ROOT,
    LOCAL_DISK_URL,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_REGION,
    S3_USE_PATH_STYLE,
    SIGNING_KEY,
)
from filevault.core.exceptions import BlobNotFound, TransientIOError, ValidationError

logger = logging.getLogger("filevault.storage")

Content = Union[bytes, BinaryIO]

_MAX_PATH_ATTEMPTS = 5
_COPY_BUFSIZE = 1024 * 1024
_S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_S3_PRECONDITION_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def content_disposition(filename: str) -> str:
    encoded = quote(filename)
    return f"attachment; filename=\"{encoded}\"; filename*=UTF-8''{encoded}"


class Disk:
    """Blob capability shared by every storage backend."""

    name: str
    is_remote = False

    def put(self, path: str, content: Content) -> None:
        raise NotImplementedError

    def put_if_absent(self, path: str, content: Content) -> bool:
        """Write only when nothing is stored at ``path`` yet. False means an earlier write won."""
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def read_range(self, path: str, start: int, end: int) -> bytes:
        """Read bytes ``start..end`` (both inclusive)."""
        raise NotImplementedError

    def size(self, path: str) -> int:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def signed_download_url(
        self,
        path: str,
        ttl: timedelta,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        raise NotImplementedError

    def open_entry_source(self, path: str, checkpoint: Optional[Callable[[], None]] = None):
        """Context manager yielding a readable binary handle positioned at the blob's first byte."""
        raise NotImplementedError


class LocalDisk(Disk):
    def __init__(self, name: str, root: str, base_url: str, signing_key: str) -> None:
        self.name = name
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self._signing_key = signing_key.encode("utf-8")

    def _resolve(self, path: str) -> Path:
        try:
            full = (self.root / path).resolve()
            full.relative_to(self.root)
        except (ValueError, RuntimeError):
            raise ValidationError(f"Path '{path}' escapes disk '{self.name}'")
        return full

    def put(self, path: str, content: Content) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, staging = tempfile.mkstemp(dir=target.parent, prefix=".put_")
        try:
            with os.fdopen(fd, "wb") as out:
                if isinstance(content, (bytes, bytearray)):
                    out.write(content)
                else:
                    shutil.copyfileobj(content, out, _COPY_BUFSIZE)
            os.replace(staging, target)
        except BaseException:
            Path(staging).unlink(missing_ok=True)
            raise

    def put_if_absent(self, path: str, content: Content) -> bool:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, staging = tempfile.mkstemp(dir=target.parent, prefix=".put_")
        try:
            with os.fdopen(fd, "wb") as out:
                if isinstance(content, (bytes, bytearray)):
                    out.write(content)
                else:
                    shutil.copyfileobj(content, out, _COPY_BUFSIZE)
            os.link(staging, target)
        except FileExistsError:
            return False
        finally:
            Path(staging).unlink(missing_ok=True)
        return True

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(f"Blob '{path}' not found on disk '{self.name}'")

    def read_range(self, path: str, start: int, end: int) -> bytes:
        try:
            with open(self._resolve(path), "rb") as handle:
                handle.seek(start)
                return handle.read(end - start + 1)
        except FileNotFoundError:
            raise BlobNotFound(f"Blob '{path}' not found on disk '{self.name}'")

    def size(self, path: str) -> int:
        try:
            return self._resolve(path).stat().st_size
        except FileNotFoundError:
            raise BlobNotFound(f"Blob '{path}' not found on disk '{self.name}'")

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def _signature(self, path: str, expires: int, filename: str, content_type: str) -> str:
        message = f"{path}\n{expires}\n{filename}\n{content_type}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def signed_download_url(
        self,
        path: str,
        ttl: timedelta,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        expires = int(time.time() + ttl.total_seconds())
        query = urlencode(
            {
                "expires": expires,
                "filename": filename,
                "content_type": content_type,
                "signature": self._signature(path, expires, filename, content_type),
            }
        )
        return f"{self.base_url}/{quote(path)}?{query}"

    def verify_signature(self, path: str, expires: int, filename: str, content_type: str, signature: str) -> bool:
        if expires < time.time():
            return False
        expected = self._signature(path, expires, filename, content_type)
        return hmac.compare_digest(expected, signature)

    def local_path(self, path: str) -> Path:
        return self._resolve(path)

    @contextmanager
    def open_entry_source(self, path: str, checkpoint: Optional[Callable[[], None]] = None) -> Iterator[BinaryIO]:
        try:
            handle = open(self._resolve(path), "rb")
        except FileNotFoundError:
            raise BlobNotFound(f"Blob '{path}' not found on disk '{self.name}'")
        try:
            yield handle
        finally:
            handle.close()


class RemoteObjectDisk(Disk):
    """S3-compatible object storage accessed through boto3."""

    is_remote = True

    def __init__(self, name: str, bucket: str, client=None, range_chunk_size: int = ARCHIVE_RANGE_CHUNK_SIZE) -> None:
        self.name = name
        self.bucket = bucket
        self.range_chunk_size = range_chunk_size
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _build_s3_client()
        return self._client

    @contextmanager
    def _s3_errors(self, path: str):
        try:
            yield
        except ClientError as exc:
            if _error_code(exc) in _S3_MISSING_CODES:
                raise BlobNotFound(f"Blob '{path}' not found on disk '{self.name}'") from exc
            raise TransientIOError(f"S3 request failed for '{path}': {exc}") from exc
        except BotoCoreError as exc:
            raise TransientIOError(f"S3 request failed for '{path}': {exc}") from exc

    def put(self, path: str, content: Content) -> None:
        with self._s3_errors(path):
            if isinstance(content, (bytes, bytearray)):
                self.client.put_object(Bucket=self.bucket, Key=path, Body=bytes(content))
            else:
                self.client.upload_fileobj(content, self.bucket, path)

    def put_if_absent(self, path: str, content: Content) -> bool:
        body = bytes(content) if isinstance(content, (bytes, bytearray)) else content.read()
        with self._s3_errors(path):
            try:
                self.client.put_object(Bucket=self.bucket, Key=path, Body=body, IfNoneMatch="*")
            except ClientError as exc:
                if _error_code(exc) in _S3_PRECONDITION_CODES:
                    return False
                raise
        return True

    def get(self, path: str) -> bytes:
        with self._s3_errors(path):
            response = self.client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()

    def read_range(self, path: str, start: int, end: int) -> bytes:
        with self._s3_errors(path):
            response = self.client.get_object(Bucket=self.bucket, Key=path, Range=f"bytes={start}-{end}")
            return response["Body"].read()

    def size(self, path: str) -> int:
        with self._s3_errors(path):
            return int(self.client.head_object(Bucket=self.bucket, Key=path)["ContentLength"])

    def exists(self, path: str) -> bool:
        try:
            self.size(path)
        except BlobNotFound:
            return False
        return True

    def delete(self, path: str) -> None:
        with self._s3_errors(path):
            self.client.delete_object(Bucket=self.bucket, Key=path)

    def signed_download_url(
        self,
        path: str,
        ttl: timedelta,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        with self._s3_errors(path):
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": path,
                    "ResponseContentDisposition": content_disposition(filename),
                    "ResponseContentType": content_type,
                },
                ExpiresIn=int(ttl.total_seconds()),
            )

    @contextmanager
    def open_entry_source(self, path: str, checkpoint: Optional[Callable[[], None]] = None) -> Iterator[BinaryIO]:
        """Pull the blob with sequential range reads into a local buffer."""
        total = self.size(path)
        with tempfile.TemporaryFile(prefix="filevault_entry_") as buffer:
            offset = 0
            while offset < total:
                end = min(offset + self.range_chunk_size - 1, total - 1)
                data = self.read_range(path, offset, end)
                if not data:
                    raise TransientIOError(f"Empty range bytes={offset}-{end} for '{path}'")
                buffer.write(data)
                offset += len(data)
                if checkpoint is not None:
                    checkpoint()
            buffer.seek(0)
            logger.debug("event=blob_buffered disk=%s path=%s size_bytes=%s", self.name, path, total)
            yield buffer


def _build_s3_client():
    config = BotoConfig(s3={"addressing_style": "path"}) if S3_USE_PATH_STYLE else None
    return boto3.client(
        "s3",
        endpoint_url=S3_ENDPOINT_URL,
        region_name=S3_REGION,
        aws_access_key_id=AWS_ACCESS_KEY_ID,
        aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
        config=config,
    )


_disks: dict[str, Disk] = {}


def get_disk(name: str) -> Disk:
    disk = _disks.get(name)
    if disk is not None:
        return disk

    if name == "s3":
        disk = RemoteObjectDisk(name, S3_BUCKET)
    elif name == "local":
        disk = LocalDisk(name, LOCAL_DISK_ROOT, LOCAL_DISK_URL, SIGNING_KEY)
    else:
        raise ValidationError(f"Unknown storage disk '{name}'")
    _disks[name] = disk
    return disk


def reserve_path(disk: Disk, build: Callable[[str], str]) -> str:
    """Return a path built from a fresh unique id that is not yet taken on ``disk``."""
    for _ in range(_MAX_PATH_ATTEMPTS):
        path = build(str(uuid.uuid4()))
        if not disk.exists(path):
            return path
    raise TransientIOError("Unable to allocate a unique storage path")
