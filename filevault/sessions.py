"""Upload session bookkeeping.

A session record and its set of uploaded chunk indices are stored separately:
the record is written once at init, while indices are added with an atomic
set-add so concurrent chunk requests never overwrite each other's progress.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

import redis
from sqlmodel import Field, SQLModel

from filevault.core.exceptions import SessionNotFound, TransientIOError
from filevault.core.redis_client import get_redis_client
from filevault.models import utcnow

logger = logging.getLogger("filevault.sessions")


class UploadSession(SQLModel):
    id: str
    filename: str
    total_size: int
    total_chunks: int
    folder: str
    disk: str
    temp_prefix: str
    created_at: datetime = Field(default_factory=utcnow)
    uploaded_chunks: List[int] = Field(default_factory=list)

    @property
    def uploaded_count(self) -> int:
        return len(self.uploaded_chunks)

    @property
    def complete(self) -> bool:
        return self.uploaded_count == self.total_chunks

    def chunk_path(self, index: int) -> str:
        return f"{self.temp_prefix}/chunk_{index}"

    def record_json(self) -> str:
        return self.model_dump_json(exclude={"uploaded_chunks"})


def _load(raw, chunks) -> UploadSession:
    session = UploadSession.model_validate_json(raw)
    session.uploaded_chunks = sorted(int(index) for index in chunks)
    return session


class MemorySessionStore:
    """In-process session store with TTL; merges are serialized by one lock."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._records: Dict[str, Tuple[str, float]] = {}
        self._chunks: Dict[str, Set[int]] = {}
        self._lock = threading.Lock()

    def _alive(self, session_id: str) -> bool:
        entry = self._records.get(session_id)
        if entry is None:
            return False
        if entry[1] <= self._clock():
            self._records.pop(session_id, None)
            self._chunks.pop(session_id, None)
            return False
        return True

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            if not self._alive(session_id):
                return None
            return _load(self._records[session_id][0], self._chunks.get(session_id, ()))

    def put(self, session: UploadSession, ttl: timedelta) -> None:
        with self._lock:
            self._records[session.id] = (session.record_json(), self._clock() + ttl.total_seconds())
            self._chunks.setdefault(session.id, set()).update(session.uploaded_chunks)

    def add_chunk(self, session_id: str, index: int, ttl: timedelta) -> int:
        with self._lock:
            if not self._alive(session_id):
                raise SessionNotFound("Upload session not found or expired.")
            raw, _ = self._records[session_id]
            self._records[session_id] = (raw, self._clock() + ttl.total_seconds())
            chunks = self._chunks.setdefault(session_id, set())
            chunks.add(index)
            return len(chunks)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)
            self._chunks.pop(session_id, None)


class RedisSessionStore:
    """Session store backed by Redis: a JSON record plus a SET of chunk indices."""

    def __init__(self, client) -> None:
        self._client = client

    @staticmethod
    def _record_key(session_id: str) -> str:
        return f"chunked_upload:{session_id}"

    @staticmethod
    def _chunks_key(session_id: str) -> str:
        return f"chunked_upload:{session_id}:chunks"

    def get(self, session_id: str) -> Optional[UploadSession]:
        try:
            pipe = self._client.pipeline()
            pipe.get(self._record_key(session_id))
            pipe.smembers(self._chunks_key(session_id))
            raw, members = pipe.execute()
        except redis.RedisError as exc:
            raise TransientIOError(f"Session store unavailable: {exc}") from exc
        if raw is None:
            return None
        return _load(raw, members)

    def put(self, session: UploadSession, ttl: timedelta) -> None:
        seconds = int(ttl.total_seconds())
        try:
            pipe = self._client.pipeline()
            pipe.setex(self._record_key(session.id), seconds, session.record_json())
            if session.uploaded_chunks:
                pipe.sadd(self._chunks_key(session.id), *session.uploaded_chunks)
            pipe.expire(self._chunks_key(session.id), seconds)
            pipe.execute()
        except redis.RedisError as exc:
            raise TransientIOError(f"Session store unavailable: {exc}") from exc

    def add_chunk(self, session_id: str, index: int, ttl: timedelta) -> int:
        seconds = int(ttl.total_seconds())
        record_key = self._record_key(session_id)
        chunks_key = self._chunks_key(session_id)
        try:
            # MULTI/EXEC: the add and the count are observed atomically.
            pipe = self._client.pipeline(transaction=True)
            pipe.exists(record_key)
            pipe.sadd(chunks_key, index)
            pipe.expire(chunks_key, seconds)
            pipe.expire(record_key, seconds)
            pipe.scard(chunks_key)
            exists, _, _, _, count = pipe.execute()
            if not exists:
                self._client.delete(chunks_key)
        except redis.RedisError as exc:
            raise TransientIOError(f"Session store unavailable: {exc}") from exc
        if not exists:
            raise SessionNotFound("Upload session not found or expired.")
        return int(count)

    def delete(self, session_id: str) -> None:
        try:
            self._client.delete(self._record_key(session_id), self._chunks_key(session_id))
        except redis.RedisError as exc:
            raise TransientIOError(f"Session store unavailable: {exc}") from exc


_memory_store: Optional[MemorySessionStore] = None


def get_session_store():
    global _memory_store
    client = get_redis_client()
    if client is not None:
        return RedisSessionStore(client)
    if _memory_store is None:
        logger.info("event=session_store_memory reason=redis_not_configured")
        _memory_store = MemorySessionStore()
    return _memory_store
