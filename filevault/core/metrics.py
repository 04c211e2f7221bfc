from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "chunks_received": 0,
            "uploads_finalized": 0,
            "bytes_uploaded": 0,
            "archives_requested": 0,
            "archives_completed": 0,
            "archives_failed": 0,
        }

    def record_chunk(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["chunks_received"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_finalized_upload(self) -> None:
        with self._lock:
            self._counters["uploads_finalized"] += 1

    def record_archive_requested(self) -> None:
        with self._lock:
            self._counters["archives_requested"] += 1

    def record_archive_result(self, completed: bool) -> None:
        key = "archives_completed" if completed else "archives_failed"
        with self._lock:
            self._counters[key] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
