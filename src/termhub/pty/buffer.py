"""Scrollback buffer for PTY sessions."""

from __future__ import annotations

import threading
from collections import deque

DEFAULT_SCROLLBACK_BYTES = 200_000


class ScrollbackBuffer:
    """Thread-safe, byte-bounded history of a session's output.

    Output is stored as the chunks the process produced, in order. Once the
    total UTF-8 size exceeds ``max_bytes`` the oldest *whole* chunks are
    dropped until the buffer fits again. Chunks are never split, so after a
    large eviction the buffer may sit up to one chunk's length under budget,
    and a single chunk larger than the budget is dropped as soon as it lands.

    Chunks are append-only; eviction is the only way anything leaves.
    """

    def __init__(self, max_bytes: int = DEFAULT_SCROLLBACK_BYTES) -> None:
        self._chunks: deque[tuple[str, int]] = deque()
        self._max_bytes = max_bytes
        self._byte_count: int = 0
        self._total_chunks: int = 0  # Total chunks ever appended
        self._lock = threading.Lock()

    def append(self, chunk: str) -> int:
        """Append an output chunk, evicting old chunks past the budget.

        Returns:
            Number of chunks evicted by this append.
        """
        if not chunk:
            return 0
        size = len(chunk.encode("utf-8", errors="replace"))
        evicted = 0
        with self._lock:
            self._chunks.append((chunk, size))
            self._byte_count += size
            self._total_chunks += 1
            while self._byte_count > self._max_bytes and self._chunks:
                _, dropped = self._chunks.popleft()
                self._byte_count -= dropped
                evicted += 1
        return evicted

    def read_all(self) -> str:
        """Read all buffered output as a single string."""
        with self._lock:
            return "".join(chunk for chunk, _ in self._chunks)

    def chunks(self) -> list[str]:
        """Snapshot of the buffered chunks, oldest first."""
        with self._lock:
            return [chunk for chunk, _ in self._chunks]

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @property
    def byte_count(self) -> int:
        """Current UTF-8 size of the buffered output."""
        with self._lock:
            return self._byte_count

    @property
    def chunk_count(self) -> int:
        """Current number of chunks in the buffer."""
        with self._lock:
            return len(self._chunks)

    @property
    def total_chunks(self) -> int:
        """Total number of chunks ever appended."""
        with self._lock:
            return self._total_chunks
