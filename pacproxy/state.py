"""Shared mutable state: the in-memory PAC blob and the shutdown gate."""

from __future__ import annotations

import threading
from types import TracebackType


class ConfigStore:
    """Hold the current PAC blob behind a lock.

    Blobs are immutable ``bytes`` and are replaced wholesale, so a snapshot
    stays valid after the store moves on.
    """

    def __init__(self, initial: bytes = b"") -> None:
        self._lock = threading.Lock()
        self._blob = bytes(initial)

    def replace(self, blob: bytes) -> None:
        data = bytes(blob)
        with self._lock:
            self._blob = data

    def snapshot(self) -> bytes:
        with self._lock:
            return self._blob


class ShutdownGate:
    """A one-way "closed" flag serialising reloads against teardown.

    Use it as a context manager to hold the lock while checking ``closed``
    and acting on the result.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def __enter__(self) -> "ShutdownGate":
        self._lock.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._lock.release()
