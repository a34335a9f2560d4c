"""
Key-value storage contract shared by all backends.

Values are opaque bytes addressed by (namespace, collection, key). An empty
namespace always maps to ``DEFAULT_NAMESPACE``.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol

from cardgate.errors import DeadlineExceededError, KeyNotFoundError

DEFAULT_NAMESPACE = "default"


def normalize_namespace(namespace: str) -> str:
    """Return the namespace, or the default partition if it is empty."""
    if not namespace:
        return DEFAULT_NAMESPACE
    return namespace


class Deadline:
    """
    Per-call deadline and cancellation token.

    Backends call ``check()`` before issuing I/O and use ``remaining()`` to
    bound driver-level timeouts. A deadline without ``seconds`` never
    expires but can still be cancelled.
    """

    def __init__(self, seconds: Optional[float] = None):
        self._expires_at = (
            time.monotonic() + seconds if seconds is not None else None
        )
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left, ``0.0`` once expired, ``None`` when unbounded."""
        if self.cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, backend: Optional[str] = None) -> None:
        if self.cancelled:
            raise DeadlineExceededError("operation cancelled", backend=backend)
        if self.expired():
            raise DeadlineExceededError("deadline exceeded", backend=backend)


class KVStore(Protocol):
    """Operations every storage backend provides."""

    backend_name: str

    def get(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        ...

    def set(
        self,
        namespace: str,
        collection: str,
        key: str,
        value: bytes,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        ...

    def delete(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        ...

    def exists(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        ...

    def ping(self, *, deadline: Optional[Deadline] = None) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryKVStore:
    """Dict-backed store for development and tests."""

    backend_name = "memory"

    def __init__(self):
        self.data: Dict[tuple[str, str, str], bytes] = {}
        self._lock = threading.Lock()

    def _address(self, namespace: str, collection: str, key: str):
        return (normalize_namespace(namespace), collection, key)

    def get(self, namespace, collection, key, *, deadline=None) -> bytes:
        if deadline:
            deadline.check(self.backend_name)
        with self._lock:
            value = self.data.get(self._address(namespace, collection, key))
        if value is None:
            raise KeyNotFoundError(key, backend=self.backend_name)
        return value

    def set(self, namespace, collection, key, value, *, deadline=None) -> None:
        if deadline:
            deadline.check(self.backend_name)
        with self._lock:
            self.data[self._address(namespace, collection, key)] = bytes(value)

    def delete(self, namespace, collection, key, *, deadline=None) -> None:
        if deadline:
            deadline.check(self.backend_name)
        with self._lock:
            removed = self.data.pop(
                self._address(namespace, collection, key), None
            )
        if removed is None:
            raise KeyNotFoundError(key, backend=self.backend_name)

    def exists(self, namespace, collection, key, *, deadline=None) -> bool:
        if deadline:
            deadline.check(self.backend_name)
        with self._lock:
            return self._address(namespace, collection, key) in self.data

    def ping(self, *, deadline=None) -> None:
        if deadline:
            deadline.check(self.backend_name)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.data.clear()

    def close(self) -> None:
        self.reset()
