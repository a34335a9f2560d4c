"""
Error taxonomy shared by every storage backend and the verification engine.

Backend adapters re-raise driver exceptions as one of these types with
``raise ... from err`` so callers can test for "not found" or "connection
failed" without knowing which backend is active. The driver exception is
kept on ``__cause__`` for server-side logging only.
"""

from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base class for storage backend failures."""

    def __init__(self, message: str, *, backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class KeyNotFoundError(StoreError):
    """The requested key (or its collection) does not exist."""


class ConnectionFailedError(StoreError):
    """The backend could not be reached."""


class DeadlineExceededError(ConnectionFailedError):
    """The caller's deadline expired or was cancelled before completion."""


class ValidationFailure(ValueError):
    """Malformed input rejected before any backend call."""


class InvalidCardNumberError(ValidationFailure):
    """The presented card bytes produced an empty canonical number."""
