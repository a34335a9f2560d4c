"""
Redis storage backend.

All namespaces share one client; keys are flattened to
``<namespace>:<collection>:<key>`` and stored without expiry.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import urlparse

import redis
from redis import exceptions as redis_exceptions

from cardgate.errors import (
    ConnectionFailedError,
    DeadlineExceededError,
    KeyNotFoundError,
    StoreError,
)
from cardgate.kv import Deadline, normalize_namespace

logger = logging.getLogger(__name__)

BACKEND_NAME = "redis"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 6379
CONNECT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class RedisParams:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    db: int = 0


def parse_redis_uri(uri: str) -> RedisParams:
    """
    Parse ``redis://[[user]:password@]host[:port][/db]``.

    Missing host or port fall back to ``localhost:6379``; a non-numeric or
    missing database path selects database 0.
    """
    if not uri:
        raise ValueError("Redis URI is required")
    try:
        parsed = urlparse(uri)
        port = parsed.port
    except ValueError as err:
        raise ValueError(f"invalid Redis URI: {err}") from err

    db = 0
    db_str = parsed.path.lstrip("/")
    if db_str.isdigit():
        db = int(db_str)

    return RedisParams(
        host=parsed.hostname or DEFAULT_HOST,
        port=port or DEFAULT_PORT,
        username=parsed.username or None,
        password=parsed.password or None,
        db=db,
    )


def build_key(namespace: str, collection: str, key: str) -> str:
    return f"{normalize_namespace(namespace)}:{collection}:{key}"


@contextlib.contextmanager
def _translate_errors(deadline: Optional[Deadline]) -> Iterator[None]:
    if deadline:
        deadline.check(BACKEND_NAME)
    try:
        yield
    except redis_exceptions.TimeoutError as err:
        raise DeadlineExceededError(str(err), backend=BACKEND_NAME) from err
    except redis_exceptions.ConnectionError as err:
        raise ConnectionFailedError(str(err), backend=BACKEND_NAME) from err
    except redis_exceptions.RedisError as err:
        raise StoreError(str(err), backend=BACKEND_NAME) from err


class RedisKVStore:
    """
    Redis-backed store sharing a single connection pool.

    redis-py has no per-command timeout. A deadline is checked before each
    command; the command itself is bounded by ``socket_timeout``, so a call
    can outlive a deadline shorter than the socket timeout by at most that
    much.
    """

    backend_name = BACKEND_NAME

    def __init__(self, uri: str, socket_timeout: Optional[float] = None):
        params = parse_redis_uri(uri)
        self.params = params
        self.client = redis.Redis(
            host=params.host,
            port=params.port,
            username=params.username,
            password=params.password,
            db=params.db,
            socket_timeout=socket_timeout,
            socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
        )
        try:
            self.client.ping()
        except redis_exceptions.RedisError as err:
            self.client.close()
            raise ConnectionFailedError(
                f"failed to connect to redis at {params.host}:{params.port}: {err}",
                backend=BACKEND_NAME,
            ) from err
        logger.info(
            "Connected to redis at %s:%s (db %s)", params.host, params.port, params.db
        )

    def get(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        with _translate_errors(deadline):
            value = self.client.get(build_key(namespace, collection, key))
        if value is None:
            raise KeyNotFoundError(key, backend=BACKEND_NAME)
        return bytes(value)

    def set(
        self,
        namespace: str,
        collection: str,
        key: str,
        value: bytes,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        with _translate_errors(deadline):
            self.client.set(build_key(namespace, collection, key), value)

    def delete(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        with _translate_errors(deadline):
            removed = self.client.delete(build_key(namespace, collection, key))
        if removed == 0:
            raise KeyNotFoundError(key, backend=BACKEND_NAME)

    def exists(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        with _translate_errors(deadline):
            count = self.client.exists(build_key(namespace, collection, key))
        return count > 0

    def ping(self, *, deadline: Optional[Deadline] = None) -> None:
        with _translate_errors(deadline):
            self.client.ping()

    def close(self) -> None:
        self.client.close()
