"""
MongoDB storage backend.

Namespace maps to a database and collection to a collection. Each record
is a ``{"key": ..., "value": ...}`` document with a unique index on key.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator, Optional

import pymongo
from bson.binary import Binary
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from cardgate.errors import (
    ConnectionFailedError,
    DeadlineExceededError,
    KeyNotFoundError,
    StoreError,
)
from cardgate.kv import Deadline, normalize_namespace

logger = logging.getLogger(__name__)

BACKEND_NAME = "mongodb"
SERVER_SELECTION_TIMEOUT_MS = 10_000

# IndexAlreadyExists, IndexOptionsConflict, IndexKeySpecsConflict
DUPLICATE_INDEX_ERROR_CODES = frozenset({68, 85, 86})


def encode_value(value: bytes):
    """Store UTF-8 payloads as strings and anything else as BSON binary."""
    value = bytes(value)
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return Binary(value)


def decode_value(stored) -> bytes:
    if isinstance(stored, str):
        return stored.encode("utf-8")
    return bytes(stored)


@contextlib.contextmanager
def mongo_operation(deadline: Optional[Deadline]) -> Iterator[None]:
    """Run a driver call under the caller's deadline and map its errors."""
    remaining = None
    if deadline:
        deadline.check(BACKEND_NAME)
        remaining = deadline.remaining()
    try:
        with pymongo.timeout(remaining):
            yield
    except PyMongoError as err:
        if err.timeout:
            raise DeadlineExceededError(str(err), backend=BACKEND_NAME) from err
        if isinstance(err, ConnectionFailure):
            raise ConnectionFailedError(str(err), backend=BACKEND_NAME) from err
        raise StoreError(str(err), backend=BACKEND_NAME) from err


class MongoKVStore:
    """MongoDB-backed store. ``client`` is shared with the card repository."""

    backend_name = BACKEND_NAME

    def __init__(self, uri: str, client: Optional[MongoClient] = None):
        if not uri:
            raise ValueError("MongoDB URI is required")
        self.uri = uri
        try:
            self.client = client or MongoClient(
                uri,
                serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
                tz_aware=True,
            )
            self.client.admin.command("ping")
        except PyMongoError as err:
            raise ConnectionFailedError(
                f"failed to connect to MongoDB: {err}", backend=BACKEND_NAME
            ) from err
        logger.info("Connected to MongoDB")

    def _collection(self, namespace: str, collection: str) -> Collection:
        database = self.client.get_database(normalize_namespace(namespace))
        return database.get_collection(collection)

    def _ensure_index(self, coll: Collection) -> None:
        """Best-effort unique index on ``key``; only duplicate-index errors are ignored."""
        try:
            coll.create_index([("key", ASCENDING)], unique=True)
        except OperationFailure as err:
            if err.code not in DUPLICATE_INDEX_ERROR_CODES:
                raise
            logger.debug("Index on %s.key already present: %s", coll.name, err)

    def get(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        coll = self._collection(namespace, collection)
        with mongo_operation(deadline):
            self._ensure_index(coll)
            doc = coll.find_one({"key": key})
        if doc is None:
            raise KeyNotFoundError(key, backend=BACKEND_NAME)
        return decode_value(doc.get("value", ""))

    def set(
        self,
        namespace: str,
        collection: str,
        key: str,
        value: bytes,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        coll = self._collection(namespace, collection)
        with mongo_operation(deadline):
            self._ensure_index(coll)
            coll.update_one(
                {"key": key},
                {"$set": {"key": key, "value": encode_value(value)}},
                upsert=True,
            )

    def delete(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        coll = self._collection(namespace, collection)
        with mongo_operation(deadline):
            result = coll.delete_one({"key": key})
        if result.deleted_count == 0:
            raise KeyNotFoundError(key, backend=BACKEND_NAME)

    def exists(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        coll = self._collection(namespace, collection)
        with mongo_operation(deadline):
            count = coll.count_documents({"key": key}, limit=1)
        return count > 0

    def ping(self, *, deadline: Optional[Deadline] = None) -> None:
        try:
            with mongo_operation(deadline):
                self.client.admin.command("ping")
        except StoreError as err:
            if isinstance(err, ConnectionFailedError):
                raise
            raise ConnectionFailedError(str(err), backend=BACKEND_NAME) from err

    def close(self) -> None:
        self.client.close()
