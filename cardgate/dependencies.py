"""
Store construction and dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from cardgate.cards import CardRepository, CardService, KVCardRepository, MongoCardRepository
from cardgate.config import BackendType, Settings, get_settings
from cardgate.file_store import FileKVStore
from cardgate.kv import InMemoryKVStore, KVStore
from cardgate.mongo_store import MongoKVStore
from cardgate.redis_store import RedisKVStore

logger = logging.getLogger(__name__)

_kv_store: KVStore | None = None
_card_service: CardService | None = None


def build_kv_store(settings: Settings) -> KVStore:
    """
    Create the storage backend selected by ``settings.kv_backend``.

    Raises ``ValueError`` when the selected backend is missing its URI and
    ``ConnectionFailedError`` when the backend cannot be reached.
    """
    if settings.use_in_memory_backends:
        return InMemoryKVStore()

    backend = BackendType(settings.kv_backend)
    if backend == BackendType.MONGODB:
        if not settings.mongodb_uri:
            raise ValueError("MongoDB URI is required (set MONGODB_URI)")
        return MongoKVStore(settings.mongodb_uri)
    if backend == BackendType.REDIS:
        if not settings.redis_uri:
            raise ValueError("Redis URI is required (set REDIS_URI)")
        return RedisKVStore(
            settings.redis_uri,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )
    if backend == BackendType.FILE:
        return FileKVStore(settings.kv_file_path)
    raise ValueError(f"unsupported backend type: {settings.kv_backend}")


def build_card_repository(store: KVStore) -> CardRepository:
    if isinstance(store, MongoKVStore):
        return MongoCardRepository(store.client)
    return KVCardRepository(store)


def get_kv_store() -> KVStore:
    """
    Return a singleton store so backend connections are shared across requests.
    """
    global _kv_store
    if _kv_store:
        return _kv_store

    settings = get_settings()
    _kv_store = build_kv_store(settings)
    logger.info("KV store initialized (backend: %s)", _kv_store.backend_name)
    return _kv_store


def get_card_service() -> CardService:
    global _card_service
    if _card_service:
        return _card_service
    _card_service = CardService(build_card_repository(get_kv_store()))
    return _card_service


def close_kv_store() -> None:
    """Close and forget the singleton store."""
    global _kv_store, _card_service
    store = _kv_store
    _kv_store = None
    _card_service = None
    if store is not None:
        store.close()
