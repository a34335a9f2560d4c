"""
Embedded-file storage backend.

Each namespace lives in its own sqlite file (``<base_dir>/<namespace>.db``)
and each collection is a table inside it. Engines are opened lazily on the
first access to a namespace and kept until ``close()``.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from sqlalchemy import (
    Column,
    LargeBinary,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    inspect,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from cardgate.errors import ConnectionFailedError, KeyNotFoundError, StoreError
from cardgate.kv import Deadline, normalize_namespace

logger = logging.getLogger(__name__)

BACKEND_NAME = "file"

# sqlite result codes meaning the database file could not be used at all;
# anything else (schema, SQL) is a plain StoreError.
UNAVAILABLE_ERROR_PREFIXES = (
    "SQLITE_BUSY",
    "SQLITE_LOCKED",
    "SQLITE_CANTOPEN",
    "SQLITE_IOERR",
    "SQLITE_FULL",
    "SQLITE_READONLY",
    "SQLITE_NOTADB",
    "SQLITE_CORRUPT",
)


def _create_engine(path: str) -> Engine:
    return create_engine(
        f"sqlite:///{path}",
        future=True,
        connect_args={"check_same_thread": False},
    )


def table_name(collection: str) -> str:
    """
    sqlite table names are case-insensitive and reserve the ``sqlite_``
    prefix, so collections are stored under a hex-encoded name.
    """
    return "c_" + collection.encode("utf-8").hex()


def _collection_table(collection: str, metadata: MetaData) -> Table:
    return Table(
        table_name(collection),
        metadata,
        Column("key", String, primary_key=True),
        Column("value", LargeBinary, nullable=False),
    )


def _apply_deadline(conn: Connection, deadline: Optional[Deadline]) -> None:
    if deadline is None:
        return
    deadline.check(BACKEND_NAME)
    remaining = deadline.remaining()
    if remaining is not None:
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(remaining * 1000)}")


def _is_unavailable(err: OperationalError) -> bool:
    name = getattr(err.orig, "sqlite_errorname", "") or ""
    return name.startswith(UNAVAILABLE_ERROR_PREFIXES)


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except OperationalError as err:
        if _is_unavailable(err):
            raise ConnectionFailedError(str(err), backend=BACKEND_NAME) from err
        raise StoreError(str(err), backend=BACKEND_NAME) from err
    except SQLAlchemyError as err:
        raise StoreError(str(err), backend=BACKEND_NAME) from err


@dataclass
class NamespaceHandle:
    """Open engine for one namespace file plus the collection tables seen so far."""

    path: str
    engine: Engine
    metadata: MetaData = field(default_factory=MetaData)
    tables: Dict[str, Table] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def find_table(self, conn: Connection, collection: str) -> Optional[Table]:
        """Return the table for an existing collection, or None."""
        table = self.tables.get(collection)
        if table is not None:
            return table
        if not inspect(conn).has_table(table_name(collection)):
            return None
        with self.lock:
            table = self.tables.get(collection)
            if table is None:
                table = _collection_table(collection, self.metadata)
                self.tables[collection] = table
            return table

    def ensure_table(
        self, collection: str, deadline: Optional[Deadline] = None
    ) -> Table:
        """Return the collection table, creating it on first write."""
        table = self.tables.get(collection)
        if table is not None:
            return table
        with self.lock:
            table = self.tables.get(collection)
            if table is not None:
                return table
            table = _collection_table(collection, self.metadata)
            try:
                with self.engine.begin() as conn:
                    _apply_deadline(conn, deadline)
                    table.create(conn, checkfirst=True)
            except Exception:
                self.metadata.remove(table)
                raise
            self.tables[collection] = table
            return table


class FileKVStore:
    """
    sqlite-backed store: namespace = file, collection = table.

    The handle map is read without locking; creating a handle takes
    ``_handles_lock`` and re-checks the map so racing first accesses share
    a single engine.
    """

    backend_name = BACKEND_NAME

    def __init__(self, base_dir: str):
        if not base_dir:
            raise ValueError("base_dir is required for FileKVStore")
        try:
            os.makedirs(base_dir, mode=0o755, exist_ok=True)
        except OSError as err:
            raise ConnectionFailedError(
                f"failed to create base directory {base_dir}: {err}",
                backend=BACKEND_NAME,
            ) from err
        self.base_dir = base_dir
        self._handles: Dict[str, NamespaceHandle] = {}
        self._handles_lock = threading.Lock()

    def _handle(self, namespace: str) -> NamespaceHandle:
        handle = self._handles.get(namespace)
        if handle is not None:
            return handle

        with self._handles_lock:
            # Another thread may have opened it while we waited.
            handle = self._handles.get(namespace)
            if handle is not None:
                return handle

            path = os.path.join(self.base_dir, f"{namespace}.db")
            engine = _create_engine(path)
            try:
                with engine.connect():
                    pass
            except SQLAlchemyError as err:
                engine.dispose()
                raise ConnectionFailedError(
                    f"failed to open database {path}: {err}",
                    backend=BACKEND_NAME,
                ) from err
            handle = NamespaceHandle(path=path, engine=engine)
            self._handles[namespace] = handle
            logger.info("Opened namespace %s at %s", namespace, path)
            return handle

    def get(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        handle = self._handle(normalize_namespace(namespace))
        with _translate_errors(), handle.engine.connect() as conn:
            _apply_deadline(conn, deadline)
            table = handle.find_table(conn, collection)
            if table is None:
                raise KeyNotFoundError(key, backend=BACKEND_NAME)
            value = conn.execute(
                select(table.c.value).where(table.c.key == key)
            ).scalar_one_or_none()
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
        handle = self._handle(normalize_namespace(namespace))
        with _translate_errors():
            table = handle.ensure_table(collection, deadline)
            stmt = sqlite_insert(table).values(key=key, value=bytes(value))
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.key],
                set_={"value": stmt.excluded.value},
            )
            with handle.engine.begin() as conn:
                _apply_deadline(conn, deadline)
                conn.execute(stmt)

    def delete(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        handle = self._handle(normalize_namespace(namespace))
        with _translate_errors(), handle.engine.begin() as conn:
            _apply_deadline(conn, deadline)
            table = handle.find_table(conn, collection)
            if table is None:
                raise KeyNotFoundError(key, backend=BACKEND_NAME)
            result = conn.execute(delete(table).where(table.c.key == key))
            if result.rowcount == 0:
                raise KeyNotFoundError(key, backend=BACKEND_NAME)

    def exists(
        self,
        namespace: str,
        collection: str,
        key: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        handle = self._handle(normalize_namespace(namespace))
        with _translate_errors(), handle.engine.connect() as conn:
            _apply_deadline(conn, deadline)
            table = handle.find_table(conn, collection)
            if table is None:
                return False
            found = conn.execute(
                select(table.c.key).where(table.c.key == key)
            ).first()
        return found is not None

    def ping(self, *, deadline: Optional[Deadline] = None) -> None:
        engine = _create_engine(os.path.join(self.base_dir, ".ping.db"))
        try:
            with engine.connect() as conn:
                _apply_deadline(conn, deadline)
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as err:
            raise ConnectionFailedError(str(err), backend=BACKEND_NAME) from err
        finally:
            engine.dispose()

    def close(self) -> None:
        """Dispose every namespace engine, raising the first failure at the end."""
        first_error: Optional[StoreError] = None
        with self._handles_lock:
            for namespace, handle in list(self._handles.items()):
                try:
                    handle.engine.dispose()
                except Exception as err:
                    logger.warning("Failed to close namespace %s: %s", namespace, err)
                    if first_error is None:
                        first_error = StoreError(
                            f"failed to close database {handle.path}: {err}",
                            backend=BACKEND_NAME,
                        )
                        first_error.__cause__ = err
                del self._handles[namespace]
        if first_error is not None:
            raise first_error

    @property
    def open_namespaces(self) -> list[str]:
        return list(self._handles)
