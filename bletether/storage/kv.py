"""Durable string-keyed storage shared by the foreground and watcher processes."""
from __future__ import annotations

import contextlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set, Tuple, Union

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, delete, event, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from bletether.errors import StorageError

logger = logging.getLogger(__name__)

KIND_STRING = "string"
KIND_SET = "set"
KIND_LIST = "list"

ListMutator = Callable[[List[str]], List[str]]
SetMutator = Callable[[Set[str]], Set[str]]
StringMutator = Callable[[Optional[str]], Optional[str]]


class KeyValueStore(Protocol):
    """Storage contract used by :class:`PairingRegistry` and :class:`LogStore`.

    Every method blocks; async callers go through ``asyncio.to_thread``.
    Failures raise :class:`StorageError`.
    """

    def get_string(self, key: str) -> Optional[str]: ...

    def set_string(self, key: str, value: str) -> None: ...

    def update_string(self, key: str, mutator: StringMutator) -> Optional[str]: ...

    def get_string_set(self, key: str) -> Optional[Set[str]]: ...

    def set_string_set(self, key: str, values: Set[str]) -> None: ...

    def update_set(self, key: str, mutator: SetMutator) -> Set[str]: ...

    def get_string_list(self, key: str) -> Optional[List[str]]: ...

    def set_string_list(self, key: str, values: List[str]) -> None: ...

    def update_list(self, key: str, mutator: ListMutator) -> List[str]: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> Set[str]: ...


def _check_kind(key: str, stored: str, expected: str) -> None:
    if stored != expected:
        raise StorageError(f"key {key!r} holds a {stored}, not a {expected}")


# ----------------------------------------------------------------------
# SQLite via SQLAlchemy
# ----------------------------------------------------------------------
metadata = MetaData()

kv_entries = Table(
    "kv_entries",
    metadata,
    Column("key", String(512), primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("value", Text, nullable=False),
)


def _sqlite_url(target: Union[str, Path]) -> Tuple[str, bool]:
    text = str(target)
    if "://" in text:
        return text, text in ("sqlite://", "sqlite:///:memory:")
    if text == ":memory:":
        return "sqlite://", True
    path = Path(text).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}", False


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; read-modify-write cycles
    # from two processes must take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlKeyValueStore:
    """Key-value store in a single SQLite table.

    Sets and lists are stored as JSON arrays tagged with their kind so a
    misread is reported instead of silently reinterpreted.
    """

    def __init__(self, target: Union[str, Path], *, busy_timeout: float = 30.0, echo: bool = False) -> None:
        url, in_memory = _sqlite_url(target)
        self.url = url
        if in_memory:
            self.engine = create_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            # a single shared connection cannot interleave transactions
            self._guard: Any = threading.Lock()
        else:
            self.engine = create_engine(url, echo=echo, connect_args={"timeout": busy_timeout})
            self._guard = contextlib.nullcontext()
        _use_immediate_transactions(self.engine)
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"cannot initialise storage at {url}: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self._guard:
                with self.engine.begin() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def _read(self, conn: Connection, key: str, kind: str) -> Optional[Any]:
        row = conn.execute(select(kv_entries.c.kind, kv_entries.c.value).where(kv_entries.c.key == key)).first()
        if row is None:
            return None
        _check_kind(key, row.kind, kind)
        try:
            return json.loads(row.value)
        except ValueError as exc:
            raise StorageError(f"corrupted value under {key!r}: {exc}") from exc

    def _write(self, conn: Connection, key: str, kind: str, value: Any) -> None:
        encoded = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        stmt = sqlite_insert(kv_entries).values(key=key, kind=kind, value=encoded)
        stmt = stmt.on_conflict_do_update(
            index_elements=[kv_entries.c.key],
            set_={"kind": stmt.excluded.kind, "value": stmt.excluded.value},
        )
        conn.execute(stmt)

    # strings ----------------------------------------------------------
    def get_string(self, key: str) -> Optional[str]:
        with self._transaction() as conn:
            return self._read(conn, key, KIND_STRING)

    def set_string(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            self._write(conn, key, KIND_STRING, value)

    def update_string(self, key: str, mutator: StringMutator) -> Optional[str]:
        """Read-modify-write under one transaction; a ``None`` result removes the key."""
        with self._transaction() as conn:
            current = self._read(conn, key, KIND_STRING)
            updated = mutator(current)
            if updated is None:
                if current is not None:
                    conn.execute(delete(kv_entries).where(kv_entries.c.key == key))
            elif updated != current:
                self._write(conn, key, KIND_STRING, updated)
        return updated

    # sets -------------------------------------------------------------
    def get_string_set(self, key: str) -> Optional[Set[str]]:
        with self._transaction() as conn:
            value = self._read(conn, key, KIND_SET)
        return None if value is None else set(value)

    def set_string_set(self, key: str, values: Set[str]) -> None:
        with self._transaction() as conn:
            self._write(conn, key, KIND_SET, sorted(values))

    def update_set(self, key: str, mutator: SetMutator) -> Set[str]:
        with self._transaction() as conn:
            current = set(self._read(conn, key, KIND_SET) or ())
            updated = set(mutator(set(current)))
            if updated != current:
                self._write(conn, key, KIND_SET, sorted(updated))
        return updated

    # lists ------------------------------------------------------------
    def get_string_list(self, key: str) -> Optional[List[str]]:
        with self._transaction() as conn:
            value = self._read(conn, key, KIND_LIST)
        return None if value is None else list(value)

    def set_string_list(self, key: str, values: List[str]) -> None:
        with self._transaction() as conn:
            self._write(conn, key, KIND_LIST, list(values))

    def update_list(self, key: str, mutator: ListMutator) -> List[str]:
        with self._transaction() as conn:
            current = list(self._read(conn, key, KIND_LIST) or ())
            updated = list(mutator(list(current)))
            self._write(conn, key, KIND_LIST, updated)
        return updated

    # keys -------------------------------------------------------------
    def remove(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute(delete(kv_entries).where(kv_entries.c.key == key))

    def keys(self, prefix: str = "") -> Set[str]:
        with self._transaction() as conn:
            rows = conn.execute(select(kv_entries.c.key)).scalars().all()
        return {key for key in rows if key.startswith(prefix)}


# ----------------------------------------------------------------------
# Process-local store
# ----------------------------------------------------------------------
class MemoryKeyValueStore:
    """Dictionary-backed store. Not shared across processes."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Any]] = {}
        self._lock = threading.RLock()

    def _read(self, key: str, kind: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        _check_kind(key, item[0], kind)
        return item[1]

    def get_string(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key, KIND_STRING)

    def set_string(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = (KIND_STRING, value)

    def update_string(self, key: str, mutator: StringMutator) -> Optional[str]:
        with self._lock:
            updated = mutator(self._read(key, KIND_STRING))
            if updated is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (KIND_STRING, updated)
            return updated

    def get_string_set(self, key: str) -> Optional[Set[str]]:
        with self._lock:
            value = self._read(key, KIND_SET)
            return None if value is None else set(value)

    def set_string_set(self, key: str, values: Set[str]) -> None:
        with self._lock:
            self._data[key] = (KIND_SET, frozenset(values))

    def update_set(self, key: str, mutator: SetMutator) -> Set[str]:
        with self._lock:
            current = set(self._read(key, KIND_SET) or ())
            updated = set(mutator(set(current)))
            self._data[key] = (KIND_SET, frozenset(updated))
            return updated

    def get_string_list(self, key: str) -> Optional[List[str]]:
        with self._lock:
            value = self._read(key, KIND_LIST)
            return None if value is None else list(value)

    def set_string_list(self, key: str, values: List[str]) -> None:
        with self._lock:
            self._data[key] = (KIND_LIST, tuple(values))

    def update_list(self, key: str, mutator: ListMutator) -> List[str]:
        with self._lock:
            current = list(self._read(key, KIND_LIST) or ())
            updated = list(mutator(current))
            self._data[key] = (KIND_LIST, tuple(updated))
            return updated

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> Set[str]:
        with self._lock:
            return {key for key in self._data if key.startswith(prefix)}


__all__ = [
    "KeyValueStore",
    "SqlKeyValueStore",
    "MemoryKeyValueStore",
    "kv_entries",
]
