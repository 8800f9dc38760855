"""Event-driven object-store engine backed by SQLite.

This module is the storage-engine boundary the rest of the package talks to.
It reproduces the request/transaction model of a browser object store on top
of ``sqlite3`` and the running ``asyncio`` loop:

- Every read or write is a :class:`Request` that completes on a later loop
  iteration by invoking its ``on_success`` or ``on_error`` handler.
- Transactions on one database run one at a time, in creation order.
- A transaction commits by itself once it has had no outstanding request for
  ``settle_ticks`` consecutive loop iterations.  Requests issued after that
  point raise :class:`TransactionInactiveError` synchronously.
- A failed request aborts its transaction after its error handler ran, and
  every still-queued request of an aborted transaction fails with
  :class:`AbortError`.

Usage:
    engine = ObjectStoreEngine()
    request = engine.open("Aura", 1)
    request.on_upgrade_needed = lambda event: event.database.create_collection("book", "id", True)
    request.on_success = lambda req: ...

Warning:
    Awaiting anything other than a request of the same transaction (timers,
    file reads, executor work) leaves the transaction idle, and it commits
    underneath the caller.  Prepare data before opening the transaction.
"""
from __future__ import annotations

import asyncio
import json
import math
import sqlite3
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..config import DEFAULT_SETTLE_TICKS
from ..errors import (
    AbortError,
    ConstraintError,
    DataCloneError,
    DataError,
    InvalidAccessError,
    InvalidStateError,
    NotFoundError,
    OperationError,
    QuotaExceededError,
    ReadOnlyError,
    StorageError,
    TransactionInactiveError,
    VersionError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)

READ_ONLY = "readonly"
READ_WRITE = "readwrite"
VERSION_CHANGE = "versionchange"

KeyPath = Union[str, Tuple[str, ...]]
Handler = Optional[Callable[..., None]]

MISSING = object()

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    name TEXT PRIMARY KEY,
    value TEXT
);
CREATE TABLE IF NOT EXISTS collections (
    name TEXT PRIMARY KEY,
    key_path TEXT NOT NULL,
    auto_key INTEGER NOT NULL DEFAULT 0,
    next_key INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS indexes (
    collection TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    is_unique INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (collection, name)
);
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    pk TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (collection, pk)
);
CREATE TABLE IF NOT EXISTS index_entries (
    collection TEXT NOT NULL,
    index_name TEXT NOT NULL,
    index_key TEXT NOT NULL,
    pk TEXT NOT NULL,
    PRIMARY KEY (collection, index_name, index_key, pk)
);
CREATE INDEX IF NOT EXISTS idx_index_entries_pk ON index_entries (collection, pk);
"""


# ---------------------------------------------------------------------------
# Keys and values
# ---------------------------------------------------------------------------

def _canonical_key(key: Any) -> Any:
    """Validate *key* and return its JSON-ready canonical form.

    Integral floats collapse to ints so ``7`` and ``7.0`` address the same
    record.  Arrays become lists.

    Raises:
        DataError: If *key* is not a number, string or array of keys.
    """
    if isinstance(key, bool) or key is None:
        raise DataError(f"Invalid key: {key!r}")
    if isinstance(key, int):
        return key
    if isinstance(key, float):
        if math.isnan(key):
            raise DataError("Invalid key: NaN")
        if key.is_integer():
            return int(key)
        return key
    if isinstance(key, str):
        return key
    if isinstance(key, (list, tuple)):
        return [_canonical_key(part) for part in key]
    raise DataError(f"Invalid key type: {type(key).__name__}")


def _encode(canonical: Any) -> str:
    return json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)


def encode_key(key: Any) -> str:
    return _encode(_canonical_key(key))


def decode_key(text: str) -> Any:
    return _public_key(json.loads(text))


def _public_key(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_public_key(part) for part in value)
    return value


def _is_valid_key(value: Any) -> bool:
    try:
        _canonical_key(value)
    except DataError:
        return False
    return True


def _evaluate(value: Any, path: str) -> Any:
    current = value
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def evaluate_key_path(value: Any, key_path: KeyPath) -> Any:
    """Return the value at *key_path*, or ``MISSING`` when any part is absent."""

    if isinstance(key_path, str):
        return _evaluate(value, key_path)
    parts = [_evaluate(value, path) for path in key_path]
    if any(part is MISSING for part in parts):
        return MISSING
    return parts


def _inject(value: dict, path: str, key: Any) -> None:
    parts = path.split(".")
    target = value
    for part in parts[:-1]:
        branch = target.get(part)
        if not isinstance(branch, dict):
            branch = {}
            target[part] = branch
        target = branch
    target[parts[-1]] = key


def _clone(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value, ensure_ascii=False))
    except (TypeError, ValueError) as exc:
        raise DataCloneError(f"Value cannot be stored: {exc}") from exc


def _load_path(raw: str) -> KeyPath:
    path = json.loads(raw)
    if isinstance(path, list):
        return tuple(path)
    return path


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@dataclass
class _IndexMeta:
    name: str
    path: KeyPath
    unique: bool


@dataclass
class _CollectionMeta:
    name: str
    key_path: KeyPath
    auto_key: bool
    indexes: Dict[str, _IndexMeta]


@dataclass(frozen=True)
class VersionChangeEvent:
    old_version: int
    new_version: int


@dataclass(frozen=True)
class UpgradeEvent:
    """Payload handed to ``OpenRequest.on_upgrade_needed``."""

    database: "EngineConnection"
    transaction: "EngineTransaction"
    old_version: int
    new_version: int


class TransactionState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class Request:
    """One asynchronous engine request.

    Exactly one of ``on_success`` / ``on_error`` is invoked with the request
    once it settles.  A cursor request settles again after every
    ``Cursor.continue_()``.
    """

    def __init__(self, source: Any, transaction: "EngineTransaction", operation: Callable[[sqlite3.Connection], Any]):
        self.source = source
        self.transaction = transaction
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.done = False
        self.on_success: Handler = None
        self.on_error: Handler = None
        self._operation = operation

    def _succeed(self, result: Any) -> None:
        self.done = True
        self.result = result
        self.error = None
        if self.on_success is not None:
            self.on_success(self)

    def _fail(self, error: BaseException) -> None:
        self.done = True
        self.result = None
        self.error = error
        if self.on_error is not None:
            self.on_error(self)


class OpenRequest:
    """Request returned by :meth:`ObjectStoreEngine.open`."""

    def __init__(self, name: str, version: Optional[int]):
        self.name = name
        self.version = version
        self.result: Optional[EngineConnection] = None
        self.error: Optional[BaseException] = None
        self.done = False
        self.on_upgrade_needed: Handler = None
        self.on_success: Handler = None
        self.on_error: Handler = None
        self.on_blocked: Handler = None

    def _succeed(self, connection: "EngineConnection") -> None:
        self.done = True
        self.result = connection
        _invoke(self.on_success, self)

    def _fail(self, error: BaseException) -> None:
        self.done = True
        self.error = error
        _invoke(self.on_error, self)

    def _block(self, event: VersionChangeEvent) -> None:
        _invoke(self.on_blocked, event)


def _invoke(handler: Handler, *args: Any) -> None:
    if handler is None:
        return
    try:
        handler(*args)
    except Exception:
        logger.exception("Engine event handler %r raised", handler)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class EngineTransaction:
    """A scoped unit of atomic work against one database."""

    def __init__(
        self,
        backing: "_Backing",
        connection: "EngineConnection",
        scope: Tuple[str, ...],
        mode: str,
        loop: asyncio.AbstractEventLoop,
    ):
        self._backing = backing
        self._loop = loop
        self.connection = connection
        self.scope = scope
        self.mode = mode
        self.state = TransactionState.PENDING
        self.error: Optional[BaseException] = None
        self.on_complete: Handler = None
        self.on_error: Handler = None
        self.on_abort: Handler = None
        self._queue: Deque[Request] = deque()
        self._outstanding = 0
        self._finishing = False
        self._step_handle: Optional[asyncio.Handle] = None
        self._settle_handle: Optional[asyncio.Handle] = None
        self._on_start: Optional[Callable[[], None]] = None

    # -- public API -------------------------------------------------------
    @property
    def finished(self) -> bool:
        return self.state in (TransactionState.COMMITTED, TransactionState.ABORTED)

    @property
    def active(self) -> bool:
        return not self.finished and not self._finishing

    def collection(self, name: str) -> "CollectionHandle":
        if self.finished:
            raise InvalidStateError("Transaction has finished")
        if self.mode == VERSION_CHANGE:
            if name not in self._backing.catalog:
                raise NotFoundError(f"No collection named {name!r}")
        elif name not in self.scope:
            raise NotFoundError(f"Collection {name!r} is not in this transaction's scope")
        return CollectionHandle(self, name)

    def abort(self) -> None:
        """Abort the transaction, rolling back every write it made."""

        if self.finished:
            raise InvalidStateError("Cannot abort a finished transaction")
        self._abort(AbortError("Transaction was aborted"))

    # -- request plumbing -------------------------------------------------
    def _ensure_active(self) -> None:
        if not self.active:
            raise TransactionInactiveError(
                "Transaction is no longer active; it committed or aborted before this request"
            )

    def _ensure_writable(self) -> None:
        self._ensure_active()
        if self.mode == READ_ONLY:
            raise ReadOnlyError("Write attempted in a read-only transaction")

    def _issue(self, source: Any, operation: Callable[[sqlite3.Connection], Any]) -> Request:
        self._ensure_active()
        request = Request(source, self, operation)
        self._enqueue(request)
        return request

    def _reissue(self, request: Request, operation: Callable[[sqlite3.Connection], Any]) -> None:
        self._ensure_active()
        request.done = False
        request._operation = operation
        self._enqueue(request)

    def _enqueue(self, request: Request) -> None:
        self._queue.append(request)
        self._outstanding += 1
        self._cancel_settle()
        if self.state is TransactionState.RUNNING:
            self._schedule_step()

    def _schedule_step(self) -> None:
        if self._step_handle is None:
            self._step_handle = self._loop.call_soon(self._step)

    def _step(self) -> None:
        self._step_handle = None
        if self.state is not TransactionState.RUNNING or not self._queue:
            return
        request = self._queue.popleft()
        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = request._operation(self._backing.conn)
        except StorageError as exc:
            error = exc
        except sqlite3.Error as exc:
            error = OperationError(f"Engine failure: {exc}", name="UnknownError")
        self._outstanding -= 1

        try:
            if error is None:
                request._succeed(result)
            else:
                request._fail(error)
        except Exception as exc:
            logger.exception("Request handler raised inside transaction %s", self.scope)
            self._abort(AbortError(f"Request handler raised: {exc}"))
            return

        if error is not None:
            _invoke(self.on_error, self)
            self._abort(error)
            return
        if self.state is not TransactionState.RUNNING:
            return
        if self._queue:
            self._schedule_step()
        if self._outstanding == 0:
            self._schedule_settle()

    # -- auto-commit ------------------------------------------------------
    def _schedule_settle(self) -> None:
        self._cancel_settle()
        self._settle_handle = self._loop.call_soon(self._settle, self._backing.settle_ticks)

    def _cancel_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    def _settle(self, remaining: int) -> None:
        self._settle_handle = None
        if self.state is not TransactionState.RUNNING or self._outstanding:
            return
        if remaining > 1:
            self._settle_handle = self._loop.call_soon(self._settle, remaining - 1)
            return
        self._finishing = True
        self._commit()

    # -- lifecycle --------------------------------------------------------
    def _start(self) -> None:
        self.state = TransactionState.RUNNING
        try:
            self._backing.conn.execute("BEGIN")
        except sqlite3.Error as exc:
            self._abort(AbortError(f"Could not begin transaction: {exc}"))
            return
        if self._on_start is not None:
            try:
                self._on_start()
            except Exception as exc:
                logger.warning("Upgrade callback failed: %s", exc)
                error = AbortError(f"Upgrade callback raised: {exc}")
                error.__cause__ = exc
                self._abort(error)
                return
            if self.state is not TransactionState.RUNNING:
                return
        if self._queue:
            self._schedule_step()
        else:
            self._schedule_settle()

    def _commit(self) -> None:
        try:
            if self.mode != READ_ONLY:
                self._backing.check_quota()
            self._backing.conn.execute("COMMIT")
        except QuotaExceededError as exc:
            self._abort(exc)
            return
        except sqlite3.Error as exc:
            self._abort(AbortError(f"Commit failed: {exc}"))
            return
        self.state = TransactionState.COMMITTED
        logger.debug("Transaction over %s committed", self.scope or "<schema>")
        self._backing.transaction_finished(self)
        _invoke(self.on_complete, self)

    def _abort(self, error: BaseException) -> None:
        if self.finished:
            return
        was_running = self.state is TransactionState.RUNNING
        self.state = TransactionState.ABORTED
        self.error = error
        self._finishing = True
        self._cancel_settle()
        if self._step_handle is not None:
            self._step_handle.cancel()
            self._step_handle = None
        if was_running:
            try:
                self._backing.conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                logger.warning("Rollback failed: %s", exc)
        else:
            self._backing.discard_pending(self)

        stranded = list(self._queue)
        self._queue.clear()
        self._outstanding = 0
        for request in stranded:
            try:
                request._fail(AbortError("Transaction was aborted"))
            except Exception:
                logger.exception("Request error handler raised during abort")

        logger.debug("Transaction over %s aborted: %s", self.scope or "<schema>", error)
        if was_running:
            self._backing.transaction_finished(self)
        _invoke(self.on_abort, self)


# ---------------------------------------------------------------------------
# Collections, indexes and cursors
# ---------------------------------------------------------------------------

class CollectionHandle:
    """Transaction-bound view of one collection."""

    def __init__(self, transaction: EngineTransaction, name: str):
        self.transaction = transaction
        self.name = name

    def _meta(self) -> _CollectionMeta:
        meta = self.transaction._backing.catalog.get(self.name)
        if meta is None:
            raise InvalidStateError(f"Collection {self.name!r} has been deleted")
        return meta

    @property
    def key_path(self) -> KeyPath:
        return self._meta().key_path

    @property
    def auto_key(self) -> bool:
        return self._meta().auto_key

    @property
    def index_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._meta().indexes))

    # -- writes -----------------------------------------------------------
    def add(self, value: Any) -> Request:
        return self._write(value, overwrite=False)

    def put(self, value: Any) -> Request:
        return self._write(value, overwrite=True)

    def _write(self, value: Any, overwrite: bool) -> Request:
        self.transaction._ensure_writable()
        meta = self._meta()
        if not isinstance(value, Mapping):
            raise DataError(f"Collection {self.name!r} stores mappings, got {type(value).__name__}")
        record = _clone(value)
        key = evaluate_key_path(record, meta.key_path)
        if key is MISSING:
            if not meta.auto_key:
                raise DataError(f"Value has no key at {meta.key_path!r} and {self.name!r} does not generate keys")
            canonical = None
        else:
            canonical = _canonical_key(key)
        backing = self.transaction._backing
        return self.transaction._issue(
            self, lambda conn: backing.store_record(conn, meta, record, canonical, overwrite)
        )

    def delete(self, key: Any) -> Request:
        self.transaction._ensure_writable()
        pk = encode_key(key)
        backing = self.transaction._backing
        return self.transaction._issue(self, lambda conn: backing.delete_record(conn, self.name, pk))

    def clear(self) -> Request:
        self.transaction._ensure_writable()
        backing = self.transaction._backing
        return self.transaction._issue(self, lambda conn: backing.clear_collection(conn, self.name))

    # -- reads ------------------------------------------------------------
    def get(self, key: Any) -> Request:
        self.transaction._ensure_active()
        pk = encode_key(key)

        def operation(conn: sqlite3.Connection) -> Any:
            row = conn.execute(
                "SELECT value FROM records WHERE collection = ? AND pk = ?", (self.name, pk)
            ).fetchone()
            return json.loads(row[0]) if row else None

        return self.transaction._issue(self, operation)

    def get_all(self, key: Any = None) -> Request:
        self.transaction._ensure_active()
        pk = None if key is None else encode_key(key)

        def operation(conn: sqlite3.Connection) -> List[Any]:
            if pk is None:
                rows = conn.execute(
                    "SELECT value FROM records WHERE collection = ? ORDER BY rowid", (self.name,)
                )
            else:
                rows = conn.execute(
                    "SELECT value FROM records WHERE collection = ? AND pk = ?", (self.name, pk)
                )
            return [json.loads(row[0]) for row in rows]

        return self.transaction._issue(self, operation)

    def count(self, key: Any = None) -> Request:
        self.transaction._ensure_active()
        pk = None if key is None else encode_key(key)

        def operation(conn: sqlite3.Connection) -> int:
            if pk is None:
                row = conn.execute("SELECT COUNT(*) FROM records WHERE collection = ?", (self.name,)).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM records WHERE collection = ? AND pk = ?", (self.name, pk)
                ).fetchone()
            return int(row[0])

        return self.transaction._issue(self, operation)

    # -- indexes ----------------------------------------------------------
    def index(self, name: str) -> "IndexHandle":
        if self.transaction.finished:
            raise InvalidStateError("Transaction has finished")
        meta = self._meta()
        if name not in meta.indexes:
            raise NotFoundError(f"Collection {self.name!r} has no index {name!r}")
        return IndexHandle(self, meta.indexes[name])

    def create_index(self, name: str, path: Union[str, Iterable[str]], unique: bool = False) -> "IndexHandle":
        """Create an index; only valid inside an upgrade."""

        self.transaction.connection._require_upgrade()
        meta = self._meta()
        if name in meta.indexes:
            raise ConstraintError(f"Collection {self.name!r} already has an index {name!r}")
        key_path: KeyPath = path if isinstance(path, str) else tuple(path)
        index = _IndexMeta(name=name, path=key_path, unique=bool(unique))
        self.transaction._backing.create_index(meta, index)
        return IndexHandle(self, index)

    def delete_index(self, name: str) -> None:
        self.transaction.connection._require_upgrade()
        meta = self._meta()
        if name not in meta.indexes:
            raise NotFoundError(f"Collection {self.name!r} has no index {name!r}")
        self.transaction._backing.delete_index(meta, name)


class IndexHandle:
    """Transaction-bound view of one secondary index."""

    def __init__(self, collection: CollectionHandle, meta: _IndexMeta):
        self.collection = collection
        self.name = meta.name
        self.path = meta.path
        self.unique = meta.unique

    @property
    def _transaction(self) -> EngineTransaction:
        return self.collection.transaction

    def _select(self, columns: str, value: Any, tail: str = "") -> Tuple[str, Tuple[Any, ...]]:
        sql = (
            f"SELECT {columns} FROM index_entries e "
            "JOIN records r ON r.collection = e.collection AND r.pk = e.pk "
            "WHERE e.collection = ? AND e.index_name = ?"
        )
        params: Tuple[Any, ...] = (self.collection.name, self.name)
        if value is not None:
            sql += " AND e.index_key = ?"
            params += (value,)
        return sql + tail, params

    def get(self, value: Any) -> Request:
        self._transaction._ensure_active()
        index_key = encode_key(value)

        def operation(conn: sqlite3.Connection) -> Any:
            sql, params = self._select("r.value", index_key, " ORDER BY r.rowid LIMIT 1")
            row = conn.execute(sql, params).fetchone()
            return json.loads(row[0]) if row else None

        return self._transaction._issue(self, operation)

    def get_key(self, value: Any) -> Request:
        self._transaction._ensure_active()
        index_key = encode_key(value)

        def operation(conn: sqlite3.Connection) -> Any:
            sql, params = self._select("r.pk", index_key, " ORDER BY r.rowid LIMIT 1")
            row = conn.execute(sql, params).fetchone()
            return decode_key(row[0]) if row else None

        return self._transaction._issue(self, operation)

    def get_all(self, value: Any = None) -> Request:
        self._transaction._ensure_active()
        index_key = None if value is None else encode_key(value)

        def operation(conn: sqlite3.Connection) -> List[Any]:
            sql, params = self._select("r.value", index_key, " ORDER BY e.index_key, r.rowid")
            return [json.loads(row[0]) for row in conn.execute(sql, params)]

        return self._transaction._issue(self, operation)

    def count(self, value: Any = None) -> Request:
        self._transaction._ensure_active()
        index_key = None if value is None else encode_key(value)

        def operation(conn: sqlite3.Connection) -> int:
            sql, params = self._select("COUNT(*)", index_key)
            return int(conn.execute(sql, params).fetchone()[0])

        return self._transaction._issue(self, operation)

    def open_cursor(self, value: Any = None) -> Request:
        """Open a forward cursor over entries equal to *value* (all when None).

        The request settles with a :class:`Cursor`, and again after each
        ``continue_()``; it settles with ``None`` once exhausted.
        """

        self._transaction._ensure_active()
        index_key = None if value is None else encode_key(value)
        cursor = Cursor(self, index_key)
        request = self._transaction._issue(self, cursor._advance)
        cursor._request = request
        return request


class Cursor:
    """Forward cursor over an index, positioned on one record at a time."""

    def __init__(self, index: IndexHandle, index_key: Optional[str]):
        self._index = index
        self._index_key = index_key
        self._request: Optional[Request] = None
        self._position: Tuple[str, int] = ("", 0)
        self._got_value = False
        self.key: Any = None
        self.primary_key: Any = None
        self.value: Any = None

    def _advance(self, conn: sqlite3.Connection) -> Optional["Cursor"]:
        last_key, last_rowid = self._position
        sql, params = self._index._select(
            "e.index_key, r.rowid, r.pk, r.value",
            self._index_key,
            " AND (e.index_key > ? OR (e.index_key = ? AND r.rowid > ?))"
            " ORDER BY e.index_key, r.rowid LIMIT 1",
        )
        row = conn.execute(sql, params + (last_key, last_key, last_rowid)).fetchone()
        if row is None:
            self._got_value = False
            return None
        self._position = (row[0], row[1])
        self.key = decode_key(row[0])
        self.primary_key = decode_key(row[2])
        self.value = json.loads(row[3])
        self._got_value = True
        return self

    def continue_(self) -> None:
        if not self._got_value or self._request is None:
            raise InvalidStateError("Cursor is exhausted or already advancing")
        self._got_value = False
        self._index._transaction._reissue(self._request, self._advance)

    def delete(self) -> Request:
        transaction = self._index._transaction
        transaction._ensure_writable()
        if not self._got_value:
            raise InvalidStateError("Cursor is not positioned on a record")
        name = self._index.collection.name
        pk = encode_key(self.primary_key)
        backing = transaction._backing
        return transaction._issue(self, lambda conn: backing.delete_record(conn, name, pk))


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

class EngineConnection:
    """An open handle on one database at a fixed version."""

    def __init__(self, backing: "_Backing", version: int):
        self._backing = backing
        self.name = backing.name
        self.version = version
        self.closed = False
        self.on_version_change: Handler = None
        self._upgrade_transaction: Optional[EngineTransaction] = None

    @property
    def collection_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._backing.catalog))

    def transaction(self, names: Union[str, Iterable[str]], mode: str = READ_ONLY) -> EngineTransaction:
        if self.closed:
            raise InvalidStateError(f"Connection to {self.name!r} is closed")
        if self._upgrade_transaction is not None:
            raise InvalidStateError("An upgrade is still running on this connection")
        if mode not in (READ_ONLY, READ_WRITE):
            raise ValueError(f"Unsupported transaction mode: {mode!r}")
        scope = (names,) if isinstance(names, str) else tuple(dict.fromkeys(names))
        if not scope:
            raise InvalidAccessError("A transaction needs at least one collection")
        missing = [name for name in scope if name not in self._backing.catalog]
        if missing:
            raise NotFoundError(f"Unknown collections: {', '.join(missing)}")
        transaction = EngineTransaction(self._backing, self, scope, mode, asyncio.get_running_loop())
        self._backing.enqueue_transaction(transaction)
        return transaction

    def _require_upgrade(self) -> EngineTransaction:
        if self._upgrade_transaction is None or self._upgrade_transaction.finished:
            raise InvalidStateError("Schema changes are only allowed during an upgrade")
        return self._upgrade_transaction

    def create_collection(self, name: str, key_path: Union[str, Iterable[str]], auto_key: bool = False) -> CollectionHandle:
        transaction = self._require_upgrade()
        if name in self._backing.catalog:
            raise ConstraintError(f"Collection {name!r} already exists")
        path: KeyPath = key_path if isinstance(key_path, str) else tuple(key_path)
        if auto_key and (not isinstance(path, str) or not path):
            raise InvalidAccessError("Auto-generated keys need a single, non-empty key path")
        self._backing.create_collection(_CollectionMeta(name=name, key_path=path, auto_key=bool(auto_key), indexes={}))
        return CollectionHandle(transaction, name)

    def delete_collection(self, name: str) -> None:
        self._require_upgrade()
        if name not in self._backing.catalog:
            raise NotFoundError(f"No collection named {name!r}")
        self._backing.delete_collection(name)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._backing.connection_closed(self)


# ---------------------------------------------------------------------------
# Backing database
# ---------------------------------------------------------------------------

class _Backing:
    """SQLite storage, catalog and transaction scheduler for one database name."""

    def __init__(self, name: str, path: Optional[Path], settle_ticks: int, quota: Optional[int]):
        self.name = name
        self.path = path
        self.settle_ticks = settle_ticks
        self.quota = quota
        self.conn = sqlite3.connect(str(path) if path else ":memory:", isolation_level=None)
        self.conn.executescript(_BOOTSTRAP_SQL)
        self.version = self._read_version()
        self.catalog: Dict[str, _CollectionMeta] = {}
        self.load_catalog()
        self.connections: List[EngineConnection] = []
        self._pending: Deque[EngineTransaction] = deque()
        self._running: Optional[EngineTransaction] = None
        self._start_scheduled = False
        self._upgrade_in_progress = False
        self._blocked_upgrade: Optional[Tuple[OpenRequest, int, asyncio.AbstractEventLoop]] = None
        self._deferred_opens: Deque[Tuple[OpenRequest, asyncio.AbstractEventLoop]] = deque()

    # -- catalog ----------------------------------------------------------
    def _read_version(self) -> int:
        row = self.conn.execute("SELECT value FROM meta WHERE name = 'version'").fetchone()
        return int(row[0]) if row else 0

    def load_catalog(self) -> None:
        catalog: Dict[str, _CollectionMeta] = {}
        for name, key_path, auto_key in self.conn.execute("SELECT name, key_path, auto_key FROM collections"):
            catalog[name] = _CollectionMeta(name=name, key_path=_load_path(key_path), auto_key=bool(auto_key), indexes={})
        for collection, name, path, unique in self.conn.execute("SELECT collection, name, path, is_unique FROM indexes"):
            if collection in catalog:
                catalog[collection].indexes[name] = _IndexMeta(name=name, path=_load_path(path), unique=bool(unique))
        self.catalog = catalog

    def create_collection(self, meta: _CollectionMeta) -> None:
        self.conn.execute(
            "INSERT INTO collections (name, key_path, auto_key, next_key) VALUES (?, ?, ?, 1)",
            (meta.name, json.dumps(meta.key_path), int(meta.auto_key)),
        )
        self.catalog[meta.name] = meta

    def delete_collection(self, name: str) -> None:
        for table, column in (("records", "collection"), ("index_entries", "collection"),
                              ("indexes", "collection"), ("collections", "name")):
            self.conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (name,))
        self.catalog.pop(name, None)

    def create_index(self, meta: _CollectionMeta, index: _IndexMeta) -> None:
        self.conn.execute(
            "INSERT INTO indexes (collection, name, path, is_unique) VALUES (?, ?, ?, ?)",
            (meta.name, index.name, json.dumps(index.path), int(index.unique)),
        )
        rows = self.conn.execute("SELECT pk, value FROM records WHERE collection = ?", (meta.name,)).fetchall()
        for pk, raw in rows:
            entry = _index_entry(json.loads(raw), index)
            if entry is None:
                continue
            if index.unique and self._unique_conflict(meta.name, index.name, entry, pk):
                raise ConstraintError(f"Existing records violate unique index {index.name!r}")
            self.conn.execute(
                "INSERT OR IGNORE INTO index_entries (collection, index_name, index_key, pk) VALUES (?, ?, ?, ?)",
                (meta.name, index.name, entry, pk),
            )
        meta.indexes[index.name] = index

    def delete_index(self, meta: _CollectionMeta, name: str) -> None:
        self.conn.execute("DELETE FROM indexes WHERE collection = ? AND name = ?", (meta.name, name))
        self.conn.execute("DELETE FROM index_entries WHERE collection = ? AND index_name = ?", (meta.name, name))
        meta.indexes.pop(name, None)

    def write_version(self, version: int) -> None:
        self.conn.execute(
            "INSERT INTO meta (name, value) VALUES ('version', ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
            (str(version),),
        )
        self.version = version

    # -- records ----------------------------------------------------------
    def _unique_conflict(self, collection: str, index_name: str, index_key: str, pk: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM index_entries WHERE collection = ? AND index_name = ? "
            "AND index_key = ? AND pk != ? LIMIT 1",
            (collection, index_name, index_key, pk),
        ).fetchone()
        return row is not None

    def store_record(self, conn: sqlite3.Connection, meta: _CollectionMeta, record: dict, canonical: Any, overwrite: bool) -> Any:
        if canonical is None:
            row = conn.execute("SELECT next_key FROM collections WHERE name = ?", (meta.name,)).fetchone()
            canonical = int(row[0])
            _inject(record, meta.key_path, canonical)
            conn.execute("UPDATE collections SET next_key = ? WHERE name = ?", (canonical + 1, meta.name))
        elif meta.auto_key and isinstance(canonical, (int, float)) and math.isfinite(canonical):
            conn.execute(
                "UPDATE collections SET next_key = MAX(next_key, ?) WHERE name = ?",
                (int(math.floor(canonical)) + 1, meta.name),
            )

        pk = _encode(canonical)
        exists = conn.execute(
            "SELECT 1 FROM records WHERE collection = ? AND pk = ?", (meta.name, pk)
        ).fetchone()
        if exists and not overwrite:
            raise ConstraintError(f"Key {_public_key(canonical)!r} already exists in {meta.name!r}")

        entries = []
        for index in meta.indexes.values():
            entry = _index_entry(record, index)
            if entry is None:
                continue
            if index.unique and self._unique_conflict(meta.name, index.name, entry, pk):
                raise ConstraintError(
                    f"Unique index {index.name!r} on {meta.name!r} already holds {json.loads(entry)!r}"
                )
            entries.append((meta.name, index.name, entry, pk))

        conn.execute(
            "INSERT INTO records (collection, pk, value) VALUES (?, ?, ?) "
            "ON CONFLICT(collection, pk) DO UPDATE SET value = excluded.value",
            (meta.name, pk, json.dumps(record, ensure_ascii=False)),
        )
        conn.execute("DELETE FROM index_entries WHERE collection = ? AND pk = ?", (meta.name, pk))
        conn.executemany(
            "INSERT INTO index_entries (collection, index_name, index_key, pk) VALUES (?, ?, ?, ?)",
            entries,
        )
        return _public_key(canonical)

    def delete_record(self, conn: sqlite3.Connection, collection: str, pk: str) -> None:
        conn.execute("DELETE FROM records WHERE collection = ? AND pk = ?", (collection, pk))
        conn.execute("DELETE FROM index_entries WHERE collection = ? AND pk = ?", (collection, pk))

    def clear_collection(self, conn: sqlite3.Connection, collection: str) -> None:
        conn.execute("DELETE FROM records WHERE collection = ?", (collection,))
        conn.execute("DELETE FROM index_entries WHERE collection = ?", (collection,))

    def check_quota(self) -> None:
        if self.quota is None:
            return
        total = self.conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
        if total > self.quota:
            raise QuotaExceededError(f"Database {self.name!r} holds {total} records, quota is {self.quota}")

    # -- scheduling -------------------------------------------------------
    def enqueue_transaction(self, transaction: EngineTransaction) -> None:
        self._pending.append(transaction)
        self._maybe_start(transaction._loop)

    def discard_pending(self, transaction: EngineTransaction) -> None:
        try:
            self._pending.remove(transaction)
        except ValueError:
            pass

    def transaction_finished(self, transaction: EngineTransaction) -> None:
        if self._running is transaction:
            self._running = None
        self._maybe_start(transaction._loop)

    def _maybe_start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._running is None and self._pending and not self._start_scheduled:
            self._start_scheduled = True
            loop.call_soon(self._start_next)

    def _start_next(self) -> None:
        self._start_scheduled = False
        if self._running is not None or not self._pending:
            return
        transaction = self._pending.popleft()
        self._running = transaction
        transaction._start()

    # -- open / upgrade ---------------------------------------------------
    def handle_open(self, request: OpenRequest, loop: asyncio.AbstractEventLoop) -> None:
        if self._upgrade_in_progress:
            self._deferred_opens.append((request, loop))
            return
        version = request.version if request.version is not None else max(self.version, 1)
        if version < self.version:
            request._fail(VersionError(
                f"Requested version {version} is lower than the stored version {self.version}"
            ))
            return
        if version == self.version:
            connection = EngineConnection(self, version)
            self.connections.append(connection)
            request._succeed(connection)
            return

        self._upgrade_in_progress = True
        event = VersionChangeEvent(old_version=self.version, new_version=version)
        for other in list(self.connections):
            if not other.closed:
                _invoke(other.on_version_change, event)
        if any(not other.closed for other in self.connections):
            logger.warning("Upgrade of %s to version %d blocked by open connections", self.name, version)
            self._blocked_upgrade = (request, version, loop)
            request._block(event)
            return
        self._run_upgrade(request, version, loop)

    def _run_upgrade(self, request: OpenRequest, version: int, loop: asyncio.AbstractEventLoop) -> None:
        old_version = self.version
        connection = EngineConnection(self, version)
        self.connections.append(connection)
        transaction = EngineTransaction(self, connection, (), VERSION_CHANGE, loop)
        connection._upgrade_transaction = transaction

        def on_start() -> None:
            self.write_version(version)
            logger.info("Upgrading %s from version %d to %d", self.name, old_version, version)
            if request.on_upgrade_needed is not None:
                request.on_upgrade_needed(UpgradeEvent(connection, transaction, old_version, version))

        def on_complete(_: EngineTransaction) -> None:
            connection._upgrade_transaction = None
            self._upgrade_finished(loop)
            request._succeed(connection)

        def on_abort(tx: EngineTransaction) -> None:
            connection._upgrade_transaction = None
            self.version = self._read_version()
            self.load_catalog()
            connection.close()
            self._upgrade_finished(loop)
            request._fail(tx.error or AbortError("Upgrade aborted"))

        transaction._on_start = on_start
        transaction.on_complete = on_complete
        transaction.on_abort = on_abort
        self.enqueue_transaction(transaction)

    def _upgrade_finished(self, loop: asyncio.AbstractEventLoop) -> None:
        self._upgrade_in_progress = False
        deferred, self._deferred_opens = self._deferred_opens, deque()
        for request, request_loop in deferred:
            loop.call_soon(self.handle_open, request, request_loop)

    def connection_closed(self, connection: EngineConnection) -> None:
        try:
            self.connections.remove(connection)
        except ValueError:
            pass
        if self._blocked_upgrade is not None and not self.connections:
            request, version, loop = self._blocked_upgrade
            self._blocked_upgrade = None
            loop.call_soon(self._run_upgrade, request, version, loop)

    def close(self) -> None:
        self.conn.close()


def _index_entry(record: Any, index: _IndexMeta) -> Optional[str]:
    value = evaluate_key_path(record, index.path)
    if value is MISSING or not _is_valid_key(value):
        return None
    return encode_key(value)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ObjectStoreEngine:
    """Factory for databases, analogous to the browser's global engine object.

    Args:
        root: Directory holding one ``<name>.sqlite3`` file per database.
            ``None`` keeps every database in memory for the engine's lifetime.
        settle_ticks: Idle loop iterations before a transaction auto-commits.
        quota: Optional cap on records per database, enforced at commit.
    """

    def __init__(self, root: Optional[Path] = None, *, settle_ticks: int = DEFAULT_SETTLE_TICKS, quota: Optional[int] = None):
        if settle_ticks < 1:
            raise ValueError("settle_ticks must be at least 1")
        self.root = Path(root) if root is not None else None
        self.settle_ticks = settle_ticks
        self.quota = quota
        self._backings: Dict[str, _Backing] = {}

    def database_names(self) -> Tuple[str, ...]:
        names = set(self._backings)
        if self.root is not None and self.root.exists():
            names.update(path.stem for path in self.root.glob("*.sqlite3"))
        return tuple(sorted(names))

    def open(self, name: str, version: Optional[int] = None) -> OpenRequest:
        """Start opening *name*; the returned request settles on a later iteration."""

        if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version < 1):
            raise TypeError(f"Database version must be a positive integer, got {version!r}")
        loop = asyncio.get_running_loop()
        request = OpenRequest(name, version)
        loop.call_soon(self._process_open, request, loop)
        return request

    def _process_open(self, request: OpenRequest, loop: asyncio.AbstractEventLoop) -> None:
        try:
            backing = self._backing(request.name)
        except (OSError, sqlite3.Error) as exc:
            request._fail(OperationError(f"Cannot open storage for {request.name!r}: {exc}", name="UnknownError"))
            return
        backing.handle_open(request, loop)

    def _backing(self, name: str) -> _Backing:
        backing = self._backings.get(name)
        if backing is None:
            path = None
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
                path = self.root / f"{name}.sqlite3"
            backing = _Backing(name, path, self.settle_ticks, self.quota)
            self._backings[name] = backing
        return backing

    def shutdown(self) -> None:
        """Close every SQLite handle.  Open connections become unusable."""

        for backing in self._backings.values():
            backing.close()
        self._backings.clear()
