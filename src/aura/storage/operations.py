"""Transaction-scoped operations on the collections of one transaction."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

from ..errors import DataError, InvalidAccessError
from ..utils.logging import get_logger
from .engine import MISSING, CollectionHandle, EngineTransaction, Request, evaluate_key_path
from .pending import pending_result, settle

logger = get_logger(__name__)


class OperationHandle:
    """Thin facade routing every operation through one engine transaction.

    Every method takes the collection name first and returns an
    ``asyncio.Future``.  Usage errors (unknown collection, invalid key, write
    in a read-only transaction, a finished transaction) raise immediately.

    Warning:
        Do not await anything but these futures while the transaction is
        open.  An unrelated await leaves the transaction without pending
        requests, it commits, and the next call raises
        :class:`~aura.errors.TransactionInactiveError`.
    """

    def __init__(self, transaction: EngineTransaction):
        self._transaction = transaction
        self._collections: Dict[str, CollectionHandle] = {}

    @property
    def scope(self) -> Tuple[str, ...]:
        return self._transaction.scope

    @property
    def mode(self) -> str:
        return self._transaction.mode

    def _collection(self, name: str) -> CollectionHandle:
        handle = self._collections.get(name)
        if handle is None:
            handle = self._transaction.collection(name)
            self._collections[name] = handle
        return handle

    def _track(self, request: Request, on_result=None) -> "asyncio.Future[Any]":
        future = pending_result(request, on_result)
        future.add_done_callback(_observe)
        return future

    # -- writes -----------------------------------------------------------
    def add(self, collection_name: str, data: MutableMapping[str, Any]) -> "asyncio.Future[Any]":
        """Insert *data*; fails with ``ConstraintError`` if the key exists.

        For an auto-keyed collection whose key field is absent or ``None``,
        the record is sent without the field and the generated key is written
        into *data* once the request succeeds.  A failed request leaves
        *data* untouched.
        """
        return self._write(collection_name, data, overwrite=False)

    def put(self, collection_name: str, data: MutableMapping[str, Any]) -> "asyncio.Future[Any]":
        """Insert or replace *data*; same auto-key handling as :meth:`add`."""
        return self._write(collection_name, data, overwrite=True)

    def _write(self, name: str, data: MutableMapping[str, Any], overwrite: bool) -> "asyncio.Future[Any]":
        store = self._collection(name)
        key_path = store.key_path
        if store.auto_key and isinstance(key_path, str) and _key_missing(data, key_path):
            payload = _without_key(data, key_path)
            request = store.put(payload) if overwrite else store.add(payload)
            return self._track(request, on_result=lambda key: _assign_key(data, key_path, key))
        request = store.put(data) if overwrite else store.add(data)
        return self._track(request)

    def put_all(self, collection_name: str, items: Iterable[MutableMapping[str, Any]]) -> "asyncio.Future[List[Any]]":
        """Put every item; resolves to the list of keys in input order."""
        futures = [self.put(collection_name, item) for item in items]
        return asyncio.gather(*futures)

    # -- reads ------------------------------------------------------------
    def get_by_key(self, collection_name: str, key: Any) -> "asyncio.Future[Optional[Any]]":
        return self._track(self._collection(collection_name).get(key))

    def get_by_index(self, collection_name: str, index_name: str, value: Any) -> "asyncio.Future[Optional[Any]]":
        index = self._collection(collection_name).index(index_name)
        return self._track(index.get(value))

    def get_all(self, collection_name: str) -> "asyncio.Future[List[Any]]":
        return self._track(self._collection(collection_name).get_all())

    def get_all_by_index(self, collection_name: str, index_name: str, value: Any) -> "asyncio.Future[List[Any]]":
        if value is None:
            raise DataError("An index value is required")
        index = self._collection(collection_name).index(index_name)
        return self._track(index.get_all(value))

    def count(self, collection_name: str) -> "asyncio.Future[int]":
        return self._track(self._collection(collection_name).count())

    # -- deletes ----------------------------------------------------------
    def delete_by_key(self, collection_name: str, key: Any) -> "asyncio.Future[None]":
        return self._track(self._collection(collection_name).delete(key))

    def delete_by_index(self, collection_name: str, index_name: str, value: Any) -> "asyncio.Future[bool]":
        """Delete the record whose unique index entry equals *value*.

        Resolves to ``True`` when a record was removed.

        Raises:
            InvalidAccessError: If the index is not unique.
            ReadOnlyError: If the transaction is read-only.
        """
        store = self._collection(collection_name)
        self._transaction._ensure_writable()
        index = store.index(index_name)
        if not index.unique:
            raise InvalidAccessError(
                f"delete_by_index needs a unique index; {collection_name}.{index_name} is not. "
                "Use delete_all_by_index instead."
            )
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_observe)
        lookup = index.get_key(value)

        def on_key(request: Request) -> None:
            if request.result is None:
                settle(future, result=False)
                return
            removal = _forward(future, lambda: store.delete(request.result))
            removal.on_success = lambda _: settle(future, result=True)
            removal.on_error = lambda failed: settle(future, error=failed.error)

        lookup.on_success = on_key
        lookup.on_error = lambda failed: settle(future, error=failed.error)
        return future

    def delete_all_by_index(self, collection_name: str, index_name: str, value: Any) -> "asyncio.Future[int]":
        """Delete every record whose *index_name* entry equals *value*.

        Walks a cursor bounded to *value*; each delete settles before the
        cursor advances.  Resolves to the number of deleted records.

        Raises:
            DataError: If *value* is None.
            ReadOnlyError: If the transaction is read-only.
        """
        if value is None:
            raise DataError("An index value is required")
        index = self._collection(collection_name).index(index_name)
        self._transaction._ensure_writable()
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_observe)
        deleted = 0

        def fail(request: Request) -> None:
            settle(future, error=request.error)

        def on_cursor(request: Request) -> None:
            cursor = request.result
            if cursor is None:
                logger.info("Deleted %d record(s) from %s where %s = %r", deleted, collection_name, index_name, value)
                settle(future, result=deleted)
                return

            def on_deleted(_: Request) -> None:
                nonlocal deleted
                deleted += 1
                _forward(future, cursor.continue_)

            removal = _forward(future, cursor.delete)
            removal.on_success = on_deleted
            removal.on_error = fail

        scan = index.open_cursor(value)
        scan.on_success = on_cursor
        scan.on_error = fail
        return future

    def clear(self, collection_name: str) -> "asyncio.Future[None]":
        return self._track(self._collection(collection_name).clear())

    delete_all = clear


def _observe(future: asyncio.Future) -> None:
    # Failures also abort the transaction, which is where they surface.
    if not future.cancelled() and future.exception() is not None:
        logger.debug("Operation failed: %r", future.exception())


def _forward(future: asyncio.Future, call: Callable[[], Any]) -> Any:
    """Run an engine call from inside a handler, failing *future* if it raises.

    The exception still propagates so the engine aborts the transaction.
    """
    try:
        return call()
    except Exception as exc:
        settle(future, error=exc)
        raise


def _key_missing(data: Mapping[str, Any], key_path: str) -> bool:
    value = evaluate_key_path(data, key_path)
    return value is MISSING or value is None


def _without_key(data: Mapping[str, Any], key_path: str) -> Dict[str, Any]:
    payload = copy.deepcopy(dict(data))
    *parents, leaf = key_path.split(".")
    target: Any = payload
    for part in parents:
        target = target.get(part) if isinstance(target, dict) else None
    if isinstance(target, dict):
        target.pop(leaf, None)
    return payload


def _assign_key(data: MutableMapping[str, Any], key_path: str, key: Any) -> None:
    *parents, leaf = key_path.split(".")
    target: Any = data
    for part in parents:
        branch = target.get(part)
        if not isinstance(branch, dict):
            branch = {}
            target[part] = branch
        target = branch
    target[leaf] = key
