"""Tests for the event-driven SQLite engine."""

from __future__ import annotations

import asyncio

import pytest

from aura.errors import (
    AbortError,
    ConstraintError,
    DataCloneError,
    DataError,
    InvalidAccessError,
    InvalidStateError,
    NotFoundError,
    QuotaExceededError,
    ReadOnlyError,
    TransactionInactiveError,
    VersionError,
)
from aura.storage.engine import READ_ONLY, READ_WRITE, ObjectStoreEngine, TransactionState
from aura.storage.pending import pending_result


def _setup_books(event) -> None:
    books = event.database.create_collection("book", "id", auto_key=True)
    books.create_index("genre_id", "genre_id")
    books.create_index("hash", "hash", unique=True)
    event.database.create_collection("chapter", ("book_id", "id"))


async def _open(engine, name="db", version=1, setup=_setup_books):
    """Open *name* and return the connection (or raise the engine error).

    Args:
        engine: Engine under test.
        name: Database name.
        version: Requested version.
        setup: Upgrade callback receiving the upgrade event.

    Returns:
        The open :class:`EngineConnection`.
    """
    future = asyncio.get_running_loop().create_future()
    request = engine.open(name, version)
    request.on_upgrade_needed = setup
    request.on_success = lambda req: future.set_result(req.result)
    request.on_error = lambda req: future.set_exception(req.error)
    return await future


def _finished(transaction) -> asyncio.Future:
    future = asyncio.get_running_loop().create_future()
    transaction.on_complete = lambda tx: future.set_result("complete")
    transaction.on_abort = lambda tx: future.set_result(tx.error)
    return future


def test_open_creates_collections(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book")
        names = tx.collection("book").index_names
        await _finished(tx)
        return connection, names

    connection, names = asyncio.run(scenario())
    assert connection.version == 1
    assert connection.collection_names == ("book", "chapter")
    assert names == ("genre_id", "hash")


def test_auto_key_generates_increasing_ids(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        outcome = _finished(tx)
        books = tx.collection("book")
        first = pending_result(books.add({"title": "A"}))
        second = pending_result(books.add({"title": "B"}))
        bumped = pending_result(books.put({"id": 10, "title": "C"}))
        after = pending_result(books.add({"title": "D"}))
        keys = await asyncio.gather(first, second, bumped, after)
        assert await outcome == "complete"
        return keys

    assert asyncio.run(scenario()) == [1, 2, 10, 11]


def test_stored_value_is_a_copy(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        outcome = _finished(tx)
        record = {"title": "A", "tags": ["x"]}
        key = await pending_result(tx.collection("book").add(record))
        record["tags"].append("y")
        stored = await pending_result(tx.collection("book").get(key))
        await outcome
        return record, stored

    record, stored = asyncio.run(scenario())
    assert "id" not in record
    assert stored == {"title": "A", "tags": ["x"], "id": 1}


def test_composite_keys_round_trip_as_tuples(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("chapter", READ_WRITE)
        outcome = _finished(tx)
        chapters = tx.collection("chapter")
        key = await pending_result(chapters.put({"book_id": 7, "id": 1, "title": "One"}))
        by_list = await pending_result(chapters.get([7, 1]))
        by_float = await pending_result(chapters.get((7.0, 1)))
        await outcome
        return key, by_list, by_float

    key, by_list, by_float = asyncio.run(scenario())
    assert key == (7, 1)
    assert by_list["title"] == "One"
    assert by_float == by_list


def test_invalid_keys_and_values_raise_synchronously(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction(["book", "chapter"], READ_WRITE)
        with pytest.raises(DataError):
            tx.collection("book").get(None)
        with pytest.raises(DataError):
            tx.collection("book").put({"id": True})
        with pytest.raises(DataError):
            tx.collection("chapter").put({"book_id": 1})
        with pytest.raises(DataCloneError):
            tx.collection("book").put({"title": object()})
        await _finished(tx)

    asyncio.run(scenario())


def test_add_existing_key_fails_and_aborts(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        books = tx.collection("book")
        pending_result(books.add({"id": 1, "title": "A"}))
        duplicate = pending_result(books.add({"id": 1, "title": "B"}))
        stranded = pending_result(books.add({"id": 2, "title": "C"}))
        outcome = _finished(tx)
        with pytest.raises(ConstraintError):
            await duplicate
        with pytest.raises(AbortError):
            await stranded
        error = await outcome

        check = connection.transaction("book")
        count = await pending_result(check.collection("book").count())
        await _finished(check)
        return tx, error, count

    tx, error, count = asyncio.run(scenario())
    assert tx.state is TransactionState.ABORTED
    assert isinstance(error, ConstraintError)
    assert count == 0


def test_unique_index_rejects_duplicates(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        outcome = _finished(tx)
        books = tx.collection("book")
        pending_result(books.add({"title": "A", "hash": "h1"}))
        duplicate = pending_result(books.add({"title": "B", "hash": "h1"}))
        with pytest.raises(ConstraintError):
            await duplicate
        return await outcome

    assert isinstance(asyncio.run(scenario()), ConstraintError)


def test_transaction_commits_after_idle_ticks(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        await pending_result(tx.collection("book").add({"title": "A"}))
        await asyncio.sleep(0.01)
        assert tx.state is TransactionState.COMMITTED
        with pytest.raises(TransactionInactiveError):
            tx.collection("book").add({"title": "B"})

    asyncio.run(scenario())


def test_usage_errors(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        with pytest.raises(InvalidAccessError):
            connection.transaction([])
        with pytest.raises(NotFoundError):
            connection.transaction("missing")
        with pytest.raises(InvalidStateError):
            connection.create_collection("late", "id")

        tx = connection.transaction("book", READ_ONLY)
        with pytest.raises(ReadOnlyError):
            tx.collection("book").put({"title": "A"})
        with pytest.raises(NotFoundError):
            tx.collection("chapter")
        with pytest.raises(NotFoundError):
            tx.collection("book").index("missing")
        await _finished(tx)

        connection.close()
        with pytest.raises(InvalidStateError):
            connection.transaction("book")

    asyncio.run(scenario())


def test_transactions_run_in_creation_order(engine: ObjectStoreEngine) -> None:
    events = []

    async def scenario():
        connection = await _open(engine)
        first = connection.transaction("book", READ_WRITE)
        second = connection.transaction("book", READ_WRITE)
        pending_result(second.collection("book").put({"id": 1, "title": "second"}))
        pending_result(first.collection("book").put({"id": 1, "title": "first"}))
        first.on_complete = lambda tx: events.append("first")
        done = _finished(second)
        await done
        events.append("second")

        check = connection.transaction("book")
        record = await pending_result(check.collection("book").get(1))
        await _finished(check)
        return record

    record = asyncio.run(scenario())
    assert events == ["first", "second"]
    assert record["title"] == "second"


def test_explicit_abort_rolls_back(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        await pending_result(tx.collection("book").add({"title": "A"}))
        outcome = _finished(tx)
        tx.abort()
        error = await outcome
        with pytest.raises(InvalidStateError):
            tx.abort()

        check = connection.transaction("book")
        count = await pending_result(check.collection("book").count())
        await _finished(check)
        return error, count

    error, count = asyncio.run(scenario())
    assert isinstance(error, AbortError)
    assert count == 0


def test_cursor_walks_matching_entries(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        outcome = _finished(tx)
        books = tx.collection("book")
        for title, genre in (("A", 1), ("B", 2), ("C", 1), ("D", 1)):
            pending_result(books.add({"title": title, "genre_id": genre}))

        seen = []
        done = asyncio.get_running_loop().create_future()

        def on_cursor(request):
            cursor = request.result
            if cursor is None:
                done.set_result(seen)
                return
            seen.append((cursor.key, cursor.primary_key, cursor.value["title"]))
            cursor.continue_()

        scan = books.index("genre_id").open_cursor(1)
        scan.on_success = on_cursor
        result = await done
        await outcome
        return result

    assert asyncio.run(scenario()) == [(1, 1, "A"), (1, 3, "C"), (1, 4, "D")]


def test_quota_exceeded_aborts_on_commit() -> None:
    engine = ObjectStoreEngine(quota=1)

    async def scenario():
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        pending_result(tx.collection("book").add({"title": "A"}))
        pending_result(tx.collection("book").add({"title": "B"}))
        return await _finished(tx)

    try:
        assert isinstance(asyncio.run(scenario()), QuotaExceededError)
    finally:
        engine.shutdown()


def test_lower_version_is_rejected(engine: ObjectStoreEngine) -> None:
    async def scenario():
        connection = await _open(engine, version=2)
        connection.close()
        with pytest.raises(VersionError):
            await _open(engine, version=1)

    asyncio.run(scenario())


def test_failed_upgrade_keeps_previous_version(engine: ObjectStoreEngine) -> None:
    def broken(event):
        event.database.create_collection("extra", "id")
        raise RuntimeError("boom")

    async def scenario():
        connection = await _open(engine)
        connection.close()
        with pytest.raises(AbortError) as excinfo:
            await _open(engine, version=2, setup=broken)
        reopened = await _open(engine, version=1)
        return excinfo.value, reopened

    error, reopened = asyncio.run(scenario())
    assert isinstance(error.__cause__, RuntimeError)
    assert reopened.version == 1
    assert "extra" not in reopened.collection_names


def test_data_persists_under_root(tmp_path) -> None:
    async def write():
        engine = ObjectStoreEngine(tmp_path)
        connection = await _open(engine)
        tx = connection.transaction("book", READ_WRITE)
        outcome = _finished(tx)
        await pending_result(tx.collection("book").add({"title": "Kept"}))
        await outcome
        engine.shutdown()

    async def read():
        engine = ObjectStoreEngine(tmp_path)
        connection = await _open(engine, setup=None)
        tx = connection.transaction("book")
        outcome = _finished(tx)
        records = await pending_result(tx.collection("book").get_all())
        await outcome
        engine.shutdown()
        return engine, records

    asyncio.run(write())
    engine, records = asyncio.run(read())
    assert records == [{"title": "Kept", "id": 1}]
    assert (tmp_path / "db.sqlite3").exists()
    assert engine.database_names() == ("db",)
