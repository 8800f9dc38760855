"""Tests for TransactionCoordinator.execute semantics."""

from __future__ import annotations

import asyncio
import logging

import pytest

from aura.errors import (
    AbortError,
    ConstraintError,
    InvalidAccessError,
    NotFoundError,
    QuotaExceededError,
    ReadOnlyError,
    TransactionInactiveError,
)
from aura.storage import CollectionDescriptor, ObjectStoreEngine, SchemaDescriptor, Store, TransactionMode

READ_WRITE = TransactionMode.READ_WRITE
READ_ONLY = TransactionMode.READ_ONLY


async def _counts(store: Store, *names: str):
    return [await store.count(name) for name in names]


def test_execute_returns_unit_of_work_result(sample_store: Store) -> None:
    async def work(ops):
        await ops.put("a", {"id": 1, "value": "x"})
        return "done"

    async def scenario():
        result = await sample_store.execute("a", READ_WRITE, work)
        return result, await sample_store.get_by_key("a", 1)

    result, record = asyncio.run(scenario())
    assert result == "done"
    assert record == {"id": 1, "value": "x"}


def test_synchronous_unit_of_work_is_supported(sample_store: Store) -> None:
    async def scenario():
        await sample_store.execute("a", "readwrite", lambda ops: ops.put("a", {"id": 1}))
        return await sample_store.count("a")

    assert asyncio.run(scenario()) == 1


def test_failed_unit_of_work_leaves_no_writes(sample_store: Store) -> None:
    async def work(ops):
        await ops.put("a", {"id": 1})
        await ops.put("b", {"id": 1})
        raise ValueError("validation failed")

    async def scenario():
        with pytest.raises(ValueError, match="validation failed") as excinfo:
            await sample_store.execute(["a", "b", "c"], READ_WRITE, work)
        return excinfo.value, await _counts(sample_store, "a", "b", "c")

    error, counts = asyncio.run(scenario())
    assert not isinstance(error, AbortError)
    assert counts == [0, 0, 0]


def test_error_raised_before_any_request_aborts_cleanly(sample_store: Store) -> None:
    def work(ops):
        raise KeyError("no input")

    async def scenario():
        with pytest.raises(KeyError):
            await sample_store.execute("a", READ_WRITE, work)
        # The store stays usable afterwards.
        await sample_store.put("a", {"id": 5})
        return await sample_store.count("a")

    assert asyncio.run(scenario()) == 1


def test_failed_request_propagates_engine_error(sample_store: Store) -> None:
    async def work(ops):
        await ops.add("a", {"id": 1})
        await ops.add("a", {"id": 1})

    async def scenario():
        with pytest.raises(ConstraintError):
            await sample_store.execute("a", READ_WRITE, work)
        return await sample_store.count("a")

    assert asyncio.run(scenario()) == 0


def test_unawaited_failing_request_still_aborts(sample_store: Store) -> None:
    def work(ops):
        ops.add("a", {"id": 1})
        ops.add("a", {"id": 1})
        return "returned"

    async def scenario():
        with pytest.raises(ConstraintError):
            await sample_store.execute("a", READ_WRITE, work)
        return await sample_store.count("a")

    assert asyncio.run(scenario()) == 0


def test_engine_abort_is_propagated() -> None:
    engine = ObjectStoreEngine(quota=2)
    store = Store(engine, SchemaDescriptor("q", 1, (CollectionDescriptor("a", "id"),)))

    async def scenario():
        with pytest.raises(QuotaExceededError):
            await store.put_all("a", [{"id": index} for index in range(3)])
        return await store.count("a")

    try:
        assert asyncio.run(scenario()) == 0
    finally:
        engine.shutdown()


def test_premature_commit_when_awaiting_unrelated_work(sample_store: Store) -> None:
    """Awaiting a timer mid-transaction commits it; the next call fails."""

    async def work(ops):
        await ops.put("a", {"id": 1})
        await asyncio.sleep(0.01)
        await ops.put("a", {"id": 2})

    async def scenario():
        with pytest.raises(TransactionInactiveError):
            await sample_store.execute("a", READ_WRITE, work)
        return await sample_store.get_all("a")

    # The first write was committed before the gap; the second never ran.
    assert asyncio.run(scenario()) == [{"id": 1}]


def test_preparing_before_execute_keeps_writes_atomic(sample_store: Store) -> None:
    async def prepare():
        await asyncio.sleep(0.01)
        return [{"id": 1}, {"id": 2}]

    async def scenario():
        records = await prepare()

        async def work(ops):
            for record in records:
                await ops.put("a", record)
            return len(records)

        written = await sample_store.execute("a", READ_WRITE, work)
        return written, await sample_store.count("a")

    assert asyncio.run(scenario()) == (2, 2)


def test_scope_and_mode_are_enforced(sample_store: Store) -> None:
    async def scenario():
        with pytest.raises(NotFoundError):
            await sample_store.execute("a", READ_WRITE, lambda ops: ops.put("b", {"id": 1}))
        with pytest.raises(ReadOnlyError):
            await sample_store.execute("a", READ_ONLY, lambda ops: ops.put("a", {"id": 1}))
        with pytest.raises(InvalidAccessError):
            await sample_store.execute([], READ_ONLY, lambda ops: None)
        with pytest.raises(ValueError):
            await sample_store.execute("a", "versionchange", lambda ops: None)
        return await sample_store.count("b")

    assert asyncio.run(scenario()) == 0


def test_concurrent_executes_share_the_connection(sample_store: Store) -> None:
    async def scenario():
        await asyncio.gather(*(sample_store.put("a", {"id": index}) for index in range(10)))
        return await sample_store.count("a")

    assert asyncio.run(scenario()) == 10


def test_cancelled_unit_of_work_leaves_no_writes(sample_schema) -> None:
    # A generous idle budget keeps the transaction open while the task is cancelled.
    engine = ObjectStoreEngine(settle_ticks=50)
    store = Store(engine, sample_schema)

    async def scenario():
        loop = asyncio.get_running_loop()
        reached = loop.create_future()
        gate = loop.create_future()

        async def work(ops):
            await ops.put("a", {"id": 1})
            await ops.put("b", {"id": 1})
            reached.set_result(None)
            await gate
            await ops.put("c", {"id": 1})

        task = asyncio.create_task(store.execute(["a", "b", "c"], READ_WRITE, work))
        await reached
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await _counts(store, "a", "b", "c")

    try:
        assert asyncio.run(scenario()) == [0, 0, 0]
    finally:
        engine.shutdown()


def test_store_is_usable_after_cancellation(sample_schema) -> None:
    engine = ObjectStoreEngine(settle_ticks=50)
    store = Store(engine, sample_schema)

    async def scenario():
        loop = asyncio.get_running_loop()
        reached = loop.create_future()

        async def work(ops):
            await ops.put("a", {"id": 1})
            reached.set_result(None)
            await loop.create_future()

        task = asyncio.create_task(store.execute("a", READ_WRITE, work))
        await reached
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await store.put("a", {"id": 2})
        return await store.get_all("a")

    try:
        assert asyncio.run(scenario()) == [{"id": 2}]
    finally:
        engine.shutdown()


def test_failed_unit_of_work_is_logged_with_its_reason(sample_store: Store, caplog) -> None:
    def work(ops):
        raise ValueError("validation failed")

    async def scenario():
        with pytest.raises(ValueError):
            await sample_store.execute("a", READ_WRITE, work)

    with caplog.at_level(logging.WARNING, logger="aura"):
        asyncio.run(scenario())
    assert "Unit of work failed: validation failed" in caplog.text


def test_cancel_while_waiting_for_commit_rolls_back(sample_schema) -> None:
    engine = ObjectStoreEngine(settle_ticks=50)
    store = Store(engine, sample_schema)

    async def scenario():
        reached = asyncio.get_running_loop().create_future()

        async def work(ops):
            await ops.put("a", {"id": 1})
            reached.set_result(None)
            return "written"

        task = asyncio.create_task(store.execute("a", READ_WRITE, work))
        await reached
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await store.count("a")

    try:
        assert asyncio.run(scenario()) == 0
    finally:
        engine.shutdown()
