"""Public entry point of the object store."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, List, MutableMapping, Optional, Union

from ..config import StoreConfig, load_store_config
from .connection import ConnectionManager
from .engine import EngineConnection, ObjectStoreEngine
from .schema import SchemaDescriptor
from .transaction import TransactionCoordinator, TransactionMode, UnitOfWork

READ_ONLY = TransactionMode.READ_ONLY
READ_WRITE = TransactionMode.READ_WRITE


class Store:
    """Facade wrapping single operations in one-shot transactions.

    Every convenience method is ``execute(name, mode, lambda ops: ops.<op>(name, ...))``.
    Use :meth:`execute` directly to group several operations atomically.
    """

    def __init__(self, engine: ObjectStoreEngine, schema: SchemaDescriptor, *, reset: bool = False):
        self.engine = engine
        self.schema = schema
        self.connections = ConnectionManager(engine, schema, reset=reset)
        self._coordinator = TransactionCoordinator(self.connections)

    def connect(self) -> "asyncio.Future[EngineConnection]":
        return self.connections.connect()

    def close(self) -> None:
        self.connections.close()

    async def execute(
        self,
        names: Union[str, Iterable[str]],
        mode: Union[TransactionMode, str],
        unit_of_work: UnitOfWork,
    ) -> Any:
        return await self._coordinator.execute(names, mode, unit_of_work)

    transaction = execute

    async def add(self, collection_name: str, data: MutableMapping[str, Any]) -> Any:
        return await self.execute(collection_name, READ_WRITE, lambda ops: ops.add(collection_name, data))

    async def put(self, collection_name: str, data: MutableMapping[str, Any]) -> Any:
        return await self.execute(collection_name, READ_WRITE, lambda ops: ops.put(collection_name, data))

    async def put_all(self, collection_name: str, items: Iterable[MutableMapping[str, Any]]) -> List[Any]:
        items = list(items)
        return await self.execute(collection_name, READ_WRITE, lambda ops: ops.put_all(collection_name, items))

    async def get_by_key(self, collection_name: str, key: Any) -> Optional[Any]:
        return await self.execute(collection_name, READ_ONLY, lambda ops: ops.get_by_key(collection_name, key))

    async def get_by_index(self, collection_name: str, index_name: str, value: Any) -> Optional[Any]:
        return await self.execute(
            collection_name, READ_ONLY, lambda ops: ops.get_by_index(collection_name, index_name, value)
        )

    async def get_all(self, collection_name: str) -> List[Any]:
        return await self.execute(collection_name, READ_ONLY, lambda ops: ops.get_all(collection_name))

    async def get_all_by_index(self, collection_name: str, index_name: str, value: Any) -> List[Any]:
        return await self.execute(
            collection_name, READ_ONLY, lambda ops: ops.get_all_by_index(collection_name, index_name, value)
        )

    async def delete_by_key(self, collection_name: str, key: Any) -> None:
        await self.execute(collection_name, READ_WRITE, lambda ops: ops.delete_by_key(collection_name, key))

    async def delete_by_index(self, collection_name: str, index_name: str, value: Any) -> bool:
        return await self.execute(
            collection_name, READ_WRITE, lambda ops: ops.delete_by_index(collection_name, index_name, value)
        )

    async def delete_all_by_index(self, collection_name: str, index_name: str, value: Any) -> int:
        return await self.execute(
            collection_name, READ_WRITE, lambda ops: ops.delete_all_by_index(collection_name, index_name, value)
        )

    async def clear(self, collection_name: str) -> None:
        await self.execute(collection_name, READ_WRITE, lambda ops: ops.clear(collection_name))

    delete_all = clear

    async def count(self, collection_name: str) -> int:
        return await self.execute(collection_name, READ_ONLY, lambda ops: ops.count(collection_name))


def create_store(
    schema: SchemaDescriptor,
    config: Optional[StoreConfig] = None,
    *,
    quota: Optional[int] = None,
) -> Store:
    """Build a :class:`Store` over a fresh engine configured from *config*.

    Falls back to :func:`~aura.config.load_store_config` when *config* is None.
    """

    config = config or load_store_config()
    engine = ObjectStoreEngine(config.database_root, settle_ticks=config.settle_ticks, quota=quota)
    return Store(engine, schema, reset=config.dev_reset)
