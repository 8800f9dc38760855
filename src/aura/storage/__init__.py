"""Transactional object-store package.

This package coordinates atomic, multi-collection transactions against an
asynchronous, event-driven key-value engine:

- `engine`: Event-driven object-store engine over SQLite (the storage boundary)
- `schema`: Static collection and index declarations
- `migrations`: Applies a schema inside the engine's upgrade callback
- `connection`: Single-flight connection lifecycle
- `pending`: Bridges engine requests to ``asyncio`` futures
- `operations`: Transaction-scoped operation handle
- `transaction`: Runs a unit of work inside one engine transaction
- `store`: Facade wrapping single operations in one-shot transactions

Architecture:
    Every engine transaction commits on its own once no request is pending.
    Units of work must therefore only await operation futures while the
    transaction is open; preparation (file reads, hashing) happens before.

Usage:
    For one-shot operations:
        from aura.storage import Store, ObjectStoreEngine
        store = Store(ObjectStoreEngine(), schema)
        book_id = await store.add("book", {"title": "Dune"})

    For atomic multi-collection work:
        async def work(ops):
            book_id = await ops.add("book", book)
            await ops.put_all("chapter", chapters)
            return book_id
        await store.execute(["book", "chapter"], TransactionMode.READ_WRITE, work)
"""
from .connection import ConnectionManager, ConnectionState
from .engine import ObjectStoreEngine
from .operations import OperationHandle
from .pending import pending_result
from .schema import CollectionDescriptor, IndexDescriptor, SchemaDescriptor
from .store import READ_ONLY, READ_WRITE, Store, create_store
from .transaction import Transaction, TransactionCoordinator, TransactionMode, TransactionState

__all__ = [
    "CollectionDescriptor",
    "ConnectionManager",
    "ConnectionState",
    "IndexDescriptor",
    "ObjectStoreEngine",
    "OperationHandle",
    "READ_ONLY",
    "READ_WRITE",
    "SchemaDescriptor",
    "Store",
    "Transaction",
    "TransactionCoordinator",
    "TransactionMode",
    "TransactionState",
    "create_store",
    "pending_result",
]
