"""Schema migration logic for the object store.

This module turns a :class:`SchemaDescriptor` into collections and indexes
while the engine runs its upgrade callback.  It isolates all schema concerns
from the connection manager.
"""
from __future__ import annotations

from typing import Set

from ..errors import SchemaError
from ..utils.logging import get_logger
from .engine import CollectionHandle, EngineConnection, UpgradeEvent
from .schema import CollectionDescriptor, SchemaDescriptor

logger = get_logger(__name__)


class SchemaMigrator:
    """Applies a schema during an upgrade.

    This class is responsible for:
    - Dropping every collection first when development reset is on
    - Creating declared collections that are missing
    - Adding declared indexes that existing collections lack
    """

    @staticmethod
    def apply(event: UpgradeEvent, schema: SchemaDescriptor, reset: bool = False) -> None:
        """Bring the database in *event* in line with *schema*.

        Args:
            event: The upgrade event handed to ``on_upgrade_needed``.
            schema: Collections and indexes that must exist afterwards.
            reset: Drop all existing collections (and their data) first.

        Raises:
            SchemaError: If an existing collection's key layout conflicts with
                the declaration and *reset* is off.
        """
        database = event.database
        logger.info(
            "Migrating %s from version %d to %d%s",
            schema.name,
            event.old_version,
            event.new_version,
            " (development reset)" if reset else "",
        )
        if reset:
            SchemaMigrator._drop_all(database)

        existing: Set[str] = set(database.collection_names)
        for descriptor in schema.collections:
            if descriptor.name in existing:
                handle = event.transaction.collection(descriptor.name)
                SchemaMigrator._check_layout(handle, descriptor)
            else:
                logger.info("Creating collection: %s", descriptor.name)
                handle = database.create_collection(
                    descriptor.name, descriptor.key_path, descriptor.auto_key
                )
            SchemaMigrator._create_indexes(handle, descriptor)

    @staticmethod
    def _drop_all(database: EngineConnection) -> None:
        for name in database.collection_names:
            logger.info("Dropping collection: %s", name)
            database.delete_collection(name)

    @staticmethod
    def _check_layout(handle: CollectionHandle, descriptor: CollectionDescriptor) -> None:
        if handle.key_path != descriptor.key_path or handle.auto_key != descriptor.auto_key:
            raise SchemaError(
                f"Collection {descriptor.name!r} exists with key path {handle.key_path!r} "
                f"(auto_key={handle.auto_key}); enable development reset to rebuild it"
            )

    @staticmethod
    def _create_indexes(handle: CollectionHandle, descriptor: CollectionDescriptor) -> None:
        existing = set(handle.index_names)
        for index in descriptor.indexes:
            if index.name in existing:
                continue
            logger.info("Adding missing index: %s.%s", descriptor.name, index.name)
            handle.create_index(index.name, index.path, unique=index.unique)
