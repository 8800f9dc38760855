"""Single-flight connection management for one database."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from ..errors import ConnectionBlockedError, DatabaseConnectionError
from ..utils.logging import get_logger
from .engine import EngineConnection, ObjectStoreEngine, OpenRequest, UpgradeEvent, VersionChangeEvent
from .migrations import SchemaMigrator
from .schema import SchemaDescriptor

logger = get_logger(__name__)


class ConnectionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"


class ConnectionManager:
    """Owns the lifecycle of the one shared connection to a database.

    ``connect()`` is single-flight: every caller between the first call and
    a failure or ``close()`` receives the very same future, so the engine is
    asked to open the database at most once.  A failed attempt resets the
    manager and the next ``connect()`` starts over.

    Args:
        engine: Engine that hosts the database.
        schema: Schema applied whenever the engine requests an upgrade.
        reset: Drop every collection before applying the schema on upgrade.
        close_on_version_change: Close this connection when another one
            wants to upgrade the database, instead of blocking it.
    """

    def __init__(
        self,
        engine: ObjectStoreEngine,
        schema: SchemaDescriptor,
        *,
        reset: bool = False,
        close_on_version_change: bool = True,
    ):
        self._engine = engine
        self._schema = schema
        self._reset = reset
        self._close_on_version_change = close_on_version_change
        self._state = ConnectionState.CLOSED
        self._future: Optional[asyncio.Future[EngineConnection]] = None
        self._connection: Optional[EngineConnection] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def schema(self) -> SchemaDescriptor:
        return self._schema

    @property
    def reset(self) -> bool:
        """Whether upgrades drop every collection before recreating the schema."""
        return self._reset

    @property
    def connection(self) -> Optional[EngineConnection]:
        return self._connection

    def connect(self) -> "asyncio.Future[EngineConnection]":
        """Return the future of the shared connection, opening it if needed."""

        if self._future is not None:
            return self._future

        future: asyncio.Future[EngineConnection] = asyncio.get_running_loop().create_future()
        self._future = future
        self._state = ConnectionState.OPENING
        logger.debug("Opening %s at version %d", self._schema.name, self._schema.version)

        request = self._engine.open(self._schema.name, self._schema.version)
        request.on_upgrade_needed = self._on_upgrade_needed
        request.on_success = lambda req: self._on_success(future, req)
        request.on_error = lambda req: self._on_error(future, req)
        request.on_blocked = lambda event: self._on_blocked(future, event)
        return future

    def close(self) -> None:
        """Close the connection (if any) and return to ``CLOSED``.

        A ``connect()`` still in flight fails with
        :class:`DatabaseConnectionError`; the connection it would have
        produced is closed as soon as the engine delivers it.
        """

        future = self._future
        connection = self._connection
        self._clear()
        if connection is not None:
            connection.close()
            logger.info("Closed connection to %s", self._schema.name)
        if future is not None and not future.done():
            future.set_exception(DatabaseConnectionError("Database connection closed while opening"))

    # -- engine callbacks -------------------------------------------------
    def _on_upgrade_needed(self, event: UpgradeEvent) -> None:
        SchemaMigrator.apply(event, self._schema, reset=self._reset)

    def _on_success(self, future: asyncio.Future, request: OpenRequest) -> None:
        connection = request.result
        if future is not self._future or future.done():
            logger.debug("Discarding connection from an abandoned open of %s", self._schema.name)
            connection.close()
            return
        connection.on_version_change = self._on_version_change
        self._connection = connection
        self._state = ConnectionState.OPEN
        logger.info("Connected to %s (version %d)", self._schema.name, connection.version)
        future.set_result(connection)

    def _on_error(self, future: asyncio.Future, request: OpenRequest) -> None:
        if future is not self._future:
            return
        self._clear()
        error = DatabaseConnectionError(f"Database connection failed: {request.error}")
        error.__cause__ = request.error
        logger.error("%s", error)
        if not future.done():
            future.set_exception(error)

    def _on_blocked(self, future: asyncio.Future, event: VersionChangeEvent) -> None:
        if future is not self._future:
            return
        self._clear()
        logger.warning(
            "Upgrade of %s from %d to %d blocked by another open connection",
            self._schema.name,
            event.old_version,
            event.new_version,
        )
        if not future.done():
            future.set_exception(
                ConnectionBlockedError("Database connection blocked. Please close other connections to this database.")
            )

    def _on_version_change(self, event: VersionChangeEvent) -> None:
        if not self._close_on_version_change:
            return
        logger.warning(
            "%s is being upgraded to version %d elsewhere; closing this connection",
            self._schema.name,
            event.new_version,
        )
        self.close()

    def _clear(self) -> None:
        self._future = None
        self._connection = None
        self._state = ConnectionState.CLOSED
