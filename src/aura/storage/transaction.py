"""Transaction coordination over the event-driven engine.

``TransactionCoordinator.execute`` reconciles two completion signals: the
caller's unit of work finishing, and the engine transaction reaching
``complete`` or ``abort``.  The result is returned only once the engine has
committed.

Warning:
    The engine commits a transaction as soon as it sits idle with no pending
    request.  Inside a unit of work, await only futures returned by the
    :class:`OperationHandle`.  Read files, hash content or call the network
    *before* ``execute``; awaiting such work mid-transaction commits what
    was written so far and makes every later operation raise
    :class:`~aura.errors.TransactionInactiveError`.
"""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple, Union

from ..errors import AbortError, BusinessAbortError, StorageError
from ..utils.logging import get_logger
from .connection import ConnectionManager
from .engine import EngineTransaction
from .operations import OperationHandle

logger = get_logger(__name__)

UnitOfWork = Callable[[OperationHandle], Union[Any, Awaitable[Any]]]


class TransactionMode(str, Enum):
    READ_ONLY = "readonly"
    READ_WRITE = "readwrite"


class TransactionState(Enum):
    OPENING = "opening"
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"


class Transaction:
    """Lifecycle record of one ``execute`` call.

    Never reused.  ``abort_reason`` holds a :class:`BusinessAbortError` when
    the unit of work raised, ``error`` the engine's own abort error.
    """

    def __init__(self, names: Tuple[str, ...], mode: TransactionMode):
        self.names = names
        self.mode = mode
        self.state = TransactionState.OPENING
        self.error: Optional[BaseException] = None
        self.abort_reason: Optional[BusinessAbortError] = None
        self._native: Optional[EngineTransaction] = None

    @property
    def finished(self) -> bool:
        return self.state in (TransactionState.COMMITTED, TransactionState.ABORTED)

    def bind(self, native: EngineTransaction) -> "asyncio.Future[None]":
        """Attach the engine transaction and return its terminal-event future."""

        outcome: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._native = native
        self.state = TransactionState.ACTIVE

        def on_complete(_: EngineTransaction) -> None:
            self.state = TransactionState.COMMITTED
            if not outcome.done():
                outcome.set_result(None)

        def on_abort(tx: EngineTransaction) -> None:
            self.state = TransactionState.ABORTED
            self.error = tx.error or AbortError("Transaction was aborted")
            if not outcome.done():
                outcome.set_exception(self.error)

        native.on_complete = on_complete
        native.on_abort = on_abort
        return outcome

    def fail(self, exc: BaseException) -> None:
        """Record *exc* as the abort reason and abort the engine transaction."""

        self.abort_reason = BusinessAbortError(exc)
        if self.finished:
            return
        self.state = TransactionState.ABORTING
        if self._native is not None and not self._native.finished:
            self._native.abort()

    def mark_committing(self) -> None:
        if self.state is TransactionState.ACTIVE:
            self.state = TransactionState.COMMITTING


class TransactionCoordinator:
    """Runs units of work inside single engine transactions.

    Args:
        connections: Manager providing the shared connection.
    """

    def __init__(self, connections: ConnectionManager):
        self._connections = connections

    async def execute(
        self,
        names: Union[str, Iterable[str]],
        mode: Union[TransactionMode, str],
        unit_of_work: UnitOfWork,
    ) -> Any:
        """Run *unit_of_work* in one transaction over *names*.

        Args:
            names: Collection name or names in scope.
            mode: ``TransactionMode.READ_ONLY`` or ``TransactionMode.READ_WRITE``.
            unit_of_work: Callable receiving an :class:`OperationHandle`; may
                return a value or an awaitable.

        Returns:
            The unit of work's result, once the transaction has committed.

        Raises:
            Exception: Whatever the unit of work raised; the transaction is
                aborted and the engine's abort error is only logged.
            TransactionAbortError: If the engine aborted for another reason.
            OperationError: If a request failed and aborted the transaction.
        """

        scope = (names,) if isinstance(names, str) else tuple(names)
        transaction = Transaction(scope, TransactionMode(mode))

        connection = await self._connections.connect()
        native = connection.transaction(scope, transaction.mode.value)
        outcome = transaction.bind(native)
        handle = OperationHandle(native)

        try:
            result = unit_of_work(handle)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError as exc:
            transaction.fail(exc)
            _discard(outcome)
            logger.warning("Transaction over %s cancelled and rolled back", ", ".join(scope))
            raise
        except Exception as exc:
            transaction.fail(exc)
            try:
                await outcome
            except StorageError as abort_error:
                logger.debug("Engine abort %r superseded by %r", abort_error, exc)
            logger.warning("Transaction over %s aborted: %s", ", ".join(scope), transaction.abort_reason)
            raise

        transaction.mark_committing()
        try:
            await outcome
        except asyncio.CancelledError as exc:
            # Still idle-waiting for the commit: roll back instead.
            transaction.fail(exc)
            _discard(outcome)
            logger.warning("Transaction over %s cancelled before it committed", ", ".join(scope))
            raise
        except StorageError as exc:
            logger.warning("Transaction over %s aborted by the engine: %s", ", ".join(scope), exc)
            raise
        logger.debug("Transaction over %s committed", ", ".join(scope))
        return result


def _discard(outcome: "asyncio.Future[None]") -> None:
    if not outcome.done():
        outcome.cancel()
    elif not outcome.cancelled():
        # Retrieve the abort error so it is not reported as unhandled.
        outcome.exception()
