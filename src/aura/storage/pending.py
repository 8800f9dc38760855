"""Bridge from engine requests to awaitable futures."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from .engine import Request

ResultHook = Optional[Callable[[Any], None]]


def pending_result(request: Request, on_result: ResultHook = None) -> "asyncio.Future[Any]":
    """Return a future that settles exactly once with *request*'s outcome.

    Both handlers are attached before control returns to the loop, so a
    request that completes on the very next iteration is never missed.
    ``on_result`` runs synchronously inside the success handler, before the
    future resolves; it may issue follow-up requests on the same transaction.

    Args:
        request: A request freshly issued against an active transaction.
        on_result: Optional hook receiving the raw result.

    Returns:
        A future resolving to ``request.result`` or failing with
        ``request.error``.
    """

    future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

    def _on_success(req: Request) -> None:
        if future.done():
            return
        if on_result is not None:
            on_result(req.result)
        future.set_result(req.result)

    def _on_error(req: Request) -> None:
        if not future.done():
            future.set_exception(req.error)

    request.on_success = _on_success
    request.on_error = _on_error
    return future


def settle(future: "asyncio.Future[Any]", *, result: Any = None, error: Optional[BaseException] = None) -> None:
    """Resolve *future* unless something already did."""

    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
