"""Shared utility functions for helm."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """The shared cancel signal fired before or while awaiting a call."""


async def await_cancellable(coro: Coroutine[Any, Any, T], cancel: asyncio.Event | None) -> T:
    """Await coro, abandoning it as soon as cancel is set.

    Raises OperationCancelled if cancel is already set (coro never starts)
    or fires first (coro's task is cancelled and awaited).
    """
    if cancel is None:
        return await coro
    if cancel.is_set():
        coro.close()
        raise OperationCancelled()

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    raise OperationCancelled()
