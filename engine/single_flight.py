"""Collapse concurrent work for the same key into one in-flight task."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Process-local deduplication of concurrent coroutine calls by key.

    The first caller for a key starts the task; later callers await the same
    task. The registration happens without an intervening ``await``, so two
    coroutines on one event loop cannot both start work for the same key.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._execute(key, factory))
            self._in_flight[key] = task
        else:
            logger.debug("[SINGLE FLIGHT] joining in-flight task key=%s", key)
        # A waiter's cancellation must not cancel the shared task.
        return await asyncio.shield(task)

    async def _execute(self, key: str, factory: Callable[[], Awaitable[T]]) -> Any:
        try:
            return await factory()
        finally:
            self._in_flight.pop(key, None)
