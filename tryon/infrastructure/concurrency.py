"""Concurrency primitives used by the generation pipeline."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")

DEFAULT_GENERATION_SLOTS = 5


class GenerationSlots:
    """Bound the number of in-flight calls to the generation capability."""

    def __init__(self, limit: int = DEFAULT_GENERATION_SLOTS) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def run(self, coro: Awaitable[T]) -> T:
        """Run the coroutine while holding one slot."""

        async with self._semaphore:
            self._in_flight += 1
            try:
                return await coro
            finally:
                self._in_flight -= 1


__all__ = ["DEFAULT_GENERATION_SLOTS", "GenerationSlots"]
