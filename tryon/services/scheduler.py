"""Background sweeper evicting expired cache entries and stale rate-limit windows."""

from __future__ import annotations

import asyncio
from typing import Optional

from logger import get_logger
from tryon.infrastructure.rate_limit import RequestRateLimiter
from tryon.services.cache_base import GenerationCache


class CacheSweeper:
    """Periodically call ``sweep_expired`` on a generation cache.

    When a rate limiter is given its reset windows are dropped on the same tick.
    """

    def __init__(
        self,
        cache: GenerationCache,
        interval_seconds: float = 600,
        *,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ) -> None:
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._logger = get_logger("tryon.scheduler")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._runner(), name="cache-sweeper")

    async def stop(self) -> None:
        if self._task:
            self._stop_event.set()
            await self._task
            self._task = None
            self._stop_event.clear()

    async def _runner(self) -> None:
        while not self._stop_event.is_set():
            self.sweep_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def sweep_once(self) -> int:
        removed = self._cache.sweep_expired()
        if removed:
            self._logger.info(
                "Expired cache entries removed", stage="CACHE_SWEEP", payload={"removed": removed}
            )
        if self._rate_limiter is not None:
            pruned = self._rate_limiter.cleanup()
            if pruned:
                self._logger.debug(
                    "Stale rate-limit windows dropped",
                    stage="CACHE_SWEEP",
                    payload={"pruned": pruned},
                )
        return removed


__all__ = ["CacheSweeper"]
