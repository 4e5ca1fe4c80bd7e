from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from dataclasses import dataclass
from logging import Logger, LoggerAdapter

import httpx

from logger import get_logger, info_domain, log_event, setup_logging
from tryon.config import Config, load_config
from tryon.infrastructure.concurrency import GenerationSlots
from tryon.infrastructure.rate_limit import RequestRateLimiter
from tryon.infrastructure.retry import RetryExecutor, RetryPolicy
from tryon.services.cache_memory import MemoryGenerationCache
from tryon.services.gemini import GeminiGenerationCapability
from tryon.services.orchestrator import TryOnOrchestrator
from tryon.services.scheduler import CacheSweeper
from tryon.services.storage_local import LocalResultStorage
from tryon.services.tryon_base import GenerationCapability
from tryon.services.tryon_mock import MockGenerationCapability
from tryon.services.usage_ledger import UsageLedger


@dataclass(slots=True)
class Pipeline:
    """Every long-lived collaborator of one running try-on service."""

    config: Config
    ledger: UsageLedger
    cache: MemoryGenerationCache
    storage: LocalResultStorage
    capability: GenerationCapability
    rate_limiter: RequestRateLimiter
    http_client: httpx.AsyncClient
    orchestrator: TryOnOrchestrator
    sweeper: CacheSweeper

    async def aclose(self) -> None:
        await self.sweeper.stop()
        await self.http_client.aclose()


async def build_pipeline(config: Config, *, mock: bool = False) -> Pipeline:
    """Construct and initialize the pipeline described by ``config``."""

    ledger = UsageLedger(config.usage_db_path, overage_rate=config.overage_rate)
    await ledger.init()

    storage = LocalResultStorage(config.results_root, base_url=config.results_base_url)
    capability: GenerationCapability
    if mock:
        capability = MockGenerationCapability(storage)
    else:
        capability = GeminiGenerationCapability(config.gemini, storage)

    cache = MemoryGenerationCache(config.cache_ttl_seconds)
    rate_limiter = RequestRateLimiter(config.requests_per_minute)
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.images.fetch_timeout_sec),
        follow_redirects=True,
    )
    retry = RetryExecutor(
        RetryPolicy(
            max_retries=config.retry.max_retries,
            base_delay_ms=config.retry.base_delay_ms,
            jitter_ms=config.retry.jitter_ms,
        )
    )
    orchestrator = TryOnOrchestrator(
        capability=capability,
        cache=cache,
        ledger=ledger,
        retry=retry,
        slots=GenerationSlots(config.generation_concurrency),
        rate_limiter=rate_limiter,
        http_client=http_client,
        images=config.images,
        pricing=config.pricing,
        request_timeout_sec=config.request_timeout_sec,
    )
    sweeper = CacheSweeper(
        cache, interval_seconds=config.cache_sweep_interval_sec, rate_limiter=rate_limiter
    )
    return Pipeline(
        config=config,
        ledger=ledger,
        cache=cache,
        storage=storage,
        capability=capability,
        rate_limiter=rate_limiter,
        http_client=http_client,
        orchestrator=orchestrator,
        sweeper=sweeper,
    )


async def _wait_for_shutdown(logger: Logger | LoggerAdapter) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(sig: signal.Signals) -> None:
        logger.debug("Received %s signal. Shutting down...", sig.name)
        stop_event.set()

    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        try:
            loop.add_signal_handler(sig, _handle_signal, sig)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            continue

    try:
        await stop_event.wait()
    finally:
        for sig in signals:
            with suppress(ValueError, RuntimeError):
                loop.remove_signal_handler(sig)


async def run_service(*, mock: bool = False) -> None:
    setup_logging()
    logger = get_logger("tryon.service")
    config = load_config()

    pipeline = await build_pipeline(config, mock=mock)
    pipeline.sweeper.start()
    info_domain(
        "tryon.service",
        "Try-on service started",
        stage="SERVICE_STARTED",
        capability=pipeline.capability.name,
        slots=config.generation_concurrency,
    )
    try:
        await _wait_for_shutdown(logger)
    finally:
        await pipeline.aclose()
        info_domain("tryon.service", "Try-on service stopped", stage="SERVICE_STOPPED")


if __name__ == "__main__":
    try:
        asyncio.run(run_service())
    except Exception as exc:  # noqa: BLE001
        setup_logging()
        log_event(
            "CRITICAL",
            "tryon.runtime",
            f"Unhandled exception: {exc}",
            stage="UNHANDLED_EXCEPTION",
            extra={"exception": repr(exc)},
        )
        raise
