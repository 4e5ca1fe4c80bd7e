"""Generation orchestrator: cache, quota, acquisition, generation, accounting."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

import httpx

from logger import bind_context, get_logger, info_domain, reset_context
from tryon.config import ImageConfig, PricingConfig
from tryon.errors import CapabilityError, GenerationFailed, InvalidInput, TryOnError
from tryon.infrastructure.concurrency import GenerationSlots
from tryon.infrastructure.rate_limit import RequestRateLimiter
from tryon.infrastructure.retry import RetryExecutor
from tryon.models import (
    CacheEntry,
    CapabilityOutput,
    GenerationRequest,
    GenerationResult,
)
from tryon.services import image_io
from tryon.services.cache_base import GenerationCache, fingerprint_request
from tryon.services.image_optimizer import optimize_async
from tryon.services.pricing import DEFAULT_PRICING, estimate_cost
from tryon.services.size_recommendation import extract_size_recommendation
from tryon.services.tryon_base import GenerationCapability
from tryon.services.usage_ledger import UsageLedger

LOGGER = get_logger("tryon.orchestrator")

DEFAULT_IMAGE_CONFIG = ImageConfig(
    max_input_mb=image_io.DEFAULT_MAX_INPUT_MB,
    optimize_max_kb=500,
    fetch_timeout_sec=10,
    optimize_inputs=True,
)
DEFAULT_REQUEST_TIMEOUT_SEC = 120.0


@dataclass(slots=True)
class _Generated:
    output: CapabilityOutput
    input_bytes: int


class TryOnOrchestrator:
    """Run one try-on request through the pipeline.

    Steps run strictly in order: presence check, volume limit, cache lookup,
    quota check, then (under the request deadline) acquisition, validation,
    optimization and the retried capability call. Only after that section
    completes are the cache entry written and the usage recorded, so a
    failure or timeout leaves neither behind.
    """

    def __init__(
        self,
        *,
        capability: GenerationCapability,
        cache: GenerationCache,
        ledger: UsageLedger,
        retry: Optional[RetryExecutor] = None,
        slots: Optional[GenerationSlots] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        images: ImageConfig = DEFAULT_IMAGE_CONFIG,
        pricing: PricingConfig = DEFAULT_PRICING,
        request_timeout_sec: Optional[float] = DEFAULT_REQUEST_TIMEOUT_SEC,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._capability = capability
        self._cache = cache
        self._ledger = ledger
        self._retry = retry or RetryExecutor()
        self._slots = slots or GenerationSlots()
        self._rate_limiter = rate_limiter
        self._http_client = http_client
        self._images = images
        self._pricing = pricing
        self._request_timeout = request_timeout_sec
        self._clock = clock
        self._timer = timer

    @property
    def capability(self) -> GenerationCapability:
        return self._capability

    @property
    def cache(self) -> GenerationCache:
        return self._cache

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    async def generate_try_on(
        self, request: GenerationRequest, merchant_id: str
    ) -> GenerationResult:
        started = self._timer()
        tokens = bind_context(request_id=uuid.uuid4().hex[:12], merchant_id=merchant_id)
        try:
            return await self._handle(request, merchant_id, started)
        finally:
            reset_context(tokens)

    async def _handle(
        self, request: GenerationRequest, merchant_id: str, started: float
    ) -> GenerationResult:
        if not (request.customer_image_ref or "").strip():
            raise InvalidInput("Customer photo is required")
        if not (request.product_image_ref or "").strip():
            raise InvalidInput("Product image is required")

        if self._rate_limiter is not None:
            self._rate_limiter.check(merchant_id)

        fingerprint = fingerprint_request(request)
        cached = self._cache.get(fingerprint)
        if cached is not None:
            elapsed = self._elapsed_ms(started)
            info_domain(
                "tryon.orchestrator",
                "Served from cache",
                stage="CACHE_HIT",
                merchant_id=merchant_id,
                fingerprint=fingerprint[:12],
                ms=elapsed,
            )
            return GenerationResult(
                image_ref=cached.image_ref,
                processing_time_ms=elapsed,
                estimated_cost=Decimal("0"),
                recommended_size=extract_size_recommendation(cached.analysis),
                fingerprint=fingerprint,
                analysis=cached.analysis,
                served_from_cache=True,
            )

        await self._ledger.ensure_quota(merchant_id)

        info_domain(
            "tryon.orchestrator",
            "Generation started",
            stage="GENERATION_START",
            merchant_id=merchant_id,
            quality=request.options.quality.value,
            style=request.options.style.value,
        )
        try:
            generated = await asyncio.wait_for(
                self._acquire_and_generate(request), timeout=self._request_timeout
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Request deadline of %ss exceeded", self._request_timeout, stage="TIMEOUT"
            )
            raise GenerationFailed(
                f"Try-on generation timed out after {self._request_timeout} seconds",
                reason="timeout",
            ) from None

        output = generated.output
        elapsed = self._elapsed_ms(started)
        cost = estimate_cost(generated.input_bytes, output.analysis_text, self._pricing)
        size = extract_size_recommendation(output.analysis_text)

        if request.options.save_to_cache:
            self._cache.put(
                fingerprint,
                CacheEntry(
                    fingerprint=fingerprint,
                    image_ref=output.result_ref,
                    generation_time_ms=elapsed,
                    cost=cost,
                    created_at=self._clock(),
                    analysis=output.analysis_text,
                ),
            )
        period = await self._ledger.record_usage(merchant_id)

        info_domain(
            "tryon.orchestrator",
            "Generation succeeded",
            stage="GENERATION_DONE",
            merchant_id=merchant_id,
            ms=elapsed,
            cost=str(cost),
            size=size,
            consumed=period.consumed_count,
        )
        return GenerationResult(
            image_ref=output.result_ref,
            processing_time_ms=elapsed,
            estimated_cost=cost,
            recommended_size=size,
            fingerprint=fingerprint,
            analysis=output.analysis_text,
        )

    async def _acquire_and_generate(self, request: GenerationRequest) -> _Generated:
        customer = await self._acquire(request.customer_image_ref)
        product = await self._acquire(request.product_image_ref)
        output = await self._generate(customer, product, request)
        return _Generated(output=output, input_bytes=len(customer) + len(product))

    async def _acquire(self, ref: str) -> bytes:
        data = await image_io.resolve(
            ref,
            client=self._http_client,
            timeout_sec=self._images.fetch_timeout_sec,
            max_bytes=self._images.max_input_mb * 1024 * 1024,
        )
        image_io.validate(data, self._images.max_input_mb)
        if self._images.optimize_inputs:
            data = await optimize_async(data, self._images.optimize_max_bytes)
        return data

    async def _generate(
        self, customer: bytes, product: bytes, request: GenerationRequest
    ) -> CapabilityOutput:
        retries = 0

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            nonlocal retries
            retries = attempt

        async def _attempt() -> CapabilityOutput:
            return await self._slots.run(
                self._capability.generate(customer, product, request.options)
            )

        try:
            return await self._retry.execute(_attempt, on_retry=_on_retry)
        except TryOnError:
            raise
        except CapabilityError as exc:
            attempts = retries + 1
            reason = "retries_exhausted" if exc.retryable else "rejected"
            LOGGER.error(
                "Generation capability failed after %s attempt(s): %s",
                attempts,
                exc.message,
                stage="GENERATION_FAILED",
                payload={"status": exc.status_code, "capability": self._capability.name},
            )
            raise GenerationFailed(
                exc.message, reason=reason, attempts=attempts, status_code=exc.status_code
            ) from exc
        except Exception as exc:
            attempts = retries + 1
            LOGGER.error(
                "Generation capability raised %s after %s attempt(s)",
                exc.__class__.__name__,
                attempts,
                stage="GENERATION_FAILED",
                exc_info=True,
            )
            raise GenerationFailed(
                f"Generation failed: {exc}", reason="retries_exhausted", attempts=attempts
            ) from exc

    def _elapsed_ms(self, started: float) -> int:
        return max(int((self._timer() - started) * 1000), 0)


__all__ = ["DEFAULT_IMAGE_CONFIG", "TryOnOrchestrator"]
