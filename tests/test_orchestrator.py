"""End-to-end scenarios for the generation orchestrator."""

from __future__ import annotations

import asyncio
import base64
import io
import struct
import zlib
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
from PIL import Image

from tryon.errors import (
    CapabilityError,
    GenerationFailed,
    InvalidInput,
    PayloadTooLarge,
    QuotaExceeded,
    RateLimited,
    UpstreamFetch,
)
from tryon.infrastructure.rate_limit import RequestRateLimiter
from tryon.infrastructure.retry import RetryExecutor, RetryPolicy
from tryon.models import CapabilityOutput, GenerationOptions, GenerationRequest
from tryon.services.cache_base import fingerprint_request
from tryon.services.cache_memory import MemoryGenerationCache
from tryon.services.orchestrator import TryOnOrchestrator
from tryon.services.tryon_base import GenerationCapability
from tryon.services.usage_ledger import UsageLedger


def _jpeg(size: tuple[int, int] = (40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (90, 60, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()


def _huge_dimensions_png() -> bytes:
    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    header = struct.pack(">IIBBBBB", 20000, 20000, 8, 2, 0, 0, 0)
    filler = b"comment\x00" + b"a" * 600_000
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"tEXt", filler)
        + chunk(b"IEND", b"")
    )


CUSTOMER_REF = "data:image/jpeg;base64," + base64.b64encode(_jpeg()).decode("ascii")
PRODUCT_URL = "https://x/p1.jpg"


class ScriptedCapability(GenerationCapability):
    name = "scripted"

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def generate(self, customer_image, product_image, options):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1] if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, float):
            await asyncio.sleep(outcome)
        return CapabilityOutput(
            result_ref=f"file:///results/{self.calls}.jpg",
            analysis_text='{"recommended_size": "L", "confidence": "high"}',
        )


class Harness:
    def __init__(self, tmp_path: Path, capability: GenerationCapability, **kwargs) -> None:
        self.fetched: list[str] = []
        self.capability = capability
        self.cache = MemoryGenerationCache()
        self.ledger = UsageLedger(tmp_path / "usage.db")
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handler))
        self.sleeps: list[float] = []
        retry = RetryExecutor(
            RetryPolicy(max_retries=3, base_delay_ms=10, jitter_ms=0), sleep=self._sleep
        )
        self.orchestrator = TryOnOrchestrator(
            capability=capability,
            cache=self.cache,
            ledger=self.ledger,
            retry=retry,
            http_client=self.client,
            **kwargs,
        )

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.fetched.append(str(request.url))
        if request.url.path.endswith("missing.jpg"):
            return httpx.Response(404)
        if request.url.path.endswith("huge.jpg"):
            return httpx.Response(200, content=b"\xff\xd8\xff" + b"\x00" * (6 * 1024 * 1024))
        return httpx.Response(200, content=_jpeg((30, 50)))

    async def consumed(self, merchant_id: str = "shop-1") -> int:
        period = await self.ledger.get_usage_period(merchant_id)
        return period.consumed_count if period else 0


def _request(**options) -> GenerationRequest:
    return GenerationRequest(
        customer_image_ref=CUSTOMER_REF,
        product_image_ref=PRODUCT_URL,
        options=GenerationOptions.from_mapping(options),
    )


def test_successful_generation_is_cached_and_charged_once(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)
    request = _request(quality="standard")

    async def scenario() -> None:
        await harness.ledger.init()
        first = await harness.orchestrator.generate_try_on(request, "shop-1")
        assert first.served_from_cache is False
        assert first.recommended_size == "L"
        assert first.estimated_cost > 0
        assert first.fingerprint == fingerprint_request(request)
        assert await harness.consumed() == 1

        second = await harness.orchestrator.generate_try_on(request, "shop-1")
        assert second.served_from_cache is True
        assert second.image_ref == first.image_ref
        assert second.recommended_size == "L"
        assert second.estimated_cost == Decimal("0")
        assert await harness.consumed() == 1

    asyncio.run(scenario())
    assert capability.calls == 1
    assert harness.fetched == [PRODUCT_URL]


def test_quota_exhaustion_skips_generation(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        for _ in range(500):
            await harness.ledger.record_usage("shop-1")
        with pytest.raises(QuotaExceeded) as excinfo:
            await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert excinfo.value.remaining == 0
        assert await harness.consumed() == 500

    asyncio.run(scenario())
    assert capability.calls == 0
    assert harness.fetched == []


def test_cache_hit_is_served_when_quota_is_exhausted(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        await harness.orchestrator.generate_try_on(_request(), "shop-1")
        for _ in range(499):
            await harness.ledger.record_usage("shop-1")
        result = await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert result.served_from_cache is True
        assert await harness.consumed() == 500

    asyncio.run(scenario())


def test_oversized_image_fails_before_network_and_model(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)
    oversized = b"\xff\xd8\xff" + b"\x00" * (6 * 1024 * 1024)
    request = GenerationRequest(
        customer_image_ref="data:image/jpeg;base64," + base64.b64encode(oversized).decode("ascii"),
        product_image_ref=PRODUCT_URL,
    )

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(PayloadTooLarge):
            await harness.orchestrator.generate_try_on(request, "shop-1")
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert capability.calls == 0
    assert harness.fetched == []
    assert len(harness.cache) == 0


def test_huge_pixel_count_is_invalid_input(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)
    bomb = "data:image/png;base64," + base64.b64encode(_huge_dimensions_png()).decode("ascii")
    request = GenerationRequest(customer_image_ref=bomb, product_image_ref=PRODUCT_URL)

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(InvalidInput):
            await harness.orchestrator.generate_try_on(request, "shop-1")
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert capability.calls == 0
    assert harness.fetched == []
    assert len(harness.cache) == 0


def test_oversized_remote_image_is_payload_too_large(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)
    request = GenerationRequest(
        customer_image_ref=CUSTOMER_REF, product_image_ref="https://x/huge.jpg"
    )

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(PayloadTooLarge) as excinfo:
            await harness.orchestrator.generate_try_on(request, "shop-1")
        assert excinfo.value.limit_bytes == 5 * 1024 * 1024
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert capability.calls == 0


def test_missing_inputs_are_invalid(tmp_path: Path) -> None:
    harness = Harness(tmp_path, ScriptedCapability())

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(InvalidInput):
            await harness.orchestrator.generate_try_on(
                GenerationRequest(customer_image_ref="", product_image_ref=PRODUCT_URL), "shop-1"
            )
        with pytest.raises(InvalidInput):
            await harness.orchestrator.generate_try_on(
                GenerationRequest(customer_image_ref=CUSTOMER_REF, product_image_ref=" "), "shop-1"
            )

    asyncio.run(scenario())


def test_exhausted_retries_surface_generation_failed_without_charge(tmp_path: Path) -> None:
    capability = ScriptedCapability(CapabilityError("overloaded", status_code=503))
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(GenerationFailed) as excinfo:
            await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert excinfo.value.attempts == 3
        assert excinfo.value.reason == "retries_exhausted"
        assert excinfo.value.status_code == 503
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert capability.calls == 3
    assert harness.sleeps == [0.01, 0.02]
    assert len(harness.cache) == 0


def test_client_error_is_not_retried(tmp_path: Path) -> None:
    capability = ScriptedCapability(CapabilityError("unsuitable", status_code=422))
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(GenerationFailed) as excinfo:
            await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert excinfo.value.attempts == 1
        assert excinfo.value.reason == "rejected"

    asyncio.run(scenario())
    assert capability.calls == 1


def test_transient_failure_then_success_charges_once(tmp_path: Path) -> None:
    capability = ScriptedCapability(CapabilityError("flaky", status_code=500), None)
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        result = await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert result.image_ref == "file:///results/2.jpg"
        assert await harness.consumed() == 1

    asyncio.run(scenario())


def test_upstream_fetch_failure_is_surfaced_as_is(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)
    request = GenerationRequest(
        customer_image_ref=CUSTOMER_REF, product_image_ref="https://x/missing.jpg"
    )

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(UpstreamFetch) as excinfo:
            await harness.orchestrator.generate_try_on(request, "shop-1")
        assert excinfo.value.status_code == 404
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert capability.calls == 0


def test_timeout_leaves_no_partial_writes(tmp_path: Path) -> None:
    capability = ScriptedCapability(1.0)
    harness = Harness(tmp_path, capability, request_timeout_sec=0.05)

    async def scenario() -> None:
        await harness.ledger.init()
        with pytest.raises(GenerationFailed) as excinfo:
            await harness.orchestrator.generate_try_on(_request(), "shop-1")
        assert excinfo.value.reason == "timeout"
        assert await harness.consumed() == 0

    asyncio.run(scenario())
    assert len(harness.cache) == 0


def test_save_to_cache_false_skips_cache_write(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability)

    async def scenario() -> None:
        await harness.ledger.init()
        for _ in range(2):
            result = await harness.orchestrator.generate_try_on(
                _request(saveToCache=False), "shop-1"
            )
            assert result.served_from_cache is False
        assert await harness.consumed() == 2

    asyncio.run(scenario())
    assert capability.calls == 2
    assert len(harness.cache) == 0


def test_rate_limiter_rejects_excess_requests(tmp_path: Path) -> None:
    capability = ScriptedCapability()
    harness = Harness(tmp_path, capability, rate_limiter=RequestRateLimiter(1))

    async def scenario() -> None:
        await harness.ledger.init()
        await harness.orchestrator.generate_try_on(_request(), "shop-1")
        with pytest.raises(RateLimited):
            await harness.orchestrator.generate_try_on(_request(), "shop-1")

    asyncio.run(scenario())
    assert capability.calls == 1
