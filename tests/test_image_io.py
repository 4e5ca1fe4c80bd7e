"""Tests for image acquisition and validation."""

from __future__ import annotations

import asyncio
import base64
import io

import httpx
import pytest
from PIL import Image

from tryon.errors import InvalidInput, PayloadTooLarge, UnsupportedFormat, UpstreamFetch
from tryon.services import image_io


def _jpeg_bytes(size: tuple[int, int] = (32, 32)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buffer, format="JPEG")
    return buffer.getvalue()


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (16, 16), (0, 0, 255, 128)).save(buffer, format="PNG")
    return buffer.getvalue()


def _webp_header() -> bytes:
    return b"RIFF\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 16


def test_resolve_decodes_data_uri_and_bare_base64() -> None:
    raw = _jpeg_bytes()
    encoded = base64.b64encode(raw).decode("ascii")

    async def scenario() -> None:
        assert await image_io.resolve(f"data:image/jpeg;base64,{encoded}") == raw
        assert await image_io.resolve(encoded) == raw

    asyncio.run(scenario())


def test_resolve_rejects_empty_and_broken_base64() -> None:
    async def scenario() -> None:
        with pytest.raises(InvalidInput):
            await image_io.resolve("   ")
        with pytest.raises(InvalidInput):
            await image_io.resolve("data:image/png;base64,@@not-base64@@")

    asyncio.run(scenario())


def test_resolve_fetches_remote_url() -> None:
    raw = _jpeg_bytes()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=raw, headers={"Content-Type": "image/jpeg"})

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            data = await image_io.resolve("https://x/p1.jpg", client=client)
        assert data == raw

    asyncio.run(scenario())
    assert seen == ["https://x/p1.jpg"]


def test_fetch_rejects_declared_length_over_ceiling() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"\xff\xd8\xff" + b"\x00" * 4096)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(PayloadTooLarge) as excinfo:
                await image_io.resolve("https://x/big.jpg", client=client, max_bytes=1024)
        assert excinfo.value.size_bytes == 4099
        assert excinfo.value.limit_bytes == 1024

    asyncio.run(scenario())


def test_fetch_stops_streaming_once_ceiling_is_crossed() -> None:
    produced: list[int] = []

    async def body():
        for index in range(100):
            produced.append(index)
            yield b"\x00" * 512

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(PayloadTooLarge) as excinfo:
                await image_io.fetch_image("https://x/endless.jpg", client=client, max_bytes=2048)
        assert excinfo.value.limit_bytes == 2048

    asyncio.run(scenario())
    assert len(produced) < 100


def test_fetch_maps_http_status_to_upstream_fetch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamFetch) as excinfo:
                await image_io.resolve("https://x/missing.jpg", client=client)
        assert excinfo.value.status_code == 404
        assert excinfo.value.retryable is False

    asyncio.run(scenario())


def test_fetch_timeout_is_upstream_fetch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamFetch) as excinfo:
                await image_io.fetch_image("https://x/slow.jpg", client=client)
        assert excinfo.value.status_code is None
        assert excinfo.value.retryable is True

    asyncio.run(scenario())


def test_validate_accepts_known_signatures() -> None:
    image_io.validate(_jpeg_bytes())
    image_io.validate(_png_bytes())
    image_io.validate(_webp_header())


def test_validate_rejects_unknown_format() -> None:
    with pytest.raises(UnsupportedFormat) as excinfo:
        image_io.validate(b"GIF89a" + b"\x00" * 32)
    assert isinstance(excinfo.value, InvalidInput)


def test_validate_rejects_oversized_payload() -> None:
    oversized = b"\xff\xd8\xff" + b"\x00" * (6 * 1024 * 1024)

    with pytest.raises(PayloadTooLarge) as excinfo:
        image_io.validate(oversized, max_size_mb=5)

    assert excinfo.value.limit_bytes == 5 * 1024 * 1024
    assert excinfo.value.size_bytes == len(oversized)


def test_detect_mime_and_data_uri() -> None:
    assert image_io.detect_mime(_png_bytes()) == "image/png"
    assert image_io.detect_mime(_webp_header()) == "image/webp"
    assert image_io.detect_mime(b"unknown") == "image/jpeg"
    uri = image_io.bytes_to_data_uri(_png_bytes())
    assert uri.startswith("data:image/png;base64,")


@pytest.mark.parametrize(
    ("ref", "remote"),
    [
        ("https://cdn.example.com/a.jpg", True),
        ("http://cdn.example.com/a.jpg", True),
        ("data:image/jpeg;base64,AAAA", False),
        ("iVBORw0KGgo=", False),
    ],
)
def test_is_remote_ref(ref: str, remote: bool) -> None:
    assert image_io.is_remote_ref(ref) is remote
