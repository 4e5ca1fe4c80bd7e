"""Image acquisition helpers used in the generation pipeline."""

from __future__ import annotations

import base64
import binascii
import re
from typing import Final, Optional

import httpx

from logger import get_logger
from tryon.errors import InvalidInput, PayloadTooLarge, UnsupportedFormat, UpstreamFetch

LOGGER = get_logger("tryon.image_io")

_DATA_URI_RE: Final = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)
_WHITESPACE_RE: Final = re.compile(r"\s+")
DEFAULT_MAX_INPUT_MB: Final = 5


def _is_jpeg(data: bytes) -> bool:
    return data[:3] == b"\xff\xd8\xff"


def _is_png(data: bytes) -> bool:
    return data[:4] == b"\x89PNG"


def _is_webp(data: bytes) -> bool:
    return data[8:12] == b"WEBP"


def detect_mime(data: bytes) -> str:
    """Best-effort detection of the image MIME type."""

    if _is_jpeg(data):
        return "image/jpeg"
    if _is_png(data):
        return "image/png"
    if _is_webp(data):
        return "image/webp"
    return "image/jpeg"


def bytes_to_data_uri(data: bytes, mime: Optional[str] = None) -> str:
    """Encode raw bytes into an inline data URI."""

    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime or detect_mime(data)};base64,{encoded}"


def is_remote_ref(ref: str) -> bool:
    """Return True when the reference should be fetched over HTTP."""

    if _DATA_URI_RE.match(ref):
        return False
    return ref.startswith("http")


def decode_base64_image(ref: str) -> bytes:
    """Decode a data URI or bare base64 payload."""

    payload = _DATA_URI_RE.sub("", ref, count=1)
    payload = _WHITESPACE_RE.sub("", payload)
    if not payload:
        raise InvalidInput("Image payload is empty")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput("Invalid base64 image data") from exc
    if not data:
        raise InvalidInput("Image payload is empty")
    return data


async def fetch_image(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_sec: float = 10.0,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Download a remote image into memory.

    The body is streamed. With ``max_bytes`` set the download stops with
    :class:`PayloadTooLarge` as soon as the ceiling is crossed.
    """

    owns_client = client is None
    if client is None:
        timeout = httpx.Timeout(timeout_sec, connect=timeout_sec)
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        async with client.stream("GET", url) as response:
            status = response.status_code
            if status < 200 or status >= 300:
                LOGGER.warning("Image request for %s returned status %s", url, status)
                raise UpstreamFetch(
                    f"Failed to fetch image: HTTP {status}", url=url, status_code=status
                )
            declared = response.headers.get("content-length")
            if max_bytes is not None and declared and declared.isdigit():
                if int(declared) > max_bytes:
                    raise PayloadTooLarge(int(declared), max_bytes)
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if max_bytes is not None and len(body) > max_bytes:
                    raise PayloadTooLarge(len(body), max_bytes)
            return bytes(body)
    except httpx.TimeoutException as exc:
        raise UpstreamFetch(f"Timed out downloading image from {url}", url=url) from exc
    except httpx.TransportError as exc:
        raise UpstreamFetch(f"Failed to download image from {url}: {exc}", url=url) from exc
    finally:
        if owns_client:
            await client.aclose()


async def resolve(
    ref: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_sec: float = 10.0,
    max_bytes: Optional[int] = None,
) -> bytes:
    """Normalize an inline payload or remote URL into image bytes."""

    if not ref or not ref.strip():
        raise InvalidInput("Image input is required")
    ref = ref.strip()
    if not is_remote_ref(ref):
        return decode_base64_image(ref)
    if ref.startswith("http://") or ref.startswith("https://"):
        return await fetch_image(
            ref, client=client, timeout_sec=timeout_sec, max_bytes=max_bytes
        )
    raise InvalidInput("Image must be a base64 string or HTTP(S) URL")


def validate(data: bytes, max_size_mb: int = DEFAULT_MAX_INPUT_MB) -> None:
    """Check the byte ceiling and the magic-number prefix of an image."""

    limit = max_size_mb * 1024 * 1024
    if len(data) > limit:
        raise PayloadTooLarge(len(data), limit)
    if not (_is_jpeg(data) or _is_png(data) or _is_webp(data)):
        raise UnsupportedFormat("Invalid image format. Supported formats: JPEG, PNG, WebP")


__all__ = [
    "bytes_to_data_uri",
    "decode_base64_image",
    "detect_mime",
    "fetch_image",
    "is_remote_ref",
    "resolve",
    "validate",
]
