"""Recompress oversized images to a byte budget before they are sent onward."""

from __future__ import annotations

import asyncio
import io
from typing import Final

from PIL import Image, ImageOps, UnidentifiedImageError

from logger import get_logger
from tryon.errors import InvalidInput

LOGGER = get_logger("tryon.image_optimizer")

DEFAULT_MAX_BYTES: Final = 500 * 1024
MAX_SIDE: Final = 1200
AGGRESSIVE_MAX_SIDE: Final = 800
START_QUALITY: Final = 85
MIN_QUALITY: Final = 60
QUALITY_STEP: Final = 5
AGGRESSIVE_QUALITY: Final = 60
# Written into the JPEG comment of every re-encoded image so a second pass is a no-op.
OPTIMIZED_MARKER: Final = b"tryon-optimized"


def optimize(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Return ``data`` re-encoded as JPEG so that it fits ``max_bytes`` when possible."""

    original_size = len(data)
    if original_size <= max_bytes:
        return data

    try:
        with Image.open(io.BytesIO(data)) as source:
            if source.info.get("comment") == OPTIMIZED_MARKER:
                return data
            image = ImageOps.exif_transpose(source)
            image.load()
    except Image.DecompressionBombError as exc:
        raise InvalidInput(
            "Image dimensions are too large to process", detail={"reason": str(exc)}
        ) from exc
    except (UnidentifiedImageError, OSError) as exc:
        LOGGER.warning("Image optimization skipped, unreadable input: %s", exc)
        return data

    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")

    resized = _fit_within(image, MAX_SIDE)
    quality = START_QUALITY
    while quality >= MIN_QUALITY:
        encoded = _encode_jpeg(resized, quality)
        LOGGER.debug("Quality %s: %.2f KB", quality, len(encoded) / 1024)
        if len(encoded) <= max_bytes:
            LOGGER.debug(
                "Image optimized: %.2f KB (saved %.1f%%)",
                len(encoded) / 1024,
                (original_size - len(encoded)) / original_size * 100,
            )
            return encoded
        quality -= QUALITY_STEP

    encoded = _encode_jpeg(_fit_within(image, AGGRESSIVE_MAX_SIDE), AGGRESSIVE_QUALITY)
    if len(encoded) > max_bytes:
        LOGGER.warning(
            "Image still above budget after aggressive pass: %.2f KB > %.2f KB",
            len(encoded) / 1024,
            max_bytes / 1024,
        )
    return encoded


async def optimize_async(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Run :func:`optimize` in a worker thread."""

    if len(data) <= max_bytes:
        return data
    return await asyncio.to_thread(optimize, data, max_bytes)


def _fit_within(image: Image.Image, max_side: int) -> Image.Image:
    if max(image.size) <= max_side:
        return image
    copy = image.copy()
    copy.thumbnail((max_side, max_side), Image.LANCZOS)
    return copy


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    output = io.BytesIO()
    image.save(
        output,
        format="JPEG",
        quality=quality,
        optimize=True,
        comment=OPTIMIZED_MARKER,
    )
    return output.getvalue()


__all__ = ["DEFAULT_MAX_BYTES", "OPTIMIZED_MARKER", "optimize", "optimize_async"]
