"""Mock generation capability producing placeholder images."""

from __future__ import annotations

import asyncio
import io
import json
from datetime import UTC, datetime
from typing import Optional

from PIL import Image, ImageDraw, UnidentifiedImageError

from tryon.models import CapabilityOutput, GenerationOptions
from tryon.services.image_io import bytes_to_data_uri
from tryon.services.storage_base import ResultStorage
from tryon.services.tryon_base import GenerationCapability


class MockGenerationCapability(GenerationCapability):
    """Render a white canvas the size of the customer photo with a caption."""

    name = "mock"

    def __init__(
        self,
        storage: Optional[ResultStorage] = None,
        *,
        recommended_size: str = "M",
    ) -> None:
        self._storage = storage
        self._recommended_size = recommended_size
        self.calls = 0

    async def generate(
        self,
        customer_image: bytes,
        product_image: bytes,
        options: GenerationOptions,
    ) -> CapabilityOutput:
        self.calls += 1
        data = await asyncio.to_thread(self._render, customer_image, options)
        if self._storage is not None:
            ref = await self._storage.save(data, "tryon-mock.jpg")
        else:
            ref = bytes_to_data_uri(data, "image/jpeg")
        return CapabilityOutput(result_ref=ref, analysis_text=self._analysis())

    def _render(self, customer_image: bytes, options: GenerationOptions) -> bytes:
        try:
            with Image.open(io.BytesIO(customer_image)) as img:
                size = img.size
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
            size = (1024, 1024)
        image = Image.new("RGB", size, color="white")
        draw = ImageDraw.Draw(image)
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        draw.text((10, 10), f"DEMO {options.quality.value}/{options.style.value} {timestamp}", fill="black")
        output = io.BytesIO()
        image.save(output, format="JPEG", quality=85)
        return output.getvalue()

    def _analysis(self) -> str:
        block = {
            "fit_analysis": "Placeholder render, no fit analysis available.",
            "recommended_size": self._recommended_size,
            "style_notes": "n/a",
            "color_notes": "n/a",
            "confidence": "low",
        }
        return json.dumps(block)


__all__ = ["MockGenerationCapability"]
