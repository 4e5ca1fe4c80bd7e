"""Generation capability backed by the Google Gemini image API."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from logger import get_logger
from tryon.config import GeminiConfig
from tryon.errors import CapabilityError
from tryon.models import CapabilityOutput, GenerationOptions, Quality, Style
from tryon.services.image_io import detect_mime
from tryon.services.storage_base import ResultStorage
from tryon.services.tryon_base import GenerationCapability

LOGGER = get_logger("tryon.gemini")

UNSUITABLE_CODE = "UNSUITABLE_PHOTO"
# Safety rejections depend on the photo itself, so retrying cannot help.
UNSUITABLE_STATUS = 422
_BLOCKING_FINISH_REASONS = frozenset(
    {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "RECITATION"}
)

BASE_PROMPT = """You are a professional fashion photography AI. Create a realistic virtual try-on image.

Input: Customer photo (first image) + Product image (second image)
Task: Show the customer wearing the product with professional lighting.

Requirements:
- Maintain customer's facial features, skin tone, hair, body proportions
- Accurately represent the product's color, pattern, and fit
- Professional lighting and shadows
- Front-facing view
- Natural draping and fit of the garment

Additionally, analyze:
1. How well the garment fits the person's body type
2. Recommended size (XXS, XS, S, M, L, XL, XXL)
3. Style compatibility
4. Color compatibility with skin tone

Provide a JSON response with:
{
  "fit_analysis": "description of fit",
  "recommended_size": "size recommendation",
  "style_notes": "style compatibility notes",
  "color_notes": "color compatibility notes",
  "confidence": "high/medium/low"
}"""

_STYLE_HINTS = {
    Style.STUDIO: "Place the customer in a neutral studio background (white/light grey).",
    Style.CASUAL: "Place the customer in a natural, casual everyday setting.",
}
_QUALITY_HINTS = {
    Quality.STANDARD: "Output a web-ready image.",
    Quality.HD: "Output a high-resolution, print-quality photorealistic image.",
}


def build_prompt(options: GenerationOptions) -> str:
    return "\n\n".join(
        [BASE_PROMPT, _STYLE_HINTS[options.style], _QUALITY_HINTS[options.quality]]
    )


def _inline_part(data: bytes) -> dict[str, Any]:
    return {
        "inline_data": {
            "mime_type": detect_mime(data),
            "data": base64.b64encode(data).decode("ascii"),
        }
    }


def build_payload(
    customer_image: bytes, product_image: bytes, options: GenerationOptions
) -> dict[str, Any]:
    return {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {"text": build_prompt(options)},
                    _inline_part(customer_image),
                    _inline_part(product_image),
                ],
            }
        ],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }


@dataclass(slots=True)
class ResponseScan:
    """What a generateContent response carries."""

    inline_data: Optional[str] = None
    inline_mime: Optional[str] = None
    texts: list[str] = field(default_factory=list)
    finish_reason: Optional[str] = None
    block_reason: Optional[str] = None
    has_candidates: bool = False

    @property
    def text(self) -> Optional[str]:
        joined = "\n".join(part for part in self.texts if part).strip()
        return joined or None


def scan_response(payload: Any) -> ResponseScan:
    scan = ResponseScan()
    if not isinstance(payload, dict):
        return scan
    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and isinstance(feedback.get("blockReason"), str):
        scan.block_reason = feedback["blockReason"]

    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return scan
    scan.has_candidates = True
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    finish = first.get("finishReason") or first.get("finish_reason")
    if isinstance(finish, str):
        scan.finish_reason = finish
    content = first.get("content") if isinstance(first.get("content"), dict) else {}
    parts = content.get("parts") if isinstance(content.get("parts"), list) else []
    for part in parts:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str):
            scan.texts.append(text)
        inline = part.get("inline_data") or part.get("inlineData")
        if isinstance(inline, dict) and scan.inline_data is None:
            data_value = inline.get("data")
            if isinstance(data_value, str) and data_value.strip():
                scan.inline_data = data_value
                scan.inline_mime = inline.get("mime_type") or inline.get("mimeType")
    return scan


def unsuitable_reason(scan: ResponseScan) -> Optional[str]:
    """Return the safety reason when the model refused the inputs."""

    if scan.block_reason:
        return f"blocked={scan.block_reason}"
    finish = (scan.finish_reason or "").upper()
    if finish in _BLOCKING_FINISH_REASONS and scan.inline_data is None:
        return f"finish={finish}"
    return None


def _error_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"Gemini API returned status {status}"


class GeminiGenerationCapability(GenerationCapability):
    """Call ``generateContent`` with both images inline."""

    name = "gemini"

    def __init__(self, config: GeminiConfig, storage: ResultStorage) -> None:
        api_key = (config.api_key or "").strip()
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not configured")
        self._api_key = api_key
        self._url = (
            f"{config.endpoint_base.rstrip('/')}/v1beta/models/{config.model}:generateContent"
        )
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_sec)
        self._storage = storage

    async def generate(
        self,
        customer_image: bytes,
        product_image: bytes,
        options: GenerationOptions,
    ) -> CapabilityOutput:
        payload = build_payload(customer_image, product_image, options)
        data = await self._request(payload)
        scan = scan_response(data)

        reason = unsuitable_reason(scan)
        if reason:
            raise CapabilityError(
                f"Gemini refused the inputs ({reason})",
                status_code=UNSUITABLE_STATUS,
                payload={"reason": UNSUITABLE_CODE, "detail": reason},
            )
        if not scan.has_candidates:
            raise CapabilityError("Gemini returned no candidates", payload=data)

        if scan.inline_data is not None:
            try:
                image_bytes = base64.b64decode(scan.inline_data, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise CapabilityError("Invalid base64 image in Gemini response") from exc
            filename = "tryon.png" if scan.inline_mime == "image/png" else "tryon.jpg"
            ref = await self._storage.save(image_bytes, filename)
        else:
            LOGGER.warning(
                "Gemini answered without an image, storing the customer photo as placeholder",
                stage="GEMINI_NO_IMAGE",
                payload={"finish_reason": scan.finish_reason},
            )
            ref = await self._storage.save(customer_image, "tryon-placeholder.jpg")
        return CapabilityOutput(result_ref=ref, analysis_text=scan.text)

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"x-goog-api-key": self._api_key, "Content-Type": "application/json"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._url, json=payload, headers=headers) as response:
                    text = await response.text()
                    status = response.status
        except asyncio.TimeoutError as exc:  # pragma: no cover - network failures
            raise CapabilityError("Gemini request timed out") from exc
        except aiohttp.ClientError as exc:  # pragma: no cover - network failures
            raise CapabilityError(f"Gemini request error: {exc.__class__.__name__}") from exc

        try:
            body = json.loads(text) if text else {}
        except json.JSONDecodeError as exc:
            if status != 200:
                raise CapabilityError(
                    f"Gemini API returned status {status}", status_code=status
                ) from exc
            raise CapabilityError("Failed to decode Gemini response as JSON") from exc

        if status != 200:
            raise CapabilityError(
                _error_message(body, status),
                status_code=status,
                payload=body if isinstance(body, dict) else None,
            )
        if not isinstance(body, dict):
            raise CapabilityError("Unexpected Gemini response shape")
        return body


__all__ = [
    "GeminiGenerationCapability",
    "ResponseScan",
    "build_payload",
    "build_prompt",
    "scan_response",
    "unsuitable_reason",
]
