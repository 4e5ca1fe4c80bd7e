"""Extract a recommended garment size from the model's free-form analysis."""

from __future__ import annotations

import json
import re
from typing import Any, Final, Optional

from tryon.models import DEFAULT_SIZE, SIZE_TOKENS

_FENCED_JSON_RE: Final = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_JSON_BLOCK_RE: Final = re.compile(r"\{[\s\S]*\}")
_SIZE_TOKEN_RE: Final = re.compile(r"\b(XXS|XS|S|M|L|XL|XXL)\b")
_SIZE_PHRASE_RE: Final = re.compile(
    r"\bsize\b[^A-Za-z0-9]{0,3}(?:is\s+|of\s+)?(XXS|XS|S|M|L|XL|XXL)\b", re.IGNORECASE
)
_SIZE_KEYS: Final = ("recommended_size", "recommendedSize", "size")


def parse_analysis_block(analysis: Optional[str]) -> Optional[dict[str, Any]]:
    """Return the first JSON object embedded in ``analysis``, if any."""

    if not isinstance(analysis, str) or not analysis:
        return None
    candidates = [match.group(1) for match in _FENCED_JSON_RE.finditer(analysis)]
    greedy = _JSON_BLOCK_RE.search(analysis)
    if greedy:
        candidates.append(greedy.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (ValueError, RecursionError):
            continue
        if isinstance(data, dict):
            return data
    return None


def _normalize_size(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    upper = value.strip().upper()
    if upper in SIZE_TOKENS:
        return upper
    match = _SIZE_TOKEN_RE.search(upper)
    return match.group(1) if match else None


def extract_size_recommendation(analysis: Optional[str]) -> str:
    """Return one of ``SIZE_TOKENS``; never raises.

    The structured block wins; otherwise the text is scanned for an explicit
    "size X" phrase, then for a bare uppercase size token, then ``M`` is used.
    """

    if not isinstance(analysis, str) or not analysis.strip():
        return DEFAULT_SIZE

    block = parse_analysis_block(analysis)
    if block is not None:
        for key in _SIZE_KEYS:
            size = _normalize_size(block.get(key))
            if size:
                return size

    phrase = _SIZE_PHRASE_RE.search(analysis)
    if phrase:
        return phrase.group(1).upper()

    token = _SIZE_TOKEN_RE.search(analysis)
    if token:
        return token.group(1)
    return DEFAULT_SIZE


__all__ = ["extract_size_recommendation", "parse_analysis_block"]
