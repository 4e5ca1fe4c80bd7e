"""Generation cache interface and request fingerprinting."""

from __future__ import annotations

import abc
import hashlib
import json
from dataclasses import dataclass
from typing import Optional

from tryon.models import CacheEntry, GenerationOptions, GenerationRequest

FINGERPRINT_VERSION = 1


def compute_fingerprint(
    customer_image_ref: str,
    product_image_ref: str,
    options: GenerationOptions,
) -> str:
    """Hash the semantically relevant inputs of a request.

    The tuple is serialized as canonical JSON (sorted keys, fixed separators)
    so the digest is stable across calls and processes. ``save_to_cache`` does
    not change the produced image and is left out.
    """

    canonical = json.dumps(
        {
            "v": FINGERPRINT_VERSION,
            "customer": customer_image_ref,
            "product": product_image_ref,
            "quality": options.quality.value,
            "style": options.style.value,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint_request(request: GenerationRequest) -> str:
    return compute_fingerprint(
        request.customer_image_ref, request.product_image_ref, request.options
    )


@dataclass(frozen=True, slots=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    size: int


class GenerationCache(abc.ABC):
    """Content-addressed store of finished generations."""

    @abc.abstractmethod
    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return the entry or None; expired entries are evicted and reported as a miss."""

    @abc.abstractmethod
    def put(self, fingerprint: str, entry: CacheEntry) -> None:
        """Store ``entry`` under ``fingerprint``."""

    @abc.abstractmethod
    def delete(self, fingerprint: str) -> bool:
        """Remove one entry, returning whether it existed."""

    @abc.abstractmethod
    def sweep_expired(self) -> int:
        """Evict every expired entry and return how many were removed."""

    @abc.abstractmethod
    def clear(self) -> None:
        """Drop every entry."""

    @abc.abstractmethod
    def stats(self) -> CacheStats:
        """Return hit/miss counters."""


__all__ = [
    "CacheStats",
    "FINGERPRINT_VERSION",
    "GenerationCache",
    "compute_fingerprint",
    "fingerprint_request",
]
