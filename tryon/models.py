"""Domain models used by the try-on pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from tryon.errors import InvalidInput

SIZE_TOKENS: tuple[str, ...] = ("XXS", "XS", "S", "M", "L", "XL", "XXL")
DEFAULT_SIZE = "M"


class Quality(str, Enum):
    STANDARD = "standard"
    HD = "hd"


class Style(str, Enum):
    STUDIO = "studio"
    CASUAL = "casual"


class Plan(str, Enum):
    """Subscription tiers with a fixed monthly try-on allowance."""

    ATELIER = "ATELIER"
    MAISON = "MAISON"
    COUTURE = "COUTURE"


@dataclass(frozen=True, slots=True)
class PlanConfig:
    name: str
    price: Decimal
    included_quota: int


PLAN_CONFIGS: dict[Plan, PlanConfig] = {
    Plan.ATELIER: PlanConfig(name="Atelier", price=Decimal("99"), included_quota=500),
    Plan.MAISON: PlanConfig(name="Maison", price=Decimal("299"), included_quota=2000),
    Plan.COUTURE: PlanConfig(name="Couture", price=Decimal("999"), included_quota=5000),
}


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    """Caller-selected rendering options."""

    quality: Quality = Quality.STANDARD
    style: Style = Style.STUDIO
    save_to_cache: bool = True

    @classmethod
    def from_mapping(cls, data: Optional[dict[str, object]]) -> "GenerationOptions":
        """Build options from a loosely typed payload, falling back to defaults."""

        data = data or {}
        quality_raw = str(data.get("quality") or Quality.STANDARD.value).strip().lower()
        style_raw = str(data.get("style") or Style.STUDIO.value).strip().lower()
        try:
            quality = Quality(quality_raw)
        except ValueError:
            raise InvalidInput(
                f"Unsupported quality: {quality_raw}", detail={"quality": quality_raw}
            ) from None
        try:
            style = Style(style_raw)
        except ValueError:
            raise InvalidInput(
                f"Unsupported style: {style_raw}", detail={"style": style_raw}
            ) from None
        save_raw = data.get("save_to_cache", data.get("saveToCache", True))
        return cls(quality=quality, style=style, save_to_cache=bool(save_raw))


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """Inputs of one try-on generation; immutable once constructed."""

    customer_image_ref: str
    product_image_ref: str
    options: GenerationOptions = field(default_factory=GenerationOptions)


@dataclass(slots=True)
class GenerationResult:
    """Outcome of one try-on generation, owned by the caller."""

    image_ref: str
    processing_time_ms: int
    estimated_cost: Decimal
    recommended_size: str
    fingerprint: str
    analysis: Optional[str] = None
    served_from_cache: bool = False


@dataclass(frozen=True, slots=True)
class CapabilityOutput:
    """Raw answer of a generation capability."""

    result_ref: str
    analysis_text: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Previously computed result stored under its fingerprint."""

    fingerprint: str
    image_ref: str
    generation_time_ms: int
    cost: Decimal
    created_at: float
    analysis: Optional[str] = None


@dataclass(slots=True)
class UsagePeriod:
    """Per-merchant usage counters for one calendar month."""

    merchant_id: str
    period_key: str
    included_quota: int
    consumed_count: int = 0
    overage_count: int = 0
    overage_charge: Decimal = Decimal("0")
    total_charge: Decimal = Decimal("0")
    billed_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    """Answer of a quota check."""

    allowed: bool
    used: int
    limit: int
    remaining: int


__all__ = [
    "CacheEntry",
    "CapabilityOutput",
    "DEFAULT_SIZE",
    "GenerationOptions",
    "GenerationRequest",
    "GenerationResult",
    "PLAN_CONFIGS",
    "Plan",
    "PlanConfig",
    "Quality",
    "QuotaStatus",
    "SIZE_TOKENS",
    "Style",
    "UsagePeriod",
]
