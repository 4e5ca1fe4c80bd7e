"""Cost estimation for a single generation call.

Input bytes stand in for prompt tokens and analysis characters for completion
tokens. Rounding is conservative (always up) so an estimate never undercounts.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Optional

from tryon.config import PricingConfig

COST_QUANTUM = Decimal("0.000001")

DEFAULT_PRICING = PricingConfig(
    base_fee=Decimal("0.0025"),
    input_cost_per_1k=Decimal("0.000075"),
    output_cost_per_1k=Decimal("0.0003"),
    bytes_per_token=4,
)


@dataclass(frozen=True, slots=True)
class TokenEstimate:
    input_tokens: int
    output_tokens: int


def estimate_tokens(
    input_bytes: int, analysis: Optional[str], bytes_per_token: int
) -> TokenEstimate:
    per_token = max(bytes_per_token, 1)
    input_tokens = math.ceil(max(input_bytes, 0) / per_token)
    output_tokens = math.ceil(len(analysis or "") / per_token)
    return TokenEstimate(input_tokens=input_tokens, output_tokens=output_tokens)


def estimate_cost(
    input_bytes: int,
    analysis: Optional[str],
    pricing: PricingConfig = DEFAULT_PRICING,
) -> Decimal:
    """Return base fee plus linear input/output terms, rounded up to 6 places."""

    tokens = estimate_tokens(input_bytes, analysis, pricing.bytes_per_token)
    input_cost = (Decimal(tokens.input_tokens) / Decimal(1000)) * pricing.input_cost_per_1k
    output_cost = (Decimal(tokens.output_tokens) / Decimal(1000)) * pricing.output_cost_per_1k
    total = pricing.base_fee + input_cost + output_cost
    if total < 0:
        total = Decimal("0")
    return total.quantize(COST_QUANTUM, rounding=ROUND_UP)


__all__ = ["DEFAULT_PRICING", "TokenEstimate", "estimate_cost", "estimate_tokens"]
