"""Tests for cost estimation and size extraction."""

from __future__ import annotations

from decimal import Decimal

import pytest

from tryon.config import PricingConfig
from tryon.models import SIZE_TOKENS
from tryon.services.pricing import DEFAULT_PRICING, estimate_cost, estimate_tokens
from tryon.services.size_recommendation import (
    extract_size_recommendation,
    parse_analysis_block,
)


def test_cost_includes_base_fee_and_is_never_negative() -> None:
    assert estimate_cost(0, None) == DEFAULT_PRICING.base_fee
    free = PricingConfig(
        base_fee=Decimal("0"),
        input_cost_per_1k=Decimal("0"),
        output_cost_per_1k=Decimal("0"),
        bytes_per_token=4,
    )
    assert estimate_cost(-50, "", free) == Decimal("0")


def test_cost_is_monotonic_in_inputs_and_output() -> None:
    sizes = [0, 1, 1024, 400 * 1024, 5 * 1024 * 1024]
    costs = [estimate_cost(size, "short") for size in sizes]
    assert costs == sorted(costs)

    texts = ["", "a", "a" * 100, "a" * 10_000]
    costs = [estimate_cost(1024, text) for text in texts]
    assert costs == sorted(costs)
    assert costs[-1] > costs[0]


def test_token_estimate_rounds_up() -> None:
    estimate = estimate_tokens(5, "abcde", bytes_per_token=4)
    assert estimate.input_tokens == 2
    assert estimate.output_tokens == 2


@pytest.mark.parametrize(
    ("analysis", "expected"),
    [
        ('{"fit_analysis": "good", "recommended_size": "L"}', "L"),
        ('Here you go:\n```json\n{"recommended_size": "xs"}\n```', "XS"),
        ('{"recommendedSize": "XXL"}', "XXL"),
        ('{"recommended_size": "Size S fits best"}', "S"),
        ("The customer should take size XL for a relaxed fit.", "XL"),
        ("Recommended: XS", "XS"),
        ('{"recommended_size": "unknown"', "M"),
        ("", "M"),
        ("no size info here", "M"),
        ("{{{{ not json", "M"),
    ],
)
def test_extract_size_recommendation(analysis: str, expected: str) -> None:
    assert extract_size_recommendation(analysis) == expected


@pytest.mark.parametrize(
    "analysis",
    [None, "", "[" * 5000, "{" + '"a":' * 2000, "\x00\xff", "size", "{}"],
)
def test_extract_size_recommendation_is_total(analysis) -> None:
    assert extract_size_recommendation(analysis) in SIZE_TOKENS


def test_parse_analysis_block_prefers_fenced_json() -> None:
    text = 'noise {"a": 1} ```json\n{"recommended_size": "S"}\n```'
    assert parse_analysis_block(text) == {"recommended_size": "S"}
    assert parse_analysis_block("plain text") is None
