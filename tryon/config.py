"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

DEFAULT_GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-image"


@dataclass(frozen=True, slots=True)
class GeminiConfig:
    """Settings for the Gemini generation adapter."""

    api_key: Optional[str]
    endpoint_base: str
    model: str
    timeout_sec: int


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff settings applied around the generation call."""

    max_retries: int
    base_delay_ms: int
    jitter_ms: int


@dataclass(frozen=True, slots=True)
class ImageConfig:
    """Limits applied while acquiring and optimizing images."""

    max_input_mb: int
    optimize_max_kb: int
    fetch_timeout_sec: int
    optimize_inputs: bool

    @property
    def optimize_max_bytes(self) -> int:
        return self.optimize_max_kb * 1024


@dataclass(frozen=True, slots=True)
class PricingConfig:
    """Coefficients of the per-call cost estimate."""

    base_fee: Decimal
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    bytes_per_token: int


@dataclass(slots=True)
class Config:
    """Top-level configuration of the try-on pipeline."""

    gemini: GeminiConfig
    retry: RetryConfig
    images: ImageConfig
    pricing: PricingConfig
    cache_ttl_hours: int
    cache_sweep_interval_sec: int
    overage_rate: Decimal
    request_timeout_sec: int
    generation_concurrency: int
    requests_per_minute: int
    usage_db_path: Path
    results_root: Path
    results_base_url: Optional[str]

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_hours * 3600


def _optional_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    if not stripped and default is None:
        return None
    if not stripped:
        return default
    return stripped


def _parse_int_env(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer value") from None
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be greater than or equal to {minimum}")
    return value


def _parse_decimal_env(name: str, default: str) -> Decimal:
    raw = _optional_env(name, default) or default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise RuntimeError(f"{name} must be a decimal value") from None
    if not value.is_finite() or value < 0:
        raise RuntimeError(f"{name} must be a non-negative decimal value")
    return value


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = _optional_env(name)
    if raw is None:
        return default
    return raw.lower() not in {"0", "false", "no", "off"}


def _optional_url(name: str, default: Optional[str] = None) -> Optional[str]:
    value = _optional_env(name, default)
    if value is None:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise RuntimeError(f"{name} must be a valid HTTP(S) URL")
    return value.rstrip("/")


def load_config(env_file: str | None = None) -> Config:
    """Load configuration from the provided .env file (or default location)."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    gemini = GeminiConfig(
        api_key=_optional_env("GEMINI_API_KEY"),
        endpoint_base=_optional_url("GEMINI_ENDPOINT_BASE", DEFAULT_GEMINI_ENDPOINT)
        or DEFAULT_GEMINI_ENDPOINT,
        model=_optional_env("GEMINI_MODEL", DEFAULT_GEMINI_MODEL) or DEFAULT_GEMINI_MODEL,
        timeout_sec=_parse_int_env("GEMINI_TIMEOUT_SEC", 60, minimum=1),
    )
    retry = RetryConfig(
        max_retries=_parse_int_env("RETRY_MAX_RETRIES", 3, minimum=1),
        base_delay_ms=_parse_int_env("RETRY_BASE_DELAY_MS", 1000, minimum=0),
        jitter_ms=_parse_int_env("RETRY_JITTER_MS", 1000, minimum=0),
    )
    images = ImageConfig(
        max_input_mb=_parse_int_env("MAX_INPUT_MB", 5, minimum=1),
        optimize_max_kb=_parse_int_env("OPTIMIZE_MAX_KB", 500, minimum=1),
        fetch_timeout_sec=_parse_int_env("FETCH_TIMEOUT_SEC", 10, minimum=1),
        optimize_inputs=_parse_bool_env("OPTIMIZE_INPUTS", True),
    )
    pricing = PricingConfig(
        base_fee=_parse_decimal_env("COST_BASE_FEE", "0.0025"),
        input_cost_per_1k=_parse_decimal_env("COST_INPUT_PER_1K", "0.000075"),
        output_cost_per_1k=_parse_decimal_env("COST_OUTPUT_PER_1K", "0.0003"),
        bytes_per_token=_parse_int_env("COST_BYTES_PER_TOKEN", 4, minimum=1),
    )

    return Config(
        gemini=gemini,
        retry=retry,
        images=images,
        pricing=pricing,
        cache_ttl_hours=_parse_int_env("CACHE_TTL_HOURS", 24, minimum=1),
        cache_sweep_interval_sec=_parse_int_env("CACHE_SWEEP_INTERVAL_SEC", 600, minimum=5),
        overage_rate=_parse_decimal_env("OVERAGE_RATE", "0.50"),
        request_timeout_sec=_parse_int_env("REQUEST_TIMEOUT_SEC", 120, minimum=1),
        generation_concurrency=_parse_int_env("GENERATION_CONCURRENCY", 5, minimum=1),
        requests_per_minute=_parse_int_env("REQUESTS_PER_MINUTE", 60, minimum=1),
        usage_db_path=Path(_optional_env("USAGE_DB_PATH", "var/usage.db") or "var/usage.db"),
        results_root=Path(_optional_env("RESULTS_ROOT", "./results") or "./results"),
        results_base_url=_optional_url("RESULTS_BASE_URL"),
    )


__all__ = [
    "Config",
    "GeminiConfig",
    "ImageConfig",
    "PricingConfig",
    "RetryConfig",
    "load_config",
]
