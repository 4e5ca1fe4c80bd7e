"""Typed failures raised by the try-on generation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


def is_retryable_status(status: Optional[int]) -> bool:
    """Return False only for client errors other than 429."""

    if status is None or status == 429:
        return True
    return not 400 <= status <= 499


class TryOnError(Exception):
    """Base class for every failure surfaced to callers of the pipeline."""

    kind = "TRY_ON_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, detail: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


class InvalidInput(TryOnError):
    """Missing, malformed or undecodable image input."""

    kind = "INVALID_INPUT"
    http_status = 400


class UnsupportedFormat(InvalidInput):
    """Image bytes do not start with a JPEG, PNG or WEBP signature."""

    kind = "UNSUPPORTED_FORMAT"
    http_status = 415


class PayloadTooLarge(InvalidInput):
    """Image exceeds the configured input ceiling."""

    kind = "PAYLOAD_TOO_LARGE"
    http_status = 413

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"Image size {size_bytes} bytes exceeds the {limit_bytes} byte limit",
            detail={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class UpstreamFetch(TryOnError):
    """Remote image download failed or timed out."""

    kind = "UPSTREAM_FETCH"
    http_status = 502

    def __init__(self, message: str, *, url: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, detail={"url": url, "status_code": status_code})
        self.url = url
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return is_retryable_status(self.status_code)


class QuotaExceeded(TryOnError):
    """Monthly plan quota is exhausted for the merchant."""

    kind = "QUOTA_EXCEEDED"
    http_status = 429

    def __init__(self, merchant_id: str, *, used: int, limit: int, remaining: int = 0) -> None:
        super().__init__(
            f"Monthly try-on limit exceeded ({limit} try-ons). Please upgrade your plan.",
            detail={"used": used, "limit": limit, "remaining": remaining},
        )
        self.merchant_id = merchant_id
        self.used = used
        self.limit = limit
        self.remaining = remaining


class RateLimited(TryOnError):
    """Too many requests for one key inside the current window."""

    kind = "RATE_LIMITED"
    http_status = 429

    def __init__(self, key: str, retry_after_seconds: int) -> None:
        super().__init__(
            f"Too many requests. Please try again in {retry_after_seconds} seconds.",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.key = key
        self.retry_after_seconds = retry_after_seconds


class GenerationFailed(TryOnError):
    """The generation capability exhausted retries or rejected the request."""

    kind = "GENERATION_FAILED"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        attempts: int = 0,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            detail={"reason": reason, "attempts": attempts, "status_code": status_code},
        )
        self.reason = reason
        self.attempts = attempts
        self.status_code = status_code


@dataclass(slots=True, eq=False)
class CapabilityError(RuntimeError):
    """Error raised by external collaborators with an optional HTTP-style status."""

    message: str
    status_code: Optional[int] = None
    payload: Optional[dict[str, Any]] = None

    def __post_init__(self) -> None:  # pragma: no cover - dataclass hook
        RuntimeError.__init__(self, self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status_code)


__all__ = [
    "CapabilityError",
    "is_retryable_status",
    "GenerationFailed",
    "InvalidInput",
    "PayloadTooLarge",
    "QuotaExceeded",
    "RateLimited",
    "TryOnError",
    "UnsupportedFormat",
    "UpstreamFetch",
]
