#!/usr/bin/env python3
"""Operator CLI for the virtual try-on pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import httpx
from dotenv import load_dotenv

from logger import setup_logging
from tryon.config import Config, load_config
from tryon.errors import TryOnError
from tryon.models import GenerationOptions, GenerationRequest, Plan
from tryon.services.image_io import bytes_to_data_uri

PROJECT_ROOT = Path(__file__).resolve().parent
ENV_FILE = PROJECT_ROOT / ".env"


@dataclass(slots=True)
class CheckResult:
    """Single diagnostic result entry."""

    title: str
    message: str
    status: str  # ok | warn | fail

    @property
    def icon(self) -> str:
        return {"ok": "✅", "warn": "⚠️", "fail": "❌"}.get(self.status, "❓")

    def colorize(self, text: str) -> str:
        colors = {"ok": "\033[32m", "warn": "\033[33m", "fail": "\033[31m"}
        prefix = colors.get(self.status, "")
        suffix = "\033[0m" if prefix else ""
        return f"{prefix}{text}{suffix}"

    def formatted(self) -> str:
        return self.colorize(f"{self.icon} {self.title}: {self.message}")


def _load_env() -> None:
    """Load .env values without overriding existing environment variables."""

    load_dotenv(ENV_FILE, override=False)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _check_writable(title: str, directory: Path) -> CheckResult:
    try:
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / ".selftest"
        marker.write_text("ok", encoding="utf-8")
        marker.unlink()
    except OSError as exc:
        return CheckResult(title=title, status="fail", message=f"Not writable: {exc}")
    return CheckResult(title=title, status="ok", message=f"Directory is writable: {directory}")


def _check_gemini(config: Config) -> CheckResult:
    api_key = config.gemini.api_key
    if not api_key:
        return CheckResult(
            title="Gemini API",
            status="warn",
            message="GEMINI_API_KEY is not set, only --mock generations are possible",
        )
    url = f"{config.gemini.endpoint_base}/v1beta/models/{config.gemini.model}"
    try:
        response = httpx.get(url, headers={"x-goog-api-key": api_key}, timeout=5)
    except httpx.HTTPError as exc:
        return CheckResult(title="Gemini API", status="warn", message=f"Connection failed: {exc}")
    if response.status_code == 200:
        return CheckResult(
            title="Gemini API", status="ok", message=f"Model {config.gemini.model} is reachable"
        )
    if response.status_code in {401, 403}:
        return CheckResult(
            title="Gemini API",
            status="fail",
            message=f"Key rejected (HTTP {response.status_code})",
        )
    return CheckResult(
        title="Gemini API",
        status="warn",
        message=f"HTTP {response.status_code}: {response.text[:120]}",
    )


def _command_check() -> int:
    _load_env()

    results: List[CheckResult] = []
    try:
        config = load_config(str(ENV_FILE) if ENV_FILE.exists() else None)
    except RuntimeError as exc:
        results.append(CheckResult(title="Configuration", status="fail", message=str(exc)))
        config = None
    else:
        results.append(CheckResult(title="Configuration", status="ok", message="All values parsed"))

    if config is not None:
        results.append(_check_gemini(config))
        results.append(_check_writable("Usage ledger", config.usage_db_path.parent))
        results.append(_check_writable("Results", config.results_root))

    print("\n=== Self-check report ===")
    for item in results:
        print(item.formatted())

    has_fail = any(item.status == "fail" for item in results)
    has_warn = any(item.status == "warn" for item in results)

    if has_fail:
        summary = CheckResult(title="Summary", status="fail", message="critical problems found")
    elif has_warn:
        summary = CheckResult(
            title="Summary", status="warn", message="warnings present, no critical problems"
        )
    else:
        summary = CheckResult(title="Summary", status="ok", message="ready to run")
    print(summary.formatted())

    return 1 if has_fail else 0


def _image_ref(value: str) -> str:
    """Turn a local file path into a data URI; URLs and base64 pass through."""

    if value.startswith(("http://", "https://", "data:")):
        return value
    path = Path(value)
    if path.is_file():
        return bytes_to_data_uri(path.read_bytes())
    return value


async def _tryon(args: argparse.Namespace) -> int:
    from main import build_pipeline

    config = load_config()
    pipeline = await build_pipeline(config, mock=args.mock)
    try:
        options = GenerationOptions.from_mapping(
            {"quality": args.quality, "style": args.style, "save_to_cache": not args.no_cache}
        )
        request = GenerationRequest(
            customer_image_ref=_image_ref(args.customer),
            product_image_ref=_image_ref(args.product),
            options=options,
        )
        result = await pipeline.orchestrator.generate_try_on(request, args.merchant)
    except TryOnError as exc:
        _print_json(exc.to_dict())
        return 1
    finally:
        await pipeline.aclose()

    _print_json(
        {
            "image_ref": result.image_ref,
            "processing_time_ms": result.processing_time_ms,
            "estimated_cost": str(result.estimated_cost),
            "recommended_size": result.recommended_size,
            "served_from_cache": result.served_from_cache,
            "analysis": result.analysis,
        }
    )
    return 0


async def _ledger():
    from tryon.services.usage_ledger import UsageLedger

    config = load_config()
    ledger = UsageLedger(config.usage_db_path, overage_rate=config.overage_rate)
    await ledger.init()
    return ledger


async def _usage(args: argparse.Namespace) -> int:
    ledger = await _ledger()
    usage = await ledger.get_current_usage(args.merchant)
    bill = await ledger.get_estimated_bill(args.merchant)
    _print_json(
        {
            "merchant_id": args.merchant,
            "period": ledger.current_period_key(),
            "plan": bill.plan.value,
            "used": usage.used,
            "limit": usage.limit,
            "remaining": usage.remaining,
            "overage": usage.overage,
            "percentage": round(usage.percentage, 2),
            "estimated_bill": {
                "base_fee": str(bill.base_fee),
                "overage_fee": str(bill.overage_fee),
                "overage_rate": str(bill.overage_rate),
                "total": str(bill.total),
            },
        }
    )
    return 0


async def _history(args: argparse.Namespace) -> int:
    ledger = await _ledger()
    periods = await ledger.get_billing_history(args.merchant, limit=args.limit)
    _print_json(
        [
            {
                "period": period.period_key,
                "included_quota": period.included_quota,
                "consumed": period.consumed_count,
                "overage": period.overage_count,
                "overage_charge": str(period.overage_charge),
                "total_charge": str(period.total_charge),
                "billed_at": period.billed_at.isoformat() if period.billed_at else None,
            }
            for period in periods
        ]
    )
    return 0


async def _set_plan(args: argparse.Namespace) -> int:
    ledger = await _ledger()
    record = await ledger.set_plan(
        args.merchant, Plan(args.plan), allow_overage=args.allow_overage
    )
    _print_json(
        {
            "merchant_id": record.merchant_id,
            "plan": record.plan.value,
            "included_quota": record.included_quota,
            "price": str(record.price),
            "allow_overage": record.allow_overage,
        }
    )
    return 0


def _command_run(args: argparse.Namespace) -> int:
    from main import run_service  # Local import to keep other commands light

    asyncio.run(run_service(mock=args.mock))
    return 0


def _async_command(handler):
    def _runner(args: argparse.Namespace) -> int:
        _load_env()
        setup_logging()
        return asyncio.run(handler(args))

    return _runner


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Virtual try-on management CLI")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Start the try-on service")
    run_parser.add_argument("--mock", action="store_true", help="Use the placeholder generator")
    run_parser.set_defaults(func=_command_run)

    check_parser = subparsers.add_parser("check", help="Run the environment self-check")
    check_parser.set_defaults(func=lambda _args: _command_check())

    tryon_parser = subparsers.add_parser("tryon", help="Generate one try-on image")
    tryon_parser.add_argument("--customer", required=True, help="File path, URL or base64")
    tryon_parser.add_argument("--product", required=True, help="File path, URL or base64")
    tryon_parser.add_argument("--merchant", required=True)
    tryon_parser.add_argument("--quality", choices=["standard", "hd"], default="standard")
    tryon_parser.add_argument("--style", choices=["studio", "casual"], default="studio")
    tryon_parser.add_argument("--no-cache", action="store_true", help="Do not store the result")
    tryon_parser.add_argument("--mock", action="store_true", help="Use the placeholder generator")
    tryon_parser.set_defaults(func=_async_command(_tryon))

    usage_parser = subparsers.add_parser("usage", help="Show usage for the current period")
    usage_parser.add_argument("--merchant", required=True)
    usage_parser.set_defaults(func=_async_command(_usage))

    history_parser = subparsers.add_parser("history", help="Show past billing periods")
    history_parser.add_argument("--merchant", required=True)
    history_parser.add_argument("--limit", type=int, default=12)
    history_parser.set_defaults(func=_async_command(_history))

    plan_parser = subparsers.add_parser("set-plan", help="Assign a subscription plan")
    plan_parser.add_argument("--merchant", required=True)
    plan_parser.add_argument("--plan", choices=[plan.value for plan in Plan], required=True)
    plan_parser.add_argument("--allow-overage", action="store_true")
    plan_parser.set_defaults(func=_async_command(_set_plan))

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
