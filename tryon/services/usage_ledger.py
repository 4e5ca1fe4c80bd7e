"""SQLite ledger of per-merchant monthly try-on usage."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Generator, List, Optional

from logger import get_logger, info_domain
from tryon.errors import QuotaExceeded
from tryon.models import PLAN_CONFIGS, Plan, QuotaStatus, UsagePeriod

LOGGER = get_logger("tryon.usage")

DEFAULT_OVERAGE_RATE = Decimal("0.50")
_CENTS = Decimal("0.01")


def period_key_for(moment: datetime) -> str:
    """Return the calendar-month key, e.g. ``2025-03``."""

    return f"{moment.year:04d}-{moment.month:02d}"


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class MerchantPlan:
    merchant_id: str
    plan: Plan
    allow_overage: bool = False

    @property
    def included_quota(self) -> int:
        return PLAN_CONFIGS[self.plan].included_quota

    @property
    def price(self) -> Decimal:
        return PLAN_CONFIGS[self.plan].price


@dataclass(frozen=True, slots=True)
class UsageSummary:
    used: int
    limit: int
    remaining: int
    overage: int
    overage_charges: Decimal
    percentage: float


@dataclass(frozen=True, slots=True)
class EstimatedBill:
    plan: Plan
    base_fee: Decimal
    overage_fee: Decimal
    total: Decimal
    included_quota: int
    used: int
    overage: int
    overage_rate: Decimal


class UsageLedger:
    """Durable usage counters; every increment is one serialized transaction."""

    def __init__(
        self,
        db_path: Path,
        *,
        overage_rate: Decimal = DEFAULT_OVERAGE_RATE,
        default_plan: Plan = Plan.ATELIER,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db_path = db_path
        self._overage_rate = overage_rate
        self._default_plan = default_plan
        self._clock = clock
        self._lock: asyncio.Lock | None = None

    @property
    def overage_rate(self) -> Decimal:
        return self._overage_rate

    async def init(self) -> None:
        """Initialize database schema."""

        await asyncio.to_thread(self._create_schema)

    def current_period_key(self) -> str:
        return period_key_for(self._clock())

    async def set_plan(
        self, merchant_id: str, plan: Plan, *, allow_overage: bool = False
    ) -> MerchantPlan:
        record = MerchantPlan(merchant_id=merchant_id, plan=plan, allow_overage=allow_overage)
        await asyncio.to_thread(self._upsert_merchant_sync, record)
        return record

    async def get_plan(self, merchant_id: str) -> MerchantPlan:
        record = await asyncio.to_thread(self._get_merchant_sync, merchant_id)
        if record is None:
            return MerchantPlan(merchant_id=merchant_id, plan=self._default_plan)
        return record

    async def check_quota(self, merchant_id: str) -> QuotaStatus:
        plan = await self.get_plan(merchant_id)
        period = await self.get_usage_period(merchant_id)
        used = period.consumed_count if period else 0
        limit = plan.included_quota
        remaining = max(0, limit - used)
        allowed = used < limit or plan.allow_overage
        return QuotaStatus(allowed=allowed, used=used, limit=limit, remaining=remaining)

    async def ensure_quota(self, merchant_id: str) -> QuotaStatus:
        """Return the quota status or raise :class:`QuotaExceeded`."""

        status = await self.check_quota(merchant_id)
        if not status.allowed:
            info_domain(
                "tryon.usage",
                "Quota exhausted",
                stage="QUOTA_REJECTED",
                merchant_id=merchant_id,
                used=status.used,
                limit=status.limit,
            )
            raise QuotaExceeded(
                merchant_id, used=status.used, limit=status.limit, remaining=status.remaining
            )
        return status

    async def record_usage(self, merchant_id: str) -> UsagePeriod:
        """Count one successful generation in the current period."""

        plan = await self.get_plan(merchant_id)
        moment = self._clock()
        async with self._ensure_lock():
            period = await asyncio.to_thread(self._increment_sync, plan, moment)
        LOGGER.debug(
            "Usage recorded",
            merchant_id=merchant_id,
            payload={"period": period.period_key, "consumed": period.consumed_count},
        )
        return period

    async def get_usage_period(
        self, merchant_id: str, period_key: Optional[str] = None
    ) -> Optional[UsagePeriod]:
        key = period_key or self.current_period_key()
        return await asyncio.to_thread(self._get_period_sync, merchant_id, key)

    async def get_current_usage(self, merchant_id: str) -> UsageSummary:
        plan = await self.get_plan(merchant_id)
        period = await self.get_usage_period(merchant_id)
        used = period.consumed_count if period else 0
        limit = plan.included_quota
        overage = max(0, used - limit)
        return UsageSummary(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            overage=overage,
            overage_charges=_money(overage * self._overage_rate),
            percentage=(used / limit) * 100 if limit else 0.0,
        )

    async def get_monthly_billing(
        self, merchant_id: str, period_key: str
    ) -> Optional[UsagePeriod]:
        return await self.get_usage_period(merchant_id, period_key)

    async def get_billing_history(self, merchant_id: str, limit: int = 12) -> List[UsagePeriod]:
        return await asyncio.to_thread(self._list_periods_sync, merchant_id, limit)

    async def get_estimated_bill(self, merchant_id: str) -> EstimatedBill:
        plan = await self.get_plan(merchant_id)
        usage = await self.get_current_usage(merchant_id)
        return EstimatedBill(
            plan=plan.plan,
            base_fee=plan.price,
            overage_fee=usage.overage_charges,
            total=plan.price + usage.overage_charges,
            included_quota=usage.limit,
            used=usage.used,
            overage=usage.overage,
            overage_rate=self._overage_rate,
        )

    def _ensure_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _create_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS merchants (
                    merchant_id TEXT PRIMARY KEY,
                    plan TEXT NOT NULL,
                    allow_overage INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_periods (
                    merchant_id TEXT NOT NULL,
                    period_key TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    month_number INTEGER NOT NULL,
                    included_quota INTEGER NOT NULL,
                    consumed_count INTEGER NOT NULL DEFAULT 0,
                    overage_count INTEGER NOT NULL DEFAULT 0,
                    overage_charge TEXT NOT NULL DEFAULT '0.00',
                    total_charge TEXT NOT NULL DEFAULT '0.00',
                    billed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (merchant_id, period_key)
                )
                """
            )

    def _upsert_merchant_sync(self, record: MerchantPlan) -> None:
        now = self._clock().isoformat()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO merchants (merchant_id, plan, allow_overage, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(merchant_id) DO UPDATE SET
                    plan=excluded.plan,
                    allow_overage=excluded.allow_overage,
                    updated_at=excluded.updated_at
                """,
                (record.merchant_id, record.plan.value, 1 if record.allow_overage else 0, now),
            )

    def _get_merchant_sync(self, merchant_id: str) -> Optional[MerchantPlan]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT merchant_id, plan, allow_overage FROM merchants WHERE merchant_id = ?",
                (merchant_id,),
            ).fetchone()
        if not row:
            return None
        return MerchantPlan(
            merchant_id=row["merchant_id"],
            plan=Plan(row["plan"]),
            allow_overage=bool(row["allow_overage"]),
        )

    def _increment_sync(self, plan: MerchantPlan, moment: datetime) -> UsagePeriod:
        key = period_key_for(moment)
        now = moment.isoformat()
        included = plan.included_quota
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO usage_periods (
                        merchant_id, period_key, year, month_number, included_quota,
                        consumed_count, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    ON CONFLICT(merchant_id, period_key) DO UPDATE SET
                        consumed_count = consumed_count + 1,
                        included_quota = excluded.included_quota,
                        updated_at = excluded.updated_at
                    """,
                    (plan.merchant_id, key, moment.year, moment.month, included, now, now),
                )
                row = conn.execute(
                    "SELECT consumed_count FROM usage_periods WHERE merchant_id = ? AND period_key = ?",
                    (plan.merchant_id, key),
                ).fetchone()
                consumed = int(row["consumed_count"])
                overage_count = max(0, consumed - included)
                overage_charge = _money(overage_count * self._overage_rate)
                total_charge = _money(plan.price + overage_charge)
                conn.execute(
                    """
                    UPDATE usage_periods
                    SET overage_count = ?, overage_charge = ?, total_charge = ?
                    WHERE merchant_id = ? AND period_key = ?
                    """,
                    (overage_count, str(overage_charge), str(total_charge), plan.merchant_id, key),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return UsagePeriod(
            merchant_id=plan.merchant_id,
            period_key=key,
            included_quota=included,
            consumed_count=consumed,
            overage_count=overage_count,
            overage_charge=overage_charge,
            total_charge=total_charge,
        )

    def _get_period_sync(self, merchant_id: str, period_key: str) -> Optional[UsagePeriod]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT merchant_id, period_key, included_quota, consumed_count, overage_count,
                       overage_charge, total_charge, billed_at
                FROM usage_periods
                WHERE merchant_id = ? AND period_key = ?
                """,
                (merchant_id, period_key),
            ).fetchone()
        return self._row_to_period(row) if row else None

    def _list_periods_sync(self, merchant_id: str, limit: int) -> List[UsagePeriod]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT merchant_id, period_key, included_quota, consumed_count, overage_count,
                       overage_charge, total_charge, billed_at
                FROM usage_periods
                WHERE merchant_id = ?
                ORDER BY year DESC, month_number DESC
                LIMIT ?
                """,
                (merchant_id, max(limit, 0)),
            ).fetchall()
        return [self._row_to_period(row) for row in rows]

    @staticmethod
    def _row_to_period(row: sqlite3.Row) -> UsagePeriod:
        billed_raw = row["billed_at"]
        return UsagePeriod(
            merchant_id=row["merchant_id"],
            period_key=row["period_key"],
            included_quota=int(row["included_quota"]),
            consumed_count=int(row["consumed_count"]),
            overage_count=int(row["overage_count"]),
            overage_charge=Decimal(row["overage_charge"]),
            total_charge=Decimal(row["total_charge"]),
            billed_at=datetime.fromisoformat(billed_raw) if billed_raw else None,
        )


__all__ = [
    "DEFAULT_OVERAGE_RATE",
    "EstimatedBill",
    "MerchantPlan",
    "UsageLedger",
    "UsageSummary",
    "period_key_for",
]
