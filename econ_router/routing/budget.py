"""Budget ledger - daily and monthly spend per owner, in USD.

Every owner (a project id, or ``default``) has one daily and one monthly
period. Periods are created lazily and roll over lazily: any read or debit
first calls ``reset_if_expired``, which archives a finished period and opens
the current one. Period boundaries are UTC calendar days and months.

Admission is the router's job. The ledger only answers "how much is left"
and applies debits, which always succeed. The router holds both period
locks (``hold``) across check, decide and debit so concurrent requests can
never jointly overspend the binding ceiling.

Owners whose current periods are empty can be dropped with ``prune_idle``;
the optimization monitor does this on every budget check.
"""

from __future__ import annotations

import asyncio
import calendar
import dataclasses
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from econ_router.routing.store import InMemoryLedgerStore, LedgerEntry, LedgerStore

if TYPE_CHECKING:
    from econ_router.config import Settings

log = structlog.get_logger(__name__)

DEFAULT_OWNER = "default"


class PeriodKind(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


def period_bounds(kind: PeriodKind, now: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC boundaries of the period containing ``now``."""
    now = now.astimezone(UTC)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if kind == PeriodKind.DAILY:
        return start, start + timedelta(days=1)
    start = start.replace(day=1)
    end = (start + timedelta(days=32)).replace(day=1)
    return start, end


@dataclass
class BudgetPeriod:
    """Spend accumulated by one owner in one daily or monthly window.

    Attributes:
        kind: daily or monthly
        owner: Budget owner
        start: Inclusive UTC start
        end: Exclusive UTC end
        ceiling: USD ceiling for the window
        spent: USD debited so far (never decreases inside the window)
        requests: Debits applied so far
        alerts_fired: Threshold levels already alerted for this window
        loaded: Spend recorded by earlier processes has been added
    """

    kind: PeriodKind
    owner: str
    start: datetime
    end: datetime
    ceiling: float
    spent: float = 0.0
    requests: int = 0
    alerts_fired: set[AlertLevel] = field(default_factory=set)
    loaded: bool = False

    @property
    def remaining(self) -> float:
        return max(0.0, round(self.ceiling - self.spent, 9))

    @property
    def utilization(self) -> float:
        return self.spent / self.ceiling if self.ceiling > 0 else 0.0

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "ceiling_usd": self.ceiling,
            "spent_usd": round(self.spent, 6),
            "remaining_usd": round(self.remaining, 6),
            "utilization_pct": round(self.utilization * 100, 2),
            "requests": self.requests,
        }


@dataclass(frozen=True)
class BudgetSnapshot:
    """Point-in-time view of an owner's remaining budget."""

    owner: str
    daily_remaining: float
    monthly_remaining: float
    daily_spent: float
    monthly_spent: float
    daily_ceiling: float
    monthly_ceiling: float

    @property
    def binding_remaining(self) -> float:
        """The tighter of the two ceilings; admission is checked against this."""
        return min(self.daily_remaining, self.monthly_remaining)


@dataclass(frozen=True)
class BudgetAlert:
    owner: str
    kind: PeriodKind
    level: AlertLevel
    utilization: float
    spent: float
    ceiling: float
    period_start: datetime
    raised_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "period": self.kind.value,
            "level": self.level.value,
            "utilization_pct": round(self.utilization * 100, 2),
            "spent_usd": round(self.spent, 6),
            "ceiling_usd": self.ceiling,
            "period_start": self.period_start.isoformat(),
            "raised_at": self.raised_at.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BudgetLedger:
    """Tracks spend per owner against daily and monthly ceilings.

    All mutation is synchronous. The only awaits are acquiring the period
    locks and the one-time rehydration from the store, which happens before
    the locks are taken.
    """

    def __init__(
        self,
        daily_ceiling: float,
        monthly_ceiling: float,
        *,
        daily_overrides: dict[str, float] | None = None,
        monthly_overrides: dict[str, float] | None = None,
        alert_threshold: float = 0.80,
        critical_threshold: float = 0.95,
        store: LedgerStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        history_size: int = 90,
    ) -> None:
        """Initialize the ledger.

        Args:
            daily_ceiling: Default USD ceiling per UTC day
            monthly_ceiling: Default USD ceiling per UTC calendar month
            daily_overrides: Per-owner daily ceilings
            monthly_overrides: Per-owner monthly ceilings
            alert_threshold: Utilization that raises a warning alert
            critical_threshold: Utilization that raises a critical alert
            store: Debit persistence (in-memory when omitted)
            clock: Returns the current UTC time; injectable for tests
            history_size: Finished periods kept for reporting
        """
        if daily_ceiling <= 0 or monthly_ceiling <= 0:
            raise ValueError("Budget ceilings must be positive")
        if not 0 < alert_threshold <= critical_threshold <= 1:
            raise ValueError("Require 0 < alert_threshold <= critical_threshold <= 1")

        self._ceilings = {
            PeriodKind.DAILY: daily_ceiling,
            PeriodKind.MONTHLY: monthly_ceiling,
        }
        self._overrides = {
            PeriodKind.DAILY: dict(daily_overrides or {}),
            PeriodKind.MONTHLY: dict(monthly_overrides or {}),
        }
        self._alert_threshold = alert_threshold
        self._critical_threshold = critical_threshold
        self._store = store or InMemoryLedgerStore()
        self._clock = clock

        self._periods: dict[tuple[str, PeriodKind], BudgetPeriod] = {}
        self._locks: dict[tuple[str, PeriodKind], asyncio.Lock] = {}
        self._load_locks: dict[tuple[str, PeriodKind], asyncio.Lock] = {}
        self._holders: dict[str, int] = {}
        self._history: deque[BudgetPeriod] = deque(maxlen=history_size)

        log.info(
            "budget_ledger.initialized",
            daily_ceiling=daily_ceiling,
            monthly_ceiling=monthly_ceiling,
            owners_with_overrides=sorted(
                set(self._overrides[PeriodKind.DAILY]) | set(self._overrides[PeriodKind.MONTHLY])
            ),
            store=type(self._store).__name__,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: LedgerStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> BudgetLedger:
        return cls(
            settings.budget_daily_usd,
            settings.budget_monthly_usd,
            daily_overrides=settings.project_daily_budgets,
            monthly_overrides=settings.project_monthly_budgets,
            alert_threshold=settings.budget_alert_threshold,
            critical_threshold=settings.budget_critical_threshold,
            store=store,
            clock=clock,
        )

    @property
    def store(self) -> LedgerStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    def ceiling(self, kind: PeriodKind, owner: str = DEFAULT_OWNER) -> float:
        return self._overrides[kind].get(owner, self._ceilings[kind])

    # ------------------------------------------------------------------
    # Period lifecycle
    # ------------------------------------------------------------------

    def reset_if_expired(
        self, kind: PeriodKind, owner: str = DEFAULT_OWNER
    ) -> BudgetPeriod:
        """Return the current period, opening a fresh one if the old one ended."""
        now = self._clock()
        key = (owner, kind)
        period = self._periods.get(key)
        if period is not None and period.contains(now):
            return period

        if period is not None:
            self._history.append(period)
            log.info(
                "budget_ledger.period_rolled_over",
                owner=owner,
                kind=kind.value,
                spent=round(period.spent, 6),
                requests=period.requests,
                period_start=period.start.isoformat(),
            )

        start, end = period_bounds(kind, now)
        period = BudgetPeriod(
            kind=kind,
            owner=owner,
            start=start,
            end=end,
            ceiling=self.ceiling(kind, owner),
        )
        self._periods[key] = period
        return period

    async def ensure_loaded(self, owner: str = DEFAULT_OWNER) -> None:
        """Fold spend recorded by earlier processes into the current periods."""
        for kind in (PeriodKind.DAILY, PeriodKind.MONTHLY):
            await self._ensure_loaded(kind, owner)

    async def _ensure_loaded(self, kind: PeriodKind, owner: str) -> None:
        if self.reset_if_expired(kind, owner).loaded:
            return
        lock = self._load_locks.setdefault((owner, kind), asyncio.Lock())
        async with lock:
            period = self.reset_if_expired(kind, owner)
            if period.loaded:
                return
            baseline = await self._store.load_spend(owner, kind.value, period.start.date())
            current = self.reset_if_expired(kind, owner)
            # The period may have rolled over while the store was queried
            if current is period and not period.loaded:
                period.spent = round(period.spent + baseline, 9)
                period.loaded = True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def remaining(self, kind: PeriodKind, owner: str = DEFAULT_OWNER) -> float:
        return self.reset_if_expired(kind, owner).remaining

    def snapshot(self, owner: str = DEFAULT_OWNER) -> BudgetSnapshot:
        daily = self.reset_if_expired(PeriodKind.DAILY, owner)
        monthly = self.reset_if_expired(PeriodKind.MONTHLY, owner)
        return BudgetSnapshot(
            owner=owner,
            daily_remaining=daily.remaining,
            monthly_remaining=monthly.remaining,
            daily_spent=daily.spent,
            monthly_spent=monthly.spent,
            daily_ceiling=daily.ceiling,
            monthly_ceiling=monthly.ceiling,
        )

    def owners(self) -> list[str]:
        return sorted({owner for owner, _ in self._periods})

    def prune_idle(self) -> list[str]:
        """Forget owners with nothing spent in their current periods.

        An evicted owner is recreated (and rehydrated) on its next request.
        Owners inside ``hold`` or mid-rehydration are kept, as is the default
        owner.

        Returns:
            The evicted owners
        """
        evicted: list[str] = []
        for owner in self.owners():
            if owner == DEFAULT_OWNER or self._holders.get(owner):
                continue
            keys = [(owner, kind) for kind in (PeriodKind.DAILY, PeriodKind.MONTHLY)]
            load_locks = [self._load_locks.get(key) for key in keys]
            if any(lock is not None and lock.locked() for lock in load_locks):
                continue
            periods = [self.reset_if_expired(kind, owner) for _, kind in keys]
            if any(period.spent > 0 or period.alerts_fired for period in periods):
                continue
            for key in keys:
                self._periods.pop(key, None)
                self._locks.pop(key, None)
                self._load_locks.pop(key, None)
            evicted.append(owner)
        if evicted:
            log.debug("budget_ledger.pruned_idle_owners", count=len(evicted))
        return evicted

    def history(self) -> list[BudgetPeriod]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, owner: str = DEFAULT_OWNER) -> AsyncIterator[None]:
        """Hold the owner's daily then monthly lock.

        Lock order is fixed (daily before monthly) for every caller. If a
        period rolls over while waiting for the locks, they are released and
        the new period is rehydrated before trying again, so the store is
        never queried under the locks.
        """
        self._holders[owner] = self._holders.get(owner, 0) + 1
        try:
            while True:
                await self.ensure_loaded(owner)
                daily = self._locks.setdefault((owner, PeriodKind.DAILY), asyncio.Lock())
                monthly = self._locks.setdefault((owner, PeriodKind.MONTHLY), asyncio.Lock())
                async with daily:
                    async with monthly:
                        if self._loaded(owner):
                            yield
                            return
                log.debug("budget_ledger.rolled_over_while_waiting", owner=owner)
        finally:
            self._holders[owner] -= 1
            if not self._holders[owner]:
                del self._holders[owner]

    def _loaded(self, owner: str) -> bool:
        return all(
            self.reset_if_expired(kind, owner).loaded
            for kind in (PeriodKind.DAILY, PeriodKind.MONTHLY)
        )

    def debit(self, kind: PeriodKind, amount: float, owner: str = DEFAULT_OWNER) -> float:
        """Add ``amount`` to the current period and return the new total.

        Always succeeds for a non-negative amount.
        """
        if amount < 0:
            raise ValueError(f"Debit amount cannot be negative (got {amount})")
        period = self.reset_if_expired(kind, owner)
        if not period.loaded:
            # Rehydrating after this point would count the debit twice
            log.debug("budget_ledger.debit_before_load", owner=owner, kind=kind.value)
            period.loaded = True
        period.spent = round(period.spent + amount, 9)
        period.requests += 1
        return period.spent

    def record_spend(self, entry: LedgerEntry) -> list[BudgetAlert]:
        """Debit both periods for an admitted decision and persist the entry.

        Returns:
            Threshold alerts newly crossed by this debit
        """
        daily_total = self.debit(PeriodKind.DAILY, entry.amount, entry.owner)
        monthly_total = self.debit(PeriodKind.MONTHLY, entry.amount, entry.owner)

        daily = self._periods[(entry.owner, PeriodKind.DAILY)]
        monthly = self._periods[(entry.owner, PeriodKind.MONTHLY)]
        self._store.record(
            dataclasses.replace(
                entry,
                daily_period_start=daily.start.date(),
                monthly_period_start=monthly.start.date(),
            )
        )

        log.debug(
            "budget_ledger.debited",
            owner=entry.owner,
            amount=entry.amount,
            daily_total=daily_total,
            monthly_total=monthly_total,
        )
        return self.check_thresholds(entry.owner)

    # ------------------------------------------------------------------
    # Alerts & reporting
    # ------------------------------------------------------------------

    def check_thresholds(self, owner: str | None = None) -> list[BudgetAlert]:
        """Return alerts for thresholds newly crossed since the last check.

        Each (owner, period, level) fires at most once per period. When a
        single jump crosses both thresholds only the critical alert fires.
        """
        owners = [owner] if owner is not None else self.owners()
        alerts: list[BudgetAlert] = []
        for name in owners:
            for kind in (PeriodKind.DAILY, PeriodKind.MONTHLY):
                alert = self._check_period(self.reset_if_expired(kind, name))
                if alert is not None:
                    alerts.append(alert)
        return alerts

    def _check_period(self, period: BudgetPeriod) -> BudgetAlert | None:
        utilization = period.utilization
        if utilization >= self._critical_threshold:
            level = AlertLevel.CRITICAL
        elif utilization >= self._alert_threshold:
            level = AlertLevel.WARNING
        else:
            return None
        if level in period.alerts_fired:
            return None

        period.alerts_fired.add(level)
        if level == AlertLevel.CRITICAL:
            period.alerts_fired.add(AlertLevel.WARNING)

        return BudgetAlert(
            owner=period.owner,
            kind=period.kind,
            level=level,
            utilization=utilization,
            spent=period.spent,
            ceiling=period.ceiling,
            period_start=period.start,
            raised_at=self._clock(),
        )

    def forecast_monthly(self, owner: str = DEFAULT_OWNER) -> dict[str, Any]:
        """Linear projection of month-end spend from the month-to-date average."""
        period = self.reset_if_expired(PeriodKind.MONTHLY, owner)
        now = self._clock().astimezone(UTC)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        daily_average = period.spent / now.day
        forecast = daily_average * days_in_month
        return {
            "forecast_usd": round(forecast, 6),
            "daily_average_usd": round(daily_average, 6),
            "days_remaining": days_in_month - now.day,
            "ceiling_usd": period.ceiling,
            "projected_overrun_usd": round(max(0.0, forecast - period.ceiling), 6),
        }

    def status(self, owner: str = DEFAULT_OWNER) -> dict[str, Any]:
        daily = self.reset_if_expired(PeriodKind.DAILY, owner)
        monthly = self.reset_if_expired(PeriodKind.MONTHLY, owner)
        return {
            "owner": owner,
            "daily": daily.to_dict(),
            "monthly": monthly.to_dict(),
            "binding_remaining_usd": round(min(daily.remaining, monthly.remaining), 6),
            "forecast": self.forecast_monthly(owner),
        }
