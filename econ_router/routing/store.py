"""Persistence boundary for the budget ledger.

The ledger mutates spend in memory while holding its period locks and hands
each debit to a LedgerStore. ``record`` is synchronous and must never block:
durable stores enqueue and write from a background task. ``load_spend`` is
only awaited outside the period locks, once per period, to rehydrate spend
after a restart.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from econ_router.models.ledger import BudgetDebitRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    """One admitted decision's debit, as handed to the store.

    The ledger fills in the period starts when it applies the debit.
    """

    request_id: str
    owner: str
    amount: float
    tier: str
    mode: str
    reason: str
    over_budget: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    daily_period_start: date | None = None
    monthly_period_start: date | None = None


class LedgerStore(ABC):
    """Where debits go after the in-memory ledger has applied them."""

    @abstractmethod
    async def load_spend(self, owner: str, kind: str, period_start: date) -> float:
        """Sum of recorded debits for ``owner`` in the period starting at ``period_start``.

        Args:
            owner: Budget owner
            kind: "daily" or "monthly"
            period_start: UTC date the period begins

        Returns:
            Total USD already debited in that period (0.0 if none)
        """
        ...

    @abstractmethod
    def record(self, entry: LedgerEntry) -> None:
        """Accept a debit. Must not perform I/O on the caller's stack."""
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def flush(self) -> None:
        return None


class InMemoryLedgerStore(LedgerStore):
    """Process-local store: per-period sums plus a bounded tail of entries.

    Spend does not survive a restart.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._totals: dict[tuple[str, str, date], float] = {}
        self._recent: deque[LedgerEntry] = deque(maxlen=history_size)

    async def load_spend(self, owner: str, kind: str, period_start: date) -> float:
        return self._totals.get((owner, str(kind), period_start), 0.0)

    def record(self, entry: LedgerEntry) -> None:
        self._recent.append(entry)
        for kind, start in (
            ("daily", entry.daily_period_start),
            ("monthly", entry.monthly_period_start),
        ):
            if start is None:
                continue
            key = (entry.owner, kind, start)
            self._totals[key] = round(self._totals.get(key, 0.0) + entry.amount, 9)

    def recent(self) -> list[LedgerEntry]:
        return list(self._recent)


class SqlLedgerStore(LedgerStore):
    """Append-only ``budget_debits`` table written from a background queue.

    Each debit becomes one row; period spend is rehydrated with SUM().
    A failed batch is logged and dropped; the in-memory ledger stays correct
    for the life of the process.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._batch_size = batch_size
        self._queue: asyncio.Queue[LedgerEntry] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None

    async def load_spend(self, owner: str, kind: str, period_start: date) -> float:
        column = (
            BudgetDebitRecord.daily_period_start
            if kind == "daily"
            else BudgetDebitRecord.monthly_period_start
        )
        stmt = select(func.coalesce(func.sum(BudgetDebitRecord.amount_usd), 0.0)).where(
            BudgetDebitRecord.owner == owner,
            column == period_start,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            total = float(result.scalar_one())

        log.info(
            "ledger_store.spend_loaded",
            owner=owner,
            kind=str(kind),
            period_start=period_start.isoformat(),
            total_usd=total,
        )
        return total

    def record(self, entry: LedgerEntry) -> None:
        self._queue.put_nowait(entry)

    async def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())
            log.info("ledger_store.writer_started")

    async def flush(self) -> None:
        """Wait until every queued debit has been written (or dropped)."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._writer is None:
            return
        await self.flush()
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None
        log.info("ledger_store.writer_stopped")

    async def _drain(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self._batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                await self._write(batch)
            except SQLAlchemyError as exc:
                log.error(
                    "ledger_store.write_failed",
                    entries=len(batch),
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def _write(self, batch: list[LedgerEntry]) -> None:
        async with self._session_factory() as session:
            session.add_all(
                [
                    BudgetDebitRecord(
                        request_id=entry.request_id,
                        owner=entry.owner,
                        timestamp=entry.timestamp,
                        tier=entry.tier,
                        mode=entry.mode,
                        amount_usd=entry.amount,
                        over_budget=entry.over_budget,
                        reason=entry.reason,
                        input_tokens=entry.input_tokens,
                        output_tokens=entry.output_tokens,
                        daily_period_start=entry.daily_period_start,
                        monthly_period_start=entry.monthly_period_start,
                    )
                    for entry in batch
                ]
            )
            await session.commit()
        log.debug("ledger_store.batch_written", entries=len(batch))
