"""Budget ledger ORM model.

BudgetDebitRecord is an append-only log: one row per admitted routing
decision. Period spend is never stored as a mutable counter; it is the sum
of the debits whose period start matches, so the ledger and the decision
log cannot drift apart.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from econ_router.database import Base


class BudgetDebitRecord(Base):
    """Append-only record of a routing decision's cost debit.

    Attributes:
        id: UUID primary key
        request_id: Request the decision was made for
        owner: Budget owner (project id, or "default")
        timestamp: UTC time the decision was returned
        tier: Tier the request was routed to
        mode: Economic mode in effect
        amount_usd: Estimated cost debited against both periods
        over_budget: Decision was admitted past the ceiling (performance mode)
        reason: Routing reason code
        input_tokens: Estimated prompt tokens
        output_tokens: Estimated completion tokens
        daily_period_start: UTC date of the daily period debited
        monthly_period_start: First day of the monthly period debited
    """

    __tablename__ = "budget_debits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Budget owner (project id or 'default')",
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    tier: Mapped[str] = mapped_column(String(20), nullable=False, comment="local | elastic | premium")
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_usd: Mapped[float] = mapped_column(Float, nullable=False)
    over_budget: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    monthly_period_start: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        Index("ix_budget_debits_owner_daily", "owner", "daily_period_start"),
        Index("ix_budget_debits_owner_monthly", "owner", "monthly_period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<BudgetDebitRecord owner={self.owner} tier={self.tier} "
            f"amount={self.amount_usd:.6f}>"
        )
