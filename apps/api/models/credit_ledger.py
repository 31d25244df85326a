"""Append-only ledger of research credits."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """A signed credit movement; balances are sums over a user's entries."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_grant_lookup", "user_id", "entry_type", "period_key"),
        Index("ix_credit_ledger_reference", "reference_type", "reference_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # monthly_grant, debit, refund, topup
    delta_credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False, default=0)
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)  # research_job, research_run
    reference_id = Column(String, nullable=True)
    external_reference = Column(String, nullable=True)
    period_key = Column(String(7), nullable=False)  # YYYY-MM
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
