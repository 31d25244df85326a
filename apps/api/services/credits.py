"""Research credit accounting on top of the append-only ledger."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

RECENT_ENTRY_LIMIT = 30


def period_key(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m")


def credit_costs() -> Dict[str, int]:
    return {
        "research_job": max(int(settings.CREDIT_COST_RESEARCH_JOB), 0),
        "research_run": max(int(settings.CREDIT_COST_RESEARCH_RUN), 0),
    }


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    total = await db.scalar(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(total or 0)


async def _append(
    db: AsyncSession,
    *,
    user_id: str,
    entry_type: str,
    delta: int,
    reason: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    external_reference: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type,
        delta_credits=int(delta),
        balance_after=await get_credit_balance(user_id, db) + int(delta),
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        external_reference=external_reference,
        period_key=period_key(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def ensure_monthly_credit_grant(user_id: str, db: AsyncSession) -> int:
    """Grant ``FREE_MONTHLY_CREDITS`` once per calendar month; returns the balance."""
    current_period = period_key()
    granted = await db.scalar(
        select(CreditLedger.id)
        .where(
            CreditLedger.user_id == user_id,
            CreditLedger.entry_type == "monthly_grant",
            CreditLedger.period_key == current_period,
        )
        .limit(1)
    )
    if not granted:
        await _append(
            db,
            user_id=user_id,
            entry_type="monthly_grant",
            delta=max(int(settings.FREE_MONTHLY_CREDITS), 0),
            reason=f"Free research credits for {current_period}",
        )
        await db.commit()
    return await get_credit_balance(user_id, db)


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    reason: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Debit ``cost`` credits or raise 402; ``commit=False`` leaves the debit in the caller's transaction."""
    amount = max(int(cost), 0)
    balance = await ensure_monthly_credit_grant(user_id, db)
    if amount == 0:
        return {"charged": 0, "balance_after": balance}
    if balance < amount:
        raise HTTPException(
            status_code=402,
            detail=f"Insufficient credits. Required: {amount}, available: {balance}. Top up credits to continue.",
        )

    entry = await _append(
        db,
        user_id=user_id,
        entry_type="debit",
        delta=-amount,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    if commit:
        await db.commit()
    return {"charged": amount, "balance_after": entry.balance_after}


async def refund_credits(
    user_id: str,
    db: AsyncSession,
    *,
    reference_type: str,
    reference_id: str,
    reason: str,
) -> int:
    """Reverse the net debit recorded against a reference; returns credits refunded.

    Repeated calls are no-ops once the reference nets to zero. The caller commits.
    """
    net = await db.scalar(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(
            CreditLedger.user_id == user_id,
            CreditLedger.reference_type == reference_type,
            CreditLedger.reference_id == reference_id,
        )
    )
    owed = -int(net or 0)
    if owed <= 0:
        return 0
    await _append(
        db,
        user_id=user_id,
        entry_type="refund",
        delta=owed,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    logger.info("Refunded %s credits to %s for %s %s", owed, user_id, reference_type, reference_id)
    return owed


async def add_credit_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    billing_reference: str,
    reason: str = "Credit top-up",
) -> Dict[str, Any]:
    if int(credits) <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    await ensure_monthly_credit_grant(user_id, db)
    external_reference = f"{provider}:{billing_reference}"
    already_applied = await db.scalar(
        select(CreditLedger.id)
        .where(CreditLedger.user_id == user_id, CreditLedger.external_reference == external_reference)
        .limit(1)
    )
    if already_applied:
        return {"balance_after": await get_credit_balance(user_id, db), "duplicate": True}

    entry = await _append(
        db,
        user_id=user_id,
        entry_type="topup",
        delta=int(credits),
        reason=reason,
        external_reference=external_reference,
    )
    await db.commit()
    return {"balance_after": entry.balance_after, "duplicate": False}


def serialize_ledger_entry(entry: CreditLedger) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "entry_type": entry.entry_type,
        "delta_credits": entry.delta_credits,
        "balance_after": entry.balance_after,
        "reason": entry.reason,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "period_key": entry.period_key,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await ensure_monthly_credit_grant(user_id, db)
    current_period = period_key()
    spent = await db.scalar(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(
            CreditLedger.user_id == user_id,
            CreditLedger.period_key == current_period,
            CreditLedger.entry_type.in_(("debit", "refund")),
        )
    )
    entries = (
        await db.execute(
            select(CreditLedger)
            .where(CreditLedger.user_id == user_id)
            .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
            .limit(RECENT_ENTRY_LIMIT)
        )
    ).scalars().all()
    return {
        "balance": balance,
        "period_key": current_period,
        "free_monthly_credits": max(int(settings.FREE_MONTHLY_CREDITS), 0),
        "spent_this_period": -int(spent or 0),
        "costs": credit_costs(),
        "recent_entries": [serialize_ledger_entry(entry) for entry in entries],
    }
