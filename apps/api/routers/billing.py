"""Research credit balance and manual top-ups."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_billing_admin
from routers.rate_limit import rate_limit
from services.credits import add_credit_purchase, get_credit_summary
from services.users import ensure_user

router = APIRouter()


class CreditTopUpRequest(BaseModel):
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = Field(default=None, max_length=200)
    user_id: str = Field(min_length=1, max_length=200)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await get_credit_summary(scoped_user_id, db)


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    _admin: None = Depends(require_billing_admin),
    db: AsyncSession = Depends(get_db),
):
    """Operator top-up, applied once per ``billing_reference``; replays report ``duplicate``."""
    await ensure_user(db, request.user_id)
    result = await add_credit_purchase(
        user_id=request.user_id,
        db=db,
        credits=request.credits,
        provider="manual",
        billing_reference=request.billing_reference or str(uuid.uuid4()),
    )
    return {
        "ok": True,
        "credits_added": 0 if result["duplicate"] else request.credits,
        "duplicate": result["duplicate"],
        "balance_after": result["balance_after"],
    }
