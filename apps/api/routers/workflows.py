"""Script workflow router."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.users import ensure_user
from services.workflows import create_workflow_service, get_workflow_service, list_workflows_service

router = APIRouter()


class CreateWorkflowRequest(BaseModel):
    title: Optional[str] = None
    topic: Optional[str] = None
    niche: Optional[str] = None
    target_duration: Optional[int] = Field(default=None, ge=1)
    workflow_data: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None


@router.post("")
async def create_workflow(
    request: CreateWorkflowRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await create_workflow_service(
        user_id=scoped_user_id,
        payload=request.model_dump(exclude_none=True, exclude={"user_id"}),
        db=db,
    )


@router.get("")
async def list_workflows(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_workflows_service(user_id=auth.user_id, limit=limit, db=db)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_workflow_service(user_id=auth.user_id, workflow_id=workflow_id, db=db)
