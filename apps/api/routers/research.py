"""Research router: async jobs, synchronous runs, sources and page fetches."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.research_jobs import (
    cancel_research_job_service,
    create_research_job_service,
    get_research_job_service,
    list_workflow_sources_service,
    run_research_now_service,
    update_source_service,
)
from services.users import ensure_user
from services.web_content import fetch_with_retry

router = APIRouter()
logger = logging.getLogger(__name__)


class ResearchRequestBase(BaseModel):
    query: Optional[str] = None
    topic: Optional[str] = None
    context: Optional[str] = None
    niche: Optional[str] = None
    target_duration: Optional[int] = Field(default=None, ge=1)
    enable_expansion: Optional[bool] = None
    content_idea_info: Optional[Any] = None
    user_id: Optional[str] = None


class CreateResearchJobRequest(ResearchRequestBase):
    workflow_id: str
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


class RunResearchRequest(ResearchRequestBase):
    query: str = Field(min_length=1)
    workflow_id: Optional[str] = None


class UpdateSourceRequest(BaseModel):
    is_starred: Optional[bool] = None
    is_selected: Optional[bool] = None
    fact_check_status: Optional[str] = None


class FetchContentRequest(BaseModel):
    url: str
    max_retries: int = Field(default=2, ge=0, le=5)
    use_reader: bool = True
    fallback_to_raw: bool = True


def _payload(request: BaseModel) -> Dict[str, Any]:
    return request.model_dump(exclude_none=True, exclude={"user_id"})


@router.post("/jobs")
async def create_research_job(
    request: CreateResearchJobRequest,
    _rate_limit: None = Depends(rate_limit("research_jobs", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await create_research_job_service(user_id=scoped_user_id, payload=_payload(request), db=db)


@router.get("/jobs/{job_id}")
async def get_research_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_research_job_service(user_id=auth.user_id, job_id=job_id, db=db)


@router.post("/jobs/{job_id}/cancel")
async def cancel_research_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await cancel_research_job_service(user_id=auth.user_id, job_id=job_id, db=db)


@router.post("/run")
async def run_research(
    request: RunResearchRequest,
    _rate_limit: None = Depends(rate_limit("research_run", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await run_research_now_service(user_id=scoped_user_id, payload=_payload(request), db=db)


@router.get("/workflows/{workflow_id}/sources")
async def list_workflow_sources(
    workflow_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_workflow_sources_service(user_id=auth.user_id, workflow_id=workflow_id, db=db)


@router.patch("/sources/{source_id}")
async def update_source(
    source_id: str,
    request: UpdateSourceRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await update_source_service(
        user_id=auth.user_id,
        source_id=source_id,
        payload=request.model_dump(exclude_none=True),
        db=db,
    )


@router.post("/fetch_content")
async def fetch_content(
    request: FetchContentRequest,
    _rate_limit: None = Depends(rate_limit("research_fetch_content", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    result = await fetch_with_retry(
        request.url,
        max_retries=request.max_retries,
        use_reader=request.use_reader,
        fallback_to_raw=request.fallback_to_raw,
    )
    if not result["success"]:
        logger.info("Content fetch for %s failed for user %s: %s", request.url, auth.user_id, result.get("error"))
    return result
