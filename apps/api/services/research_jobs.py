"""Research job lifecycle: creation, atomic claim, processing, retry and sources."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.research_job import ResearchJob
from models.research_source import ResearchSource
from models.script_workflow import ScriptWorkflow
from services.credits import consume_credits, ensure_monthly_credit_grant, refund_credits
from services.research_expander import calculate_total_words
from services.research_queue import enqueue_research_processing
from services.research_search import perform_enhanced_research
from services.web_content import enrich_sources_with_full_content

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")
CANCELLABLE_STATUSES = ("pending", "processing")
CLAIM_ATTEMPTS = 3
MAX_ERROR_LENGTH = 1000
RESEARCH_PARAM_KEYS = (
    "query",
    "topic",
    "context",
    "niche",
    "target_duration",
    "enable_expansion",
    "content_idea_info",
)

ResearchFn = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_research_job(job: ResearchJob) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "workflow_id": job.workflow_id,
        "status": job.status,
        "priority": int(job.priority or 0),
        "progress": int(job.progress or 0),
        "current_step": job.current_step,
        "retry_count": int(job.retry_count or 0),
        "max_retries": int(job.max_retries or 0),
        "research_params": job.research_params or {},
        "research_results": job.research_results,
        "error_message": job.error_message,
        "processing_time_seconds": job.processing_time_seconds,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
    }


def serialize_research_source(row: ResearchSource) -> Dict[str, Any]:
    return {
        "id": row.id,
        "workflow_id": row.workflow_id,
        "job_id": row.job_id,
        "source_url": row.source_url,
        "source_title": row.source_title,
        "source_content": row.source_content,
        "source_type": row.source_type,
        "relevance": row.relevance,
        "is_starred": bool(row.is_starred),
        "is_selected": bool(row.is_selected),
        "fact_check_status": row.fact_check_status,
        "search_category": row.search_category,
        "expansion_query": row.expansion_query,
        "word_count": int(row.word_count or 0),
        "added_at": _iso(row.added_at),
    }


async def get_owned_workflow(db: AsyncSession, *, user_id: str, workflow_id: str) -> ScriptWorkflow:
    result = await db.execute(select(ScriptWorkflow).where(ScriptWorkflow.id == workflow_id))
    workflow = result.scalar_one_or_none()
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    if workflow.user_id != user_id:
        raise HTTPException(status_code=403, detail="Workflow belongs to another user")
    return workflow


def _research_params(payload: Dict[str, Any], workflow: ScriptWorkflow) -> Dict[str, Any]:
    params = {key: payload.get(key) for key in RESEARCH_PARAM_KEYS if payload.get(key) is not None}
    if not params.get("topic") and workflow.topic:
        params["topic"] = workflow.topic
    if not params.get("niche") and workflow.niche:
        params["niche"] = workflow.niche
    if params.get("target_duration") is None and workflow.target_duration:
        params["target_duration"] = workflow.target_duration
    params.setdefault("enable_expansion", True)
    return params


def _trigger_processing(job_id: str) -> Optional[str]:
    """Best-effort worker trigger; cron or the runner endpoint picks up misses."""
    try:
        queue_job = enqueue_research_processing(job_id)
        return str(queue_job.id)
    except Exception as exc:
        logger.warning("Research job %s created but worker trigger failed: %s", job_id, exc)
        return None


async def create_research_job_service(
    *,
    user_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    workflow_id = _safe_text(payload.get("workflow_id"))
    if not workflow_id:
        raise HTTPException(status_code=400, detail="Workflow ID is required")
    if not _safe_text(payload.get("query")) and not _safe_text(payload.get("topic")):
        raise HTTPException(status_code=400, detail="Query or topic is required")

    workflow = await get_owned_workflow(db, user_id=user_id, workflow_id=workflow_id)

    existing = await db.execute(
        select(ResearchJob)
        .where(
            ResearchJob.workflow_id == workflow_id,
            ResearchJob.status.in_(ACTIVE_STATUSES),
        )
        .limit(1)
    )
    active_job = existing.scalar_one_or_none()
    if active_job:
        logger.info("Research job %s already active for workflow %s", active_job.id, workflow_id)
        return {
            **serialize_research_job(active_job),
            "message": "Research is already in progress",
            "credits": {"charged": 0},
        }

    job_id = str(uuid.uuid4())
    charge = await consume_credits(
        user_id,
        db,
        cost=max(int(settings.CREDIT_COST_RESEARCH_JOB), 0),
        reason="Research job",
        reference_type="research_job",
        reference_id=job_id,
        commit=False,
    )
    job = ResearchJob(
        id=job_id,
        workflow_id=workflow_id,
        user_id=user_id,
        status="pending",
        priority=_safe_int(payload.get("priority"), settings.RESEARCH_JOB_DEFAULT_PRIORITY),
        retry_count=0,
        max_retries=max(_safe_int(payload.get("max_retries"), settings.RESEARCH_JOB_MAX_RETRIES), 0),
        progress=0,
        current_step="queued",
        research_params=_research_params(payload, workflow),
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info("Research job %s created for workflow %s", job.id, workflow_id)

    queue_job_id = _trigger_processing(job.id)
    if queue_job_id:
        job.queue_job_id = queue_job_id
        await db.commit()
        await db.refresh(job)

    return {
        **serialize_research_job(job),
        "message": "Research job created. Processing will begin shortly.",
        "poll_url": f"/research/jobs/{job.id}",
        "credits": charge,
    }


async def _get_owned_job(db: AsyncSession, *, user_id: str, job_id: str) -> ResearchJob:
    result = await db.execute(
        select(ResearchJob).where(
            ResearchJob.id == job_id,
            ResearchJob.user_id == user_id,
        )
    )
    job = result.scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=404, detail="Research job not found")
    return job


async def get_research_job_service(*, user_id: str, job_id: str, db: AsyncSession) -> Dict[str, Any]:
    job = await _get_owned_job(db, user_id=user_id, job_id=job_id)
    payload = serialize_research_job(job)
    if job.status == "completed":
        count = await db.execute(select(ResearchSource.id).where(ResearchSource.job_id == job.id))
        payload["source_count"] = len(count.scalars().all())
    return payload


async def cancel_research_job_service(*, user_id: str, job_id: str, db: AsyncSession) -> Dict[str, Any]:
    job = await _get_owned_job(db, user_id=user_id, job_id=job_id)
    if job.status not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Research job is already {job.status}")
    was_queued = job.status == "pending"
    job.status = "cancelled"
    job.current_step = "cancelled"
    job.completed_at = datetime.now(timezone.utc)
    refunded = 0
    if was_queued:
        refunded = await refund_credits(
            user_id,
            db,
            reference_type="research_job",
            reference_id=job.id,
            reason="Research job cancelled before processing",
        )
    await db.commit()
    await db.refresh(job)
    return {**serialize_research_job(job), "credits_refunded": refunded}


async def claim_next_research_job(db: AsyncSession) -> Optional[ResearchJob]:
    """Atomically move the best pending job to ``processing``.

    Candidates are skipped when another transaction holds their row lock, and
    the guarded UPDATE only succeeds while the row is still pending, so two
    claimers never receive the same job.
    """
    for _ in range(CLAIM_ATTEMPTS):
        result = await db.execute(
            select(ResearchJob.id)
            .where(ResearchJob.status == "pending")
            .order_by(ResearchJob.priority.desc(), ResearchJob.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job_id = result.scalar_one_or_none()
        if job_id is None:
            await db.rollback()
            return None

        claimed = await db.execute(
            update(ResearchJob)
            .where(ResearchJob.id == job_id, ResearchJob.status == "pending")
            .values(
                status="processing",
                started_at=datetime.now(timezone.utc),
                current_step="initializing",
                progress=5,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount == 1:
            return await db.get(ResearchJob, job_id, populate_existing=True)
        logger.info("Research job %s was claimed concurrently; trying next", job_id)
    return None


def next_failure_state(retry_count: int, max_retries: int) -> Tuple[str, int]:
    """Status and retry counter after a failed attempt.

    Re-queues while ``retry_count < max_retries``; otherwise terminal.
    """
    current = max(int(retry_count or 0), 0)
    if current < max(int(max_retries or 0), 0):
        return "pending", current + 1
    return "failed", current


async def _record_failure(job_id: str, error: str) -> bool:
    """Apply the retry-or-fail rule; returns True when the job was re-queued."""
    async with async_session_maker() as db:
        job = await db.get(ResearchJob, job_id, populate_existing=True)
        if not job or job.status != "processing":
            return False
        status, retry_count = next_failure_state(job.retry_count, job.max_retries)
        job.status = status
        job.retry_count = retry_count
        job.error_message = _safe_text(error)[:MAX_ERROR_LENGTH]
        if status == "pending":
            job.current_step = "retry_queued"
            logger.info("Research job %s queued for retry (attempt %s/%s)", job_id, retry_count, job.max_retries)
        else:
            job.current_step = "failed"
            job.completed_at = datetime.now(timezone.utc)
            logger.warning("Research job %s failed after %s retries", job_id, retry_count)
            await refund_credits(
                job.user_id,
                db,
                reference_type="research_job",
                reference_id=job_id,
                reason="Research job failed",
            )
        await db.commit()
        return status == "pending"


async def _update_progress(job_id: str, *, current_step: str, progress: int) -> None:
    async with async_session_maker() as db:
        job = await db.get(ResearchJob, job_id, populate_existing=True)
        if not job or job.status != "processing":
            return
        job.current_step = current_step
        job.progress = max(0, min(int(progress), 100))
        await db.commit()


async def replace_workflow_sources(
    db: AsyncSession,
    *,
    workflow_id: str,
    job_id: Optional[str],
    sources: List[Dict[str, Any]],
) -> int:
    """Swap the workflow's research sources for ``sources``; caller commits."""
    await db.execute(delete(ResearchSource).where(ResearchSource.workflow_id == workflow_id))
    for index, source in enumerate(sources):
        content = str(source.get("source_content") or "")
        relevance = source.get("relevance")
        db.add(
            ResearchSource(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                job_id=job_id,
                source_url=_safe_text(source.get("source_url")) or None,
                source_title=_safe_text(source.get("source_title"))[:500] or None,
                source_content=content,
                source_type=_safe_text(source.get("source_type")) or "web",
                relevance=float(relevance) if isinstance(relevance, (int, float)) else round(max(1 - index * 0.1, 0.0), 2),
                is_starred=bool(source.get("is_starred")),
                is_selected=True,
                fact_check_status=_safe_text(source.get("fact_check_status")) or "verified",
                search_category=_safe_text(source.get("search_category")) or None,
                expansion_query=_safe_text(source.get("expansion_query")) or None,
                word_count=calculate_total_words([source]),
            )
        )
    await db.flush()
    return len(sources)


def _context_from_params(params: Dict[str, Any]) -> str:
    parts = [_safe_text(params.get("context"))]
    niche = _safe_text(params.get("niche"))
    if niche:
        parts.append(f"Content niche: {niche}")
    idea = params.get("content_idea_info")
    if isinstance(idea, dict):
        parts.extend(f"{key}: {_safe_text(value)}" for key, value in idea.items() if _safe_text(value))
    elif _safe_text(idea):
        parts.append(_safe_text(idea))
    return "\n".join(part for part in parts if part)


async def run_research_for_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Default research flow executed for a claimed job."""
    query = _safe_text(params.get("query")) or _safe_text(params.get("topic"))
    return await perform_enhanced_research(
        query=query,
        topic=_safe_text(params.get("topic")),
        context=_context_from_params(params),
        target_duration=params.get("target_duration"),
        enable_expansion=bool(params.get("enable_expansion", True)),
    )


def _results_payload(result: Dict[str, Any], source_count: int) -> Dict[str, Any]:
    return {
        "summary": result.get("summary") or "",
        "insights": result.get("insights") or {},
        "related_questions": result.get("related_questions") or [],
        "expansion_plan": result.get("expansion_plan"),
        "metrics": result.get("metrics"),
        "provider": result.get("provider"),
        "source_count": source_count,
    }


async def process_next_research_job(research_fn: Optional[ResearchFn] = None) -> Dict[str, Any]:
    """Claim one pending job and run research for it inline."""
    runner = research_fn or run_research_for_params
    started = time.monotonic()

    async with async_session_maker() as db:
        job = await claim_next_research_job(db)
        if job is None:
            logger.info("No pending research jobs found")
            return {"processed": 0, "message": "No pending jobs"}
        job_id = job.id
        workflow_id = job.workflow_id
        params = dict(job.research_params or {})
        logger.info(
            "Processing research job %s (workflow=%s priority=%s retry=%s/%s)",
            job_id,
            workflow_id,
            job.priority,
            job.retry_count,
            job.max_retries,
        )

    try:
        await _update_progress(job_id, current_step="researching", progress=15)
        result = await runner(params)
        if not result or not result.get("success"):
            raise RuntimeError((result or {}).get("error") or "Research failed")

        sources = list(result.get("sources") or [])
        if settings.RESEARCH_FETCH_FULL_CONTENT and sources:
            await _update_progress(job_id, current_step="fetching_full_content", progress=70)
            sources = await enrich_sources_with_full_content(sources)

        await _update_progress(job_id, current_step="saving_sources", progress=85)
        async with async_session_maker() as db:
            db_job = await db.get(ResearchJob, job_id, populate_existing=True)
            if not db_job or db_job.status != "processing":
                logger.info("Research job %s left processing state during run; discarding results", job_id)
                return {"processed": 1, "job_id": job_id, "success": False, "cancelled": True}

            saved = await replace_workflow_sources(db, workflow_id=workflow_id, job_id=job_id, sources=sources)
            elapsed = int(round(time.monotonic() - started))
            db_job.status = "completed"
            db_job.progress = 100
            db_job.current_step = "completed"
            db_job.error_message = None
            db_job.completed_at = datetime.now(timezone.utc)
            db_job.processing_time_seconds = elapsed
            db_job.research_results = _results_payload(result, saved)
            await db.commit()

        logger.info("Research job %s completed with %s sources in %ss", job_id, saved, elapsed)
        return {
            "processed": 1,
            "job_id": job_id,
            "success": True,
            "source_count": saved,
            "processing_time": elapsed,
        }
    except Exception as exc:
        logger.exception("Research job %s failed: %s", job_id, exc)
        will_retry = await _record_failure(job_id, str(exc))
        return {
            "processed": 1,
            "job_id": job_id,
            "success": False,
            "error": str(exc),
            "will_retry": will_retry,
        }


def process_next_research_job_sync() -> Dict[str, Any]:
    """RQ worker entrypoint for research jobs."""
    return asyncio.run(process_next_research_job())


async def recover_stalled_research_jobs(max_age_minutes: Optional[int] = None) -> int:
    """Apply the retry-or-fail rule to jobs stuck in processing after a crash."""
    minutes = int(max_age_minutes if max_age_minutes is not None else settings.RESEARCH_JOB_STALL_MINUTES)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(ResearchJob.id).where(
                ResearchJob.status == "processing",
                ResearchJob.started_at < cutoff,
            )
        )
        stalled_ids = list(result.scalars().all())
    for job_id in stalled_ids:
        await _record_failure(job_id, "Research job was interrupted before completing.")
    return len(stalled_ids)


async def list_workflow_sources_service(*, user_id: str, workflow_id: str, db: AsyncSession) -> Dict[str, Any]:
    await get_owned_workflow(db, user_id=user_id, workflow_id=workflow_id)
    result = await db.execute(
        select(ResearchSource)
        .where(ResearchSource.workflow_id == workflow_id)
        .order_by(ResearchSource.relevance.desc(), ResearchSource.added_at.asc())
    )
    rows = result.scalars().all()
    sources = [serialize_research_source(row) for row in rows]
    return {
        "workflow_id": workflow_id,
        "count": len(sources),
        "total_words": sum(source["word_count"] for source in sources),
        "sources": sources,
    }


async def update_source_service(
    *,
    user_id: str,
    source_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    result = await db.execute(select(ResearchSource).where(ResearchSource.id == source_id))
    source = result.scalar_one_or_none()
    if not source:
        raise HTTPException(status_code=404, detail="Research source not found")
    await get_owned_workflow(db, user_id=user_id, workflow_id=source.workflow_id)
    if payload.get("is_starred") is not None:
        source.is_starred = bool(payload["is_starred"])
    if payload.get("is_selected") is not None:
        source.is_selected = bool(payload["is_selected"])
    if payload.get("fact_check_status") is not None:
        source.fact_check_status = _safe_text(payload["fact_check_status"]) or None
    await db.commit()
    await db.refresh(source)
    return serialize_research_source(source)


async def run_research_now_service(
    *,
    user_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
    research_fn: Optional[ResearchFn] = None,
) -> Dict[str, Any]:
    """Synchronous research; credits are charged only after a successful run."""
    query = _safe_text(payload.get("query"))
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")

    workflow_id = _safe_text(payload.get("workflow_id"))
    if workflow_id:
        await get_owned_workflow(db, user_id=user_id, workflow_id=workflow_id)

    cost = max(int(settings.CREDIT_COST_RESEARCH_RUN), 0)
    balance = await ensure_monthly_credit_grant(user_id, db)
    if balance < cost:
        raise HTTPException(
            status_code=402,
            detail=f"Insufficient credits. Required: {cost}, available: {balance}. Top up credits to continue.",
        )

    params = {key: payload.get(key) for key in RESEARCH_PARAM_KEYS if payload.get(key) is not None}
    params.setdefault("enable_expansion", False)
    runner = research_fn or run_research_for_params
    result = await runner(params)
    if not result or not result.get("success"):
        raise HTTPException(status_code=502, detail=(result or {}).get("error") or "Research failed")

    # Debit and saved sources commit together; a 402 here leaves the workflow untouched.
    charge = await consume_credits(
        user_id,
        db,
        cost=cost,
        reason=f"Research: {query[:120]}",
        reference_type="research_run",
        reference_id=workflow_id or None,
        commit=False,
    )
    sources = list(result.get("sources") or [])
    saved = 0
    if workflow_id and sources:
        saved = await replace_workflow_sources(db, workflow_id=workflow_id, job_id=None, sources=sources)
    await db.commit()
    return {
        "success": True,
        "sources": sources,
        "summary": result.get("summary") or "",
        "related_questions": result.get("related_questions") or [],
        "insights": result.get("insights") or {},
        "expansion_plan": result.get("expansion_plan"),
        "metrics": result.get("metrics"),
        "provider": result.get("provider"),
        "saved_source_count": saved,
        "credits": charge,
    }
