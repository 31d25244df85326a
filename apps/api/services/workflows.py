"""Script workflow records that research jobs and sources attach to."""

from __future__ import annotations

import uuid
from typing import Any, Dict

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.research_job import ResearchJob
from models.script_workflow import ScriptWorkflow
from services.research_jobs import get_owned_workflow, serialize_research_job


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def serialize_workflow(workflow: ScriptWorkflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "user_id": workflow.user_id,
        "title": workflow.title,
        "topic": workflow.topic,
        "niche": workflow.niche,
        "target_duration": workflow.target_duration,
        "workflow_data": workflow.workflow_data or {},
        "created_at": workflow.created_at.isoformat() if workflow.created_at else None,
        "updated_at": workflow.updated_at.isoformat() if workflow.updated_at else None,
    }


async def create_workflow_service(*, user_id: str, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    title = _safe_text(payload.get("title")) or _safe_text(payload.get("topic"))[:120]
    if not title:
        raise HTTPException(status_code=400, detail="Title or topic is required")
    workflow = ScriptWorkflow(
        id=str(uuid.uuid4()),
        user_id=user_id,
        title=title,
        topic=_safe_text(payload.get("topic")) or None,
        niche=_safe_text(payload.get("niche")) or None,
        target_duration=payload.get("target_duration"),
        workflow_data=payload.get("workflow_data") or {},
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)
    return serialize_workflow(workflow)


async def list_workflows_service(*, user_id: str, limit: int, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(ScriptWorkflow)
        .where(ScriptWorkflow.user_id == user_id)
        .order_by(ScriptWorkflow.created_at.desc())
        .limit(limit)
    )
    workflows = [serialize_workflow(row) for row in result.scalars().all()]
    return {"count": len(workflows), "workflows": workflows}


async def get_workflow_service(*, user_id: str, workflow_id: str, db: AsyncSession) -> Dict[str, Any]:
    workflow = await get_owned_workflow(db, user_id=user_id, workflow_id=workflow_id)
    latest = await db.execute(
        select(ResearchJob)
        .where(ResearchJob.workflow_id == workflow.id)
        .order_by(ResearchJob.created_at.desc())
        .limit(1)
    )
    job = latest.scalar_one_or_none()
    payload = serialize_workflow(workflow)
    payload["latest_research_job"] = serialize_research_job(job) if job else None
    return payload
