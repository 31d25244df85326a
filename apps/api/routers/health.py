"""
Liveness, readiness and dependency status.
"""

import asyncio
from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from database import engine
from models.research_job import ResearchJob
from services.llm import get_anthropic_client
from services.research_queue import get_research_queue

router = APIRouter()


async def _database_status() -> Dict[str, Any]:
    async with engine.connect() as conn:
        rows = await conn.execute(
            select(ResearchJob.status, func.count(ResearchJob.id))
            .where(ResearchJob.status.in_(("pending", "processing")))
            .group_by(ResearchJob.status)
        )
        counts = {status: int(count) for status, count in rows}
    return {
        "status": "up",
        "pending_jobs": counts.get("pending", 0),
        "processing_jobs": counts.get("processing", 0),
    }


def _queue_status() -> Dict[str, Any]:
    queue = get_research_queue()
    return {"status": "up", "name": queue.name, "queued": queue.count}


@router.get("/health")
async def health_check():
    """
    Overall status. Any unreachable dependency degrades the result.
    """
    report: Dict[str, Any] = {
        "status": "healthy",
        "api": "up",
        "anthropic_api_key": "configured" if get_anthropic_client() else "missing",
    }

    try:
        report["database"] = await _database_status()
    except Exception as e:
        report["database"] = {"status": f"down: {e}"}
        report["status"] = "degraded"

    try:
        report["research_queue"] = await asyncio.to_thread(_queue_status)
    except Exception as e:
        report["research_queue"] = {"status": f"down: {e}"}
        report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    missing = []
    if get_anthropic_client() is None:
        missing.append("ANTHROPIC_API_KEY")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
