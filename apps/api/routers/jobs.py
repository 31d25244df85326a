"""Job runner trigger, called by cron, the RQ worker or operators."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from routers.auth_scope import RunnerContext, require_job_runner
from services.research_jobs import process_next_research_job

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/research/process")
async def process_research_jobs(runner: RunnerContext = Depends(require_job_runner)):
    logger.info("Research job runner triggered by %s", runner.caller)
    result = await process_next_research_job()
    if result.get("processed") and not result.get("success") and not result.get("cancelled"):
        return JSONResponse(status_code=500, content=result)
    return result
