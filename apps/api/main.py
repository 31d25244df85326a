"""
GenScript Research API - FastAPI Backend
Research, gap analysis and background research jobs for video script workflows.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    workflows,
    research,
    jobs,
    billing,
)
from services.research_jobs import recover_stalled_research_jobs

API_NAME = "GenScript Research API"
API_VERSION = "0.1.0"


async def _periodic_stalled_job_recovery() -> None:
    interval_minutes = max(int(settings.RESEARCH_JOB_RECOVERY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            recovered = await recover_stalled_research_jobs()
            if recovered:
                print(f"♻️ Stalled research job sweep: recovered={recovered}")
        except Exception as exc:
            print(f"⚠️ Stalled research job sweep failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    print(f"🚀 Starting {API_NAME}...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Research tables verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_research_jobs()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled research jobs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled research job recovery skipped: {exc}")

    sweep_task = None
    if int(settings.RESEARCH_JOB_RECOVERY_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stalled_job_recovery())
        print(
            "📅 Stalled research job sweep enabled "
            f"(every {int(settings.RESEARCH_JOB_RECOVERY_INTERVAL_MINUTES)} min)."
        )
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title=API_NAME,
    description="Web research with gap analysis and expansion for long-form video scripts",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(workflows.router, prefix="/workflows", tags=["Workflows"])
app.include_router(research.router, prefix="/research", tags=["Research"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    return {"name": API_NAME, "version": API_VERSION, "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT)
