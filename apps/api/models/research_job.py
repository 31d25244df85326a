"""ResearchJob model for the asynchronous research queue."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ResearchJob(Base):
    """One topic's research-and-expansion request."""

    __tablename__ = "research_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, ForeignKey("script_workflows.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed, cancelled
    priority = Column(Integer, nullable=False, default=5, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String, nullable=True)
    research_params = Column(JSON, nullable=True)
    research_results = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    queue_job_id = Column(String, nullable=True)
    processing_time_seconds = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="research_jobs")
    workflow = relationship("ScriptWorkflow", back_populates="research_jobs")
