"""ScriptWorkflow model for the step-by-step script builder."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ScriptWorkflow(Base):
    """A user's in-progress script; research jobs and sources hang off it."""

    __tablename__ = "script_workflows"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    topic = Column(Text, nullable=True)
    niche = Column(String, nullable=True)
    target_duration = Column(Integer, nullable=True)  # seconds or minutes, normalized at research time
    workflow_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="workflows")
    research_jobs = relationship("ResearchJob", back_populates="workflow", cascade="all, delete-orphan")
    sources = relationship("ResearchSource", back_populates="workflow", cascade="all, delete-orphan")
