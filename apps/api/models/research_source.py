"""ResearchSource model for sources gathered for a workflow."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ResearchSource(Base):
    """Web or synthesis source attached to a script workflow."""

    __tablename__ = "research_sources"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, ForeignKey("script_workflows.id"), nullable=False, index=True)
    job_id = Column(String, ForeignKey("research_jobs.id"), nullable=True, index=True)
    source_url = Column(String, nullable=True)
    source_title = Column(String, nullable=True)
    source_content = Column(Text, nullable=True)
    source_type = Column(String, nullable=False, default="web")  # web, synthesis
    relevance = Column(Float, nullable=True)
    is_starred = Column(Boolean, nullable=False, default=False)
    is_selected = Column(Boolean, nullable=False, default=True)
    fact_check_status = Column(String, nullable=True)
    search_category = Column(String, nullable=True)
    expansion_query = Column(String, nullable=True)
    word_count = Column(Integer, nullable=False, default=0)
    added_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    workflow = relationship("ScriptWorkflow", back_populates="sources")
