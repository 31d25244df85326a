"""Account that owns script workflows, research jobs and credits."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    workflows = relationship("ScriptWorkflow", back_populates="user", cascade="all, delete-orphan")
    research_jobs = relationship("ResearchJob", back_populates="user", cascade="all, delete-orphan")
    credit_entries = relationship(
        "CreditLedger",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="CreditLedger.created_at",
    )
