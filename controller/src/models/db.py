"""
Database models for controller (sync version).
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, Uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    repository = Column(String(255), nullable=False)
    clone_url = Column(String(500), nullable=False)
    branch = Column(String(255), nullable=False)
    commit_sha = Column(String(40))
    trigger_kind = Column(String(20), nullable=False)
    status = Column(String(50), default="queued")
    triggered_by = Column(String(255))
    config = Column(JSON)
    failed_stage = Column(String(255))
    error = Column(Text)
    deployment_id = Column(String(255))
    deployment_url = Column(String(500))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineStep(Base):
    __tablename__ = "pipeline_steps"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("pipeline_runs.id"))
    name = Column(String(255), nullable=False)
    kind = Column(String(50), nullable=False)
    commands = Column(JSON, nullable=False)
    status = Column(String(50), default="pending")
    step_order = Column(Integer, nullable=False)
    attempts = Column(Integer, default=0)
    logs = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
