"""Database models for stored workflows, run states and resume keys."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from edgeflow.database import Base


class WorkflowRecord(Base):
    """Workflow definition addressable by id."""

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    definition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<WorkflowRecord(id='{self.id}', name='{self.name}')>"


class RunStateRecord(Base):
    """Serialized run state, one row per run."""

    __tablename__ = "run_states"

    run_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_run_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    depth: Mapped[int] = mapped_column(Integer, default=0)

    # Full RunState as JSON
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<RunStateRecord(run_id='{self.run_id}', status='{self.status}')>"


class ResumeKeyRecord(Base):
    """Ownership of a resume key by a suspended run."""

    __tablename__ = "resume_keys"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    def __repr__(self) -> str:
        return f"<ResumeKeyRecord(key='{self.key}', run_id='{self.run_id}')>"
