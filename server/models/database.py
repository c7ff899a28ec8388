"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import JSON, Column, DateTime, Field, SQLModel


class PlaybookRecord(SQLModel, table=True):
    """Playbook definitions (graph stored as JSON {nodes, edges})."""

    __tablename__ = "playbooks"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    trigger_type: str = Field(default="manual", max_length=50, index=True)
    trigger_config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    graph: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = Field(default=False, index=True)
    usage_count: int = Field(default=0)
    success_rate: float = Field(default=0.0)
    success_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class PlaybookExecutionRecord(SQLModel, table=True):
    """One run of a playbook for one triggering entity."""

    __tablename__ = "playbook_executions"

    id: str = Field(primary_key=True, max_length=255)
    playbook_id: str = Field(foreign_key="playbooks.id", max_length=255, index=True)
    entity_key: str = Field(default="playbook", max_length=255, index=True)
    contact_id: Optional[str] = Field(default=None, max_length=255)
    deal_id: Optional[str] = Field(default=None, max_length=255)
    conversation_id: Optional[str] = Field(default=None, max_length=255)
    current_step: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="pending", max_length=50, index=True)
    steps_log: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=2000)
    triggered_by: str = Field(default="event", max_length=50)
    resume_at: Optional[float] = Field(default=None)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
