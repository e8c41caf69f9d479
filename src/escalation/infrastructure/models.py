"""
Escalation Infrastructure Models
================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base, UTCDateTime
from src.config import TicketStatus, Priority, EscalationType, ExecutionStatus, SYSTEM_ACTOR


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketModel(Base):
    """
    Database model for Ticket entity.

    Maps to the 'tickets' table. ``version`` is bumped on every update and
    is the compare-and-swap token.
    """
    __tablename__ = "tickets"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    # Human-readable sequential number
    ticket_number: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)

    # Ticket content
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Lifecycle attributes
    priority: Mapped[str] = mapped_column(String(50), nullable=False, default=Priority.MEDIUM.value, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TicketStatus.OPEN.value, index=True)

    # Routing
    unit_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    submitter_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    submitter_contact: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Written by the external sentiment analysis process
    sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    sla_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_response_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Review
    review_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class EscalationRuleModel(Base):
    """
    Database model for EscalationRule entity.

    Conditions and actions are stored as JSON and validated on load.
    """
    __tablename__ = "escalation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_conditions: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    actions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class EscalationLogModel(Base):
    """
    Database model for EscalationLog entity.

    Append-only. ``sequence`` orders entries that share a timestamp.
    """
    __tablename__ = "escalation_logs"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_uuid)

    ticket_id: Mapped[str] = mapped_column(String(36), nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default=SYSTEM_ACTOR)
    unit_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    escalation_type: Mapped[str] = mapped_column(String(20), nullable=False, default=EscalationType.AUTOMATIC.value)
    execution_status: Mapped[str] = mapped_column(String(20), nullable=False, default=ExecutionStatus.SUCCESS.value)
    executed_actions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_escalation_logs_ticket_created", "ticket_id", "created_at"),
    )
