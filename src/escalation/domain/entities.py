"""
Escalation Domain Entities
==========================

Pure Python domain entities for the ticket lifecycle and escalation engine.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from src.config import (
    TicketStatus, Priority, EscalationType, ExecutionStatus,
    NotificationChannel, RecipientType, DeliveryStatus, SYSTEM_ACTOR,
)
from src.core import RuleEvaluationException
from src.escalation.domain.value_objects import (
    TriggerConditions, RuleAction, RuleActionList,
)

RESOLVED_STATUSES = (TicketStatus.RESOLVED, TicketStatus.CLOSED)


@dataclass
class Ticket:
    """
    Ticket entity representing a complaint ticket.

    The sentiment score is computed by an external analysis process and is
    read-only here. ``version`` backs optimistic concurrency in the store.
    """

    # Identity
    id: str
    ticket_number: str

    # Core attributes
    title: str
    description: str
    priority: Priority
    status: TicketStatus

    # Timestamps
    created_at: datetime
    updated_at: datetime
    sla_deadline: datetime

    # Assignment and intake details
    unit_id: Optional[str] = None
    assignee_id: Optional[str] = None
    category_id: Optional[str] = None
    submitter_name: Optional[str] = None
    submitter_contact: Optional[str] = None
    sentiment_score: Optional[float] = None

    # Lifecycle tracking
    first_response_at: Optional[datetime] = None
    last_response_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    # Review flag
    review_flag: bool = False
    flag_reason: Optional[str] = None

    version: int = 1

    def __post_init__(self):
        """Validate ticket invariants on initialization."""
        self.priority = Priority(self.priority)
        self.status = TicketStatus(self.status)

        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")

        if self.first_response_at and self.first_response_at < self.created_at:
            raise ValueError("first_response_at cannot be before created_at")

        if (self.resolved_at is not None) != (self.status in RESOLVED_STATUSES):
            raise ValueError("resolved_at must be set if and only if the ticket is resolved or closed")

    @property
    def is_resolved(self) -> bool:
        """Check if ticket has been resolved or closed."""
        return self.status in RESOLVED_STATUSES

    @property
    def reference_time(self) -> datetime:
        """
        Timestamp that time thresholds are measured from.

        The creation time until a staff response or an escalation occurs,
        then the most recent of those.
        """
        events = [t for t in (self.last_response_at, self.last_escalated_at) if t is not None]
        return max(events) if events else self.created_at

    def copy(self) -> "Ticket":
        return replace(self)

    def diff(self, other: "Ticket") -> Dict[str, Any]:
        """Fields of ``other`` that differ from this ticket (identity and version excluded)."""
        patch = {}
        for f in fields(self):
            if f.name in ("id", "version"):
                continue
            new_value = getattr(other, f.name)
            if getattr(self, f.name) != new_value:
                patch[f.name] = new_value
        return patch


@dataclass
class EscalationRule:
    """
    Escalation rule entity: a condition set plus an ordered action list.

    Rule CRUD belongs to the administration surface; the engine only reads.
    """

    id: str
    name: str
    conditions: TriggerConditions
    actions: List[RuleAction]
    created_at: datetime
    description: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_definition(
        cls,
        *,
        rule_id: str,
        name: str,
        trigger_conditions: Optional[dict],
        actions: Optional[list],
        created_at: datetime,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> "EscalationRule":
        """
        Build a rule from its stored (loosely typed) definition.

        Raises:
            RuleEvaluationException: malformed conditions or unknown action kinds
        """
        try:
            conditions = TriggerConditions.model_validate(trigger_conditions or {})
            parsed_actions = RuleActionList.validate_python(actions or [])
        except ValidationError as e:
            raise RuleEvaluationException(
                str(rule_id), f"invalid definition: {e.error_count()} error(s)",
                {"rule_id": str(rule_id), "errors": e.errors(include_url=False)}
            ) from e

        if not parsed_actions:
            raise RuleEvaluationException(str(rule_id), "rule has no actions")

        return cls(
            id=str(rule_id),
            name=name,
            description=description,
            is_active=is_active,
            conditions=conditions,
            actions=parsed_actions,
            created_at=created_at,
        )

    @property
    def sort_key(self) -> tuple:
        """Rules run in ascending creation order, ties broken by id."""
        return (self.created_at, self.id)


@dataclass
class EscalationLog:
    """
    Append-only audit entry, one per rule firing or manual escalation.
    """

    ticket_id: str
    from_status: TicketStatus
    to_status: TicketStatus
    reason: str
    created_at: datetime
    actor: str = SYSTEM_ACTOR
    rule_id: Optional[str] = None
    escalation_type: EscalationType = EscalationType.AUTOMATIC
    executed_actions: List[Dict[str, Any]] = field(default_factory=list)
    execution_status: ExecutionStatus = ExecutionStatus.SUCCESS
    unit_id: Optional[str] = None
    id: Optional[str] = None
    sequence: Optional[int] = None


@dataclass
class NotificationRequest:
    """
    A request for the dispatcher to notify someone about a ticket.

    ``delivery_status`` is owned by the dispatcher, never by the engine.
    """

    id: str
    recipient: str
    recipient_type: RecipientType
    channel: NotificationChannel
    ticket_id: str
    message: str
    created_at: datetime
    rule_id: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivered_at: Optional[datetime] = None

    def to_payload(self) -> dict:
        """Wire form sent to the notification gateway."""
        return {
            "id": self.id,
            "recipient": self.recipient,
            "recipient_type": self.recipient_type.value,
            "channel": self.channel.value,
            "ticket_id": self.ticket_id,
            "rule_id": self.rule_id,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }
