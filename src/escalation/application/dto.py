"""
Escalation Application DTOs
===========================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["critical", "high", "medium", "low"]
TicketStatusStr = Literal["open", "in_progress", "resolved", "closed", "escalated"]
SLAStateStr = Literal["on_track", "at_risk", "breached", "met"]
EscalationTypeStr = Literal["manual", "automatic"]
ExecutionStatusStr = Literal["success", "partial"]


# ========== Request DTOs ==========

class TransitionRequest(BaseModel):
    """Staff-initiated status change."""
    target_status: TicketStatusStr = Field(..., description="Status to move the ticket to")
    actor_id: str = Field(..., min_length=1, description="Staff user performing the change")
    reason: str = Field(..., min_length=1, description="Reason shown in the audit trail")
    unit_id: Optional[str] = Field(None, description="Target unit for a manual escalation")


class RespondRequest(BaseModel):
    """A staff response on a ticket."""
    actor_id: str = Field(..., min_length=1)
    message: Optional[str] = None


class AssignRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    unit_id: Optional[str] = None
    assignee_id: Optional[str] = None

    @model_validator(mode="after")
    def require_target(self) -> "AssignRequest":
        if self.unit_id is None and self.assignee_id is None:
            raise ValueError("unit_id or assignee_id is required")
        return self


class ReviewFlagRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    flagged: bool = True
    reason: Optional[str] = None


class PriorityChangeRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    priority: PriorityStr


class RuleExecutionRequest(BaseModel):
    """Run one rule against one ticket now, ignoring its trigger conditions."""
    ticket_id: str = Field(..., min_length=1)
    actor_id: str = Field(..., min_length=1, description="Staff user requesting the run")


# ========== Response DTOs ==========

class TicketResponse(BaseModel):
    """Response model for a ticket and its SLA state."""
    id: str
    ticket_number: str
    title: str
    priority: PriorityStr
    status: TicketStatusStr
    unit_id: Optional[str] = None
    assignee_id: Optional[str] = None
    sentiment_score: Optional[float] = None
    review_flag: bool = False
    flag_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    first_response_at: Optional[datetime] = None
    last_response_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    version: int

    # SLA information
    sla_deadline: datetime
    sla_state: Optional[SLAStateStr] = Field(None, description="Derived SLA state")
    sla_remaining_seconds: Optional[float] = Field(None, description="Seconds until the deadline (0 if past)")
    response_deadline: Optional[datetime] = Field(None, description="First-response target")
    response_sla_state: Optional[SLAStateStr] = Field(None, description="Derived first-response SLA state")

    @classmethod
    def from_domain(
        cls,
        ticket: Any,
        sla_state: Any = None,
        remaining: Optional[float] = None,
        response_deadline: Optional[datetime] = None,
        response_sla_state: Any = None,
    ) -> "TicketResponse":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            priority=ticket.priority.value,
            status=ticket.status.value,
            unit_id=ticket.unit_id,
            assignee_id=ticket.assignee_id,
            sentiment_score=ticket.sentiment_score,
            review_flag=ticket.review_flag,
            flag_reason=ticket.flag_reason,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            first_response_at=ticket.first_response_at,
            last_response_at=ticket.last_response_at,
            last_escalated_at=ticket.last_escalated_at,
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            version=ticket.version,
            sla_deadline=ticket.sla_deadline,
            sla_state=sla_state.value if sla_state is not None else None,
            sla_remaining_seconds=remaining,
            response_deadline=response_deadline,
            response_sla_state=response_sla_state.value if response_sla_state is not None else None,
        )


class EscalationLogResponse(BaseModel):
    """One entry of the escalation audit trail."""
    id: Optional[str]
    sequence: Optional[int] = None
    ticket_id: str
    rule_id: Optional[str] = None
    from_status: TicketStatusStr
    to_status: TicketStatusStr
    reason: str
    actor: str
    escalation_type: EscalationTypeStr
    execution_status: ExecutionStatusStr
    executed_actions: List[Dict[str, Any]] = Field(default_factory=list)
    unit_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: Any) -> "EscalationLogResponse":
        return cls(
            id=entry.id,
            sequence=entry.sequence,
            ticket_id=entry.ticket_id,
            rule_id=entry.rule_id,
            from_status=entry.from_status.value,
            to_status=entry.to_status.value,
            reason=entry.reason,
            actor=entry.actor,
            escalation_type=entry.escalation_type.value,
            execution_status=entry.execution_status.value,
            executed_actions=list(entry.executed_actions),
            unit_id=entry.unit_id,
            created_at=entry.created_at,
        )


class EscalationHistoryResponse(BaseModel):
    ticket_id: str
    entries: List[EscalationLogResponse]


class EscalationLogListResponse(BaseModel):
    entries: List[EscalationLogResponse]
    count: int = Field(..., description="Number of entries in this page")
    limit: int
    offset: int


class EscalationStatsResponse(BaseModel):
    """Aggregate escalation statistics for the dashboard."""
    rules_total: int
    rules_active: int
    rules_inactive: int
    executions_total: int
    executions_successful: int
    executions_partial: int
    success_rate: float = Field(..., description="Percentage of automatic firings where every action applied")
    escalated_tickets: int
    period_days: int


class TickResponse(BaseModel):
    """Summary of one evaluation tick."""
    tick_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    rules_evaluated: int
    rules_failed: int
    matches: int
    fired: int
    skipped_duplicates: int
    conflicts: int
    invalid_transitions: int
    notifications_enqueued: int
    notifications_failed: int
    skipped: bool
    aborted: bool

    @classmethod
    def from_result(cls, result: Any) -> "TickResponse":
        return cls(
            tick_id=result.tick_id,
            started_at=result.started_at,
            finished_at=result.finished_at,
            rules_evaluated=result.rules_evaluated,
            rules_failed=result.rules_failed,
            matches=result.matches,
            fired=result.fired,
            skipped_duplicates=result.skipped_duplicates,
            conflicts=result.conflicts,
            invalid_transitions=result.invalid_transitions,
            notifications_enqueued=result.notifications_enqueued,
            notifications_failed=result.notifications_failed,
            skipped=result.skipped,
            aborted=result.aborted,
        )


class RuleExecutionResponse(BaseModel):
    rule_id: str
    ticket: TicketResponse
    log_entry: EscalationLogResponse
    notifications_enqueued: int
    notifications_failed: int

    @classmethod
    def from_outcome(cls, outcome: Any) -> "RuleExecutionResponse":
        return cls(
            rule_id=outcome.rule_id,
            ticket=TicketResponse.from_domain(outcome.ticket),
            log_entry=EscalationLogResponse.from_domain(outcome.log_entry),
            notifications_enqueued=outcome.notifications_enqueued,
            notifications_failed=outcome.notifications_failed,
        )
