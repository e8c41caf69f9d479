"""
Escalation Value Objects
========================

Immutable value objects for the escalation domain.

Value objects are defined by their attributes rather than an identity.
Rule trigger conditions and actions are validated here, when a rule is
loaded, so the engine never meets an unknown action kind at execution time.
"""

from datetime import datetime, timedelta
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from src.config import (
    Priority, TicketStatus, SLAState, NotificationChannel,
    PRIORITY_ORDER, VALID_PRIORITIES,
)


# ========== Trigger Conditions ==========

class TriggerConditions(BaseModel):
    """
    Conditions under which a rule fires. Every present condition must hold.

    An empty condition set never matches.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    priority: Optional[List[Priority]] = Field(default=None, description="Ticket priority must be one of these")
    status: Optional[List[TicketStatus]] = Field(default=None, description="Ticket status must be one of these")
    time_threshold: Optional[int] = Field(
        default=None, ge=0, description="Seconds elapsed since the reference time"
    )
    sentiment_threshold: Optional[float] = Field(
        default=None, description="Sentiment score must be strictly below this"
    )

    @field_validator("priority", "status")
    @classmethod
    def reject_empty_filter(cls, v: Optional[list]) -> Optional[list]:
        """An explicitly empty filter could never match; treat it as a mistake."""
        if v is not None and len(v) == 0:
            raise ValueError("filter lists must not be empty; omit the key instead")
        return v

    @property
    def is_empty(self) -> bool:
        return (
            self.priority is None
            and self.status is None
            and self.time_threshold is None
            and self.sentiment_threshold is None
        )


# ========== Actions (closed tagged union) ==========

class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class NotifyManagerAction(_Action):
    """Notify a managerial role (defaults to the configured manager role)."""
    type: Literal["notify_manager"] = "notify_manager"
    target: Optional[str] = Field(default=None, min_length=1, description="Role to notify")
    message: Optional[str] = None
    channel: Optional[NotificationChannel] = None


class NotifyAssigneeAction(_Action):
    """Notify the ticket's assignee, or its unit when nobody is assigned."""
    type: Literal["notify_assignee"] = "notify_assignee"
    message: Optional[str] = None
    channel: Optional[NotificationChannel] = None


class BumpPriorityAction(_Action):
    """Raise the ticket priority by exactly one step."""
    type: Literal["bump_priority"] = "bump_priority"


class FlagReviewAction(_Action):
    """Mark the ticket for staff review without changing its status."""
    type: Literal["flag_review"] = "flag_review"
    message: Optional[str] = None


class EscalateToRoleAction(_Action):
    """Move the ticket to ``escalated`` and notify the target role."""
    type: Literal["escalate_to_role"] = "escalate_to_role"
    target: str = Field(..., min_length=1, description="Role receiving the escalation")
    unit_id: Optional[str] = Field(default=None, description="Unit to reassign the ticket to")
    message: Optional[str] = None
    channel: Optional[NotificationChannel] = None


RuleAction = Annotated[
    Union[
        NotifyManagerAction,
        NotifyAssigneeAction,
        BumpPriorityAction,
        FlagReviewAction,
        EscalateToRoleAction,
    ],
    Field(discriminator="type"),
]

RuleActionList = TypeAdapter(List[RuleAction])


# ========== Priority helpers ==========

def next_priority(priority: Priority) -> Optional[Priority]:
    """Return the priority one step above, or None when already critical."""
    index = PRIORITY_ORDER.index(Priority(priority))
    if index + 1 >= len(PRIORITY_ORDER):
        return None
    return PRIORITY_ORDER[index + 1]


# ========== SLA policy ==========

DEFAULT_SLA_TARGETS: Dict[str, Dict[str, int]] = {
    "critical": {"response": 30, "resolution": 120},
    "high": {"response": 60, "resolution": 240},
    "medium": {"response": 240, "resolution": 1440},
    "low": {"response": 480, "resolution": 4320},
}


class SLAPolicy(BaseModel):
    """
    Priority -> duration SLA policy loaded from YAML.

    ``sla_targets`` holds minutes per priority for the response and
    resolution clocks; the ticket's ``sla_deadline`` follows resolution.
    """
    sla_targets: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_SLA_TARGETS.items()},
        description="SLA targets in minutes by priority"
    )
    warning_threshold_percent: int = Field(
        default=15, ge=0, le=100,
        description="Remaining-time percentage under which an SLA is at risk"
    )

    @field_validator("sla_targets")
    @classmethod
    def fill_missing_targets(cls, v: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        """Reject unknown priorities and fill the gaps from the defaults."""
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priorities in sla_targets: {sorted(unknown)}")

        filled = {}
        for priority in VALID_PRIORITIES:
            targets = dict(DEFAULT_SLA_TARGETS[priority])
            targets.update(v.get(priority) or {})
            for sla_type, minutes in targets.items():
                if minutes <= 0:
                    raise ValueError(f"{priority}.{sla_type} must be positive")
            filled[priority] = targets
        return filled

    def get_sla_minutes(self, priority: str, sla_type: str = "resolution") -> int:
        return self.sla_targets[Priority(priority).value][sla_type]

    def deadline_for(self, priority: str, start: datetime) -> datetime:
        """SLA deadline for a ticket whose priority was set at ``start``."""
        return start + timedelta(minutes=self.get_sla_minutes(priority, "resolution"))

    def response_deadline_for(self, priority: str, created_at: datetime) -> datetime:
        return created_at + timedelta(minutes=self.get_sla_minutes(priority, "response"))


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class; all SLA state arithmetic lives here.
    """

    @staticmethod
    def calculate_status(
        started_at: datetime,
        deadline: datetime,
        current_time: datetime,
        met_at: Optional[datetime] = None,
        warning_threshold_percent: int = 15
    ) -> SLAState:
        """
        Calculate current SLA state.

        Args:
            started_at: When the SLA clock started
            deadline: The SLA deadline
            current_time: Current time for evaluation
            met_at: When SLA was met (resolution)
            warning_threshold_percent: Percentage threshold for "at_risk"
        """
        if met_at is not None:
            return SLAState.MET if met_at <= deadline else SLAState.BREACHED

        remaining = (deadline - current_time).total_seconds()
        total = (deadline - started_at).total_seconds()

        if remaining <= 0:
            return SLAState.BREACHED

        percentage = (remaining / total) * 100 if total > 0 else 0
        if percentage <= warning_threshold_percent:
            return SLAState.AT_RISK
        return SLAState.ON_TRACK

    @staticmethod
    def remaining_seconds(deadline: datetime, current_time: datetime) -> float:
        """Seconds until the deadline, floored at zero."""
        return max(0.0, (deadline - current_time).total_seconds())
