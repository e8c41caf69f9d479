"""
Escalation Domain Layer
=======================

Domain layer for the ticket lifecycle and escalation engine.

Contains:
- Entities: Core business objects with identity (Ticket, EscalationRule,
  EscalationLog, NotificationRequest)
- Value Objects: Immutable objects defined by attributes (TriggerConditions,
  rule actions, SLAPolicy)
- Domain Services: Stateless business logic (TicketStateMachine, SLACalculator)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.escalation.domain.entities import (
    Ticket,
    EscalationRule,
    EscalationLog,
    NotificationRequest,
    RESOLVED_STATUSES,
)
from src.escalation.domain.value_objects import (
    TriggerConditions,
    RuleAction,
    NotifyManagerAction,
    NotifyAssigneeAction,
    BumpPriorityAction,
    FlagReviewAction,
    EscalateToRoleAction,
    SLAPolicy,
    SLACalculator,
    next_priority,
)
from src.escalation.domain.state_machine import TicketStateMachine

__all__ = [
    # Entities
    "Ticket",
    "EscalationRule",
    "EscalationLog",
    "NotificationRequest",
    "RESOLVED_STATUSES",
    # Value Objects & Services
    "TriggerConditions",
    "RuleAction",
    "NotifyManagerAction",
    "NotifyAssigneeAction",
    "BumpPriorityAction",
    "FlagReviewAction",
    "EscalateToRoleAction",
    "SLAPolicy",
    "SLACalculator",
    "next_priority",
    "TicketStateMachine",
]
