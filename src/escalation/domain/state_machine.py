"""
Ticket State Machine
====================

The authoritative set of ticket statuses and allowed transitions, shared by
staff actions and the escalation engine.

    open -> in_progress -> resolved -> closed
    open | in_progress -> escalated -> in_progress
    open | in_progress | escalated -> resolved   (staff only)

Nothing leaves ``closed``.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from src.config import TicketStatus
from src.core import InvalidTransitionException
from src.escalation.domain.entities import Ticket


class TicketStateMachine:
    """
    Validates and applies status transitions.

    ``apply`` never mutates its input; it returns a new ticket carrying the
    transition's side effects so callers can diff and persist atomically.
    """

    TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
        TicketStatus.OPEN: frozenset({
            TicketStatus.IN_PROGRESS, TicketStatus.ESCALATED, TicketStatus.RESOLVED,
        }),
        TicketStatus.IN_PROGRESS: frozenset({
            TicketStatus.ESCALATED, TicketStatus.RESOLVED,
        }),
        TicketStatus.ESCALATED: frozenset({
            TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED,
        }),
        TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED}),
        TicketStatus.CLOSED: frozenset(),
    }

    # The engine may only escalate; everything else needs a staff actor.
    AUTOMATIC_TARGETS: FrozenSet[TicketStatus] = frozenset({TicketStatus.ESCALATED})

    @classmethod
    def can_transition(
        cls,
        from_status: TicketStatus,
        to_status: TicketStatus,
        automatic: bool = False
    ) -> bool:
        """Check whether a transition is allowed for the given kind of actor."""
        to_status = TicketStatus(to_status)
        if automatic and to_status not in cls.AUTOMATIC_TARGETS:
            return False
        return to_status in cls.TRANSITIONS[TicketStatus(from_status)]

    @classmethod
    def apply(
        cls,
        ticket: Ticket,
        to_status: TicketStatus,
        at: datetime,
        automatic: bool = False,
        unit_id: Optional[str] = None,
    ) -> Ticket:
        """
        Return a copy of ``ticket`` moved to ``to_status``.

        Raises:
            InvalidTransitionException: transition not allowed
        """
        to_status = TicketStatus(to_status)
        if not cls.can_transition(ticket.status, to_status, automatic=automatic):
            raise InvalidTransitionException(ticket.id, ticket.status.value, to_status.value)

        updated = ticket.copy()
        from_status = ticket.status
        updated.status = to_status
        updated.updated_at = at

        if to_status == TicketStatus.IN_PROGRESS and from_status == TicketStatus.OPEN:
            if updated.first_response_at is None:
                updated.first_response_at = at
        elif to_status == TicketStatus.RESOLVED:
            updated.resolved_at = at
        elif to_status == TicketStatus.CLOSED:
            updated.closed_at = at
        elif to_status == TicketStatus.ESCALATED:
            updated.last_escalated_at = at
            if unit_id:
                updated.unit_id = unit_id

        return updated
