"""
Escalation Application Services
================================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, unit of work,
  dispatcher, clock), not concrete implementations
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from src.config import (
    TicketStatus, Priority, EscalationType, ExecutionStatus,
    NotificationChannel, RecipientType, SLAState, settings,
)
from src.core import (
    ResourceNotFoundException, NotificationEnqueueException, ValidationException,
    InvalidTransitionException,
)
from src.escalation.domain import (
    Ticket, EscalationRule, EscalationLog, NotificationRequest,
    TicketStateMachine, SLAPolicy, SLACalculator,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Collaborator Interfaces (Dependency Inversion) ==========

class IClock(ABC):
    """Source of the current time; the engine never reads the wall clock directly."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""


class SystemClock(IClock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ITicketRepository(ABC):
    """Interface for ticket data access (the Ticket Store)."""

    @abstractmethod
    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        """Get ticket by id."""

    @abstractmethod
    async def get_by_filter(
        self,
        statuses: Sequence[TicketStatus],
        priorities: Optional[Sequence[Priority]] = None
    ) -> List[Ticket]:
        """Tickets whose status (and priority, when given) is in the sets."""

    @abstractmethod
    async def add(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket (used by intake)."""

    @abstractmethod
    async def update(self, ticket_id: str, patch: Dict, expected_version: int) -> Ticket:
        """
        Compare-and-swap update.

        Raises:
            VersionConflictException: the stored version is not expected_version
            ResourceNotFoundException: no such ticket
        """

    @abstractmethod
    async def count_by_status(self, status: TicketStatus) -> int:
        """Number of tickets currently in a status."""


class IEscalationLogRepository(ABC):
    """Interface for the append-only escalation audit trail."""

    @abstractmethod
    async def append(self, entry: EscalationLog) -> EscalationLog:
        """Append an entry; never earlier than the ticket's latest entry."""

    @abstractmethod
    async def list_for_ticket(self, ticket_id: str) -> List[EscalationLog]:
        """Entries of a ticket, oldest first."""

    @abstractmethod
    async def list_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        rule_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[EscalationLog]:
        """Entries in [start, end), oldest first."""

    @abstractmethod
    async def count_by_execution_status(self, since: datetime) -> Dict[str, int]:
        """Automatic firings since a point in time, keyed by execution status."""


class IRuleRepository(ABC):
    """Interface for the (read-only) escalation rule store."""

    @abstractmethod
    async def get_active_rules(self) -> List[EscalationRule]:
        """Active, well-formed rules. Malformed ones are logged and skipped."""

    @abstractmethod
    async def get_by_id(self, rule_id: str) -> Optional[EscalationRule]:
        """
        One rule, active or not.

        Raises:
            RuleEvaluationException: the stored definition is malformed
        """

    @abstractmethod
    async def count_rules(self) -> Dict[str, int]:
        """Counts of all / active rules."""


class IUnitOfWork(ABC):
    """
    Transaction boundary spanning the ticket, log and rule repositories.

    Leaving the context without ``commit()`` rolls everything back.
    """

    tickets: ITicketRepository
    escalation_logs: IEscalationLogRepository
    rules: IRuleRepository

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        ...

    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...


UnitOfWorkFactory = Callable[[], IUnitOfWork]


class INotificationDispatcher(ABC):
    """Delivers notification requests. Enqueueing must never block on delivery."""

    @abstractmethod
    def enqueue(self, request: NotificationRequest) -> None:
        """
        Hand a request over for delivery.

        Raises:
            NotificationEnqueueException: the request could not be accepted
        """


class ISLAPolicyProvider(ABC):
    """Interface for SLA policy access."""

    @abstractmethod
    def get_policy(self) -> SLAPolicy:
        """Get current SLA policy."""


# ========== Per-ticket serialization ==========

class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when idle.

    Serializes work on the same ticket without a global lock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

# ========== Application Services ==========

@dataclass
class TicketView:
    """A ticket together with its derived SLA state."""
    ticket: Ticket
    sla_state: SLAState
    sla_remaining_seconds: float
    response_deadline: datetime
    response_sla_state: SLAState


class TicketLifecycleService:
    """
    Staff-facing ticket operations.

    Every mutation goes through the state machine, the per-ticket lock and
    a compare-and-swap update, so a concurrent escalation computed against
    stale state cannot overwrite it (and vice versa).
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        policy_provider: ISLAPolicyProvider,
        clock: Optional[IClock] = None,
        locks: Optional[KeyedLock] = None,
        dispatcher: Optional[INotificationDispatcher] = None,
    ):
        self._uow_factory = uow_factory
        self._policy_provider = policy_provider
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLock()
        self._dispatcher = dispatcher

    async def get_ticket(self, ticket_id: str) -> TicketView:
        """Ticket plus its resolution and first-response SLA states."""
        async with self._uow_factory() as uow:
            ticket = await uow.tickets.get_by_id(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        policy = self._policy_provider.get_policy()
        now = self._clock.now()
        started_at = ticket.sla_deadline - timedelta(
            minutes=policy.get_sla_minutes(ticket.priority, "resolution")
        )
        state = SLACalculator.calculate_status(
            started_at, ticket.sla_deadline, now,
            met_at=ticket.resolved_at,
            warning_threshold_percent=policy.warning_threshold_percent,
        )
        # The response clock runs from creation to the first staff response.
        response_deadline = policy.response_deadline_for(ticket.priority, ticket.created_at)
        response_state = SLACalculator.calculate_status(
            ticket.created_at, response_deadline, now,
            met_at=ticket.first_response_at or ticket.resolved_at,
            warning_threshold_percent=policy.warning_threshold_percent,
        )
        return TicketView(
            ticket=ticket,
            sla_state=state,
            sla_remaining_seconds=SLACalculator.remaining_seconds(ticket.sla_deadline, now),
            response_deadline=response_deadline,
            response_sla_state=response_state,
        )

    async def manual_transition(
        self,
        ticket_id: str,
        target_status: TicketStatus,
        actor_id: str,
        reason: str,
        unit_id: Optional[str] = None,
    ) -> Ticket:
        """
        Staff-initiated status change (resolve, close, escalate, acknowledge).

        Raises:
            InvalidTransitionException: transition not allowed
            VersionConflictException: ticket changed concurrently
            ResourceNotFoundException: unknown ticket
        """
        target_status = TicketStatus(target_status)

        def mutate(ticket: Ticket, now: datetime) -> Tuple[Ticket, Optional[EscalationLog]]:
            updated = TicketStateMachine.apply(ticket, target_status, now, unit_id=unit_id)
            entry = None
            if TicketStatus.ESCALATED in (ticket.status, target_status):
                entry = EscalationLog(
                    ticket_id=ticket.id,
                    rule_id=None,
                    from_status=ticket.status,
                    to_status=target_status,
                    reason=reason,
                    actor=actor_id,
                    created_at=now,
                    escalation_type=EscalationType.MANUAL,
                    execution_status=ExecutionStatus.SUCCESS,
                    unit_id=updated.unit_id,
                )
            return updated, entry

        ticket = await self._mutate(ticket_id, mutate)
        logger.info(
            "Manual transition applied",
            extra={"ticket_id": ticket_id, "to_status": target_status.value, "actor": actor_id}
        )

        if target_status == TicketStatus.ESCALATED and unit_id:
            self._notify(ticket, f"unit:{unit_id}", RecipientType.UNIT,
                         f"[{ticket.ticket_number}] {ticket.title} was escalated to your unit. Reason: {reason}")
        return ticket

    async def record_response(
        self,
        ticket_id: str,
        actor_id: str,
        message: Optional[str] = None,
    ) -> Ticket:
        """A staff response: stamps response times and resets the escalation clock."""

        def mutate(ticket: Ticket, now: datetime) -> Tuple[Ticket, Optional[EscalationLog]]:
            if ticket.is_resolved:
                _raise_invalid(ticket, TicketStatus.IN_PROGRESS)
            if ticket.status == TicketStatus.OPEN:
                updated = TicketStateMachine.apply(ticket, TicketStatus.IN_PROGRESS, now)
            else:
                updated = ticket.copy()
                updated.updated_at = now
                if updated.first_response_at is None:
                    updated.first_response_at = now
            updated.last_response_at = now
            return updated, None

        ticket = await self._mutate(ticket_id, mutate)
        logger.info("Staff response recorded", extra={"ticket_id": ticket_id, "actor": actor_id})
        return ticket

    async def assign(
        self,
        ticket_id: str,
        actor_id: str,
        unit_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Ticket:
        """Explicit assignment; moves an open ticket to in_progress."""
        if unit_id is None and assignee_id is None:
            raise ValidationException("assign needs a unit_id or an assignee_id")

        def mutate(ticket: Ticket, now: datetime) -> Tuple[Ticket, Optional[EscalationLog]]:
            if ticket.is_resolved:
                _raise_invalid(ticket, TicketStatus.IN_PROGRESS)
            if ticket.status == TicketStatus.OPEN:
                updated = TicketStateMachine.apply(ticket, TicketStatus.IN_PROGRESS, now)
            else:
                updated = ticket.copy()
                updated.updated_at = now
            if unit_id is not None:
                updated.unit_id = unit_id
            if assignee_id is not None:
                updated.assignee_id = assignee_id
            return updated, None

        ticket = await self._mutate(ticket_id, mutate)
        logger.info(
            "Ticket assigned",
            extra={"ticket_id": ticket_id, "unit_id": unit_id, "assignee_id": assignee_id, "actor": actor_id}
        )
        return ticket

    async def set_review_flag(
        self,
        ticket_id: str,
        actor_id: str,
        flagged: bool,
        reason: Optional[str] = None,
    ) -> Ticket:
        """Set or clear the review flag."""

        def mutate(ticket: Ticket, now: datetime) -> Tuple[Ticket, Optional[EscalationLog]]:
            if ticket.status == TicketStatus.CLOSED:
                raise ValidationException(f"Ticket {ticket.id} is closed")
            updated = ticket.copy()
            updated.review_flag = flagged
            updated.flag_reason = reason if flagged else None
            updated.updated_at = now
            return updated, None

        return await self._mutate(ticket_id, mutate)

    async def change_priority(self, ticket_id: str, actor_id: str, priority: Priority) -> Ticket:
        """Change priority and restart the SLA deadline from now."""
        priority = Priority(priority)
        policy = self._policy_provider.get_policy()

        def mutate(ticket: Ticket, now: datetime) -> Tuple[Ticket, Optional[EscalationLog]]:
            if ticket.is_resolved:
                raise ValidationException(f"Ticket {ticket.id} is already {ticket.status.value}")
            updated = ticket.copy()
            if priority != ticket.priority:
                updated.priority = priority
                updated.sla_deadline = policy.deadline_for(priority, now)
                updated.updated_at = now
            return updated, None

        ticket = await self._mutate(ticket_id, mutate)
        logger.info(
            "Priority changed",
            extra={"ticket_id": ticket_id, "priority": priority.value, "actor": actor_id}
        )
        return ticket

    async def _mutate(
        self,
        ticket_id: str,
        mutate: Callable[[Ticket, datetime], Tuple[Ticket, Optional[EscalationLog]]],
    ) -> Ticket:
        async with self._locks.hold(ticket_id):
            async with self._uow_factory() as uow:
                ticket = await uow.tickets.get_by_id(ticket_id)
                if ticket is None:
                    raise ResourceNotFoundException("Ticket", ticket_id)

                updated, entry = mutate(ticket, self._clock.now())
                patch = ticket.diff(updated)
                if not patch:
                    return ticket

                saved = await uow.tickets.update(ticket.id, patch, ticket.version)
                if entry is not None:
                    await uow.escalation_logs.append(entry)
                await uow.commit()
        return saved

    def _notify(self, ticket: Ticket, recipient: str, recipient_type: RecipientType, message: str) -> None:
        if self._dispatcher is None:
            return
        request = NotificationRequest(
            id=str(uuid4()),
            recipient=recipient,
            recipient_type=recipient_type,
            channel=NotificationChannel(settings.default_notification_channel),
            ticket_id=ticket.id,
            message=message,
            created_at=self._clock.now(),
        )
        try:
            self._dispatcher.enqueue(request)
        except NotificationEnqueueException as e:
            logger.warning(
                "Notification dropped",
                extra={"ticket_id": ticket.id, "recipient": recipient, "error": e.message}
            )


def _raise_invalid(ticket: Ticket, target: TicketStatus) -> None:
    raise InvalidTransitionException(ticket.id, ticket.status.value, TicketStatus(target).value)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class EscalationStats:
    """Aggregate view used by the administration dashboard."""
    rules_total: int
    rules_active: int
    rules_inactive: int
    executions_total: int
    executions_successful: int
    executions_partial: int
    success_rate: float
    escalated_tickets: int
    period_days: int


class EscalationQueryService:
    """
    Read side of the escalation audit trail.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, clock: Optional[IClock] = None):
        self._uow_factory = uow_factory
        self._clock = clock or SystemClock()

    async def get_escalation_history(self, ticket_id: str) -> List[EscalationLog]:
        """Escalation history of one ticket, oldest first."""
        async with self._uow_factory() as uow:
            if await uow.tickets.get_by_id(ticket_id) is None:
                raise ResourceNotFoundException("Ticket", ticket_id)
            return await uow.escalation_logs.list_for_ticket(ticket_id)

    async def get_escalation_logs(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        rule_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EscalationLog]:
        """Log entries in a timestamp range, for reporting. Naive bounds are taken as UTC."""
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and end < start:
            raise ValidationException("end must not be before start")
        async with self._uow_factory() as uow:
            return await uow.escalation_logs.list_between(
                start=start, end=end, rule_id=rule_id, ticket_id=ticket_id,
                limit=limit, offset=offset,
            )

    async def get_escalation_stats(self, days: int = 30) -> EscalationStats:
        """Rule counts, automatic execution outcomes in the window and escalated tickets."""
        since = self._clock.now() - timedelta(days=days)
        async with self._uow_factory() as uow:
            rule_counts = await uow.rules.count_rules()
            executions = await uow.escalation_logs.count_by_execution_status(since)
            escalated = await uow.tickets.count_by_status(TicketStatus.ESCALATED)

        successful = executions.get(ExecutionStatus.SUCCESS.value, 0)
        partial = executions.get(ExecutionStatus.PARTIAL.value, 0)
        total = successful + partial
        return EscalationStats(
            rules_total=rule_counts.get("total", 0),
            rules_active=rule_counts.get("active", 0),
            rules_inactive=rule_counts.get("total", 0) - rule_counts.get("active", 0),
            executions_total=total,
            executions_successful=successful,
            executions_partial=partial,
            success_rate=round(successful / total * 100, 1) if total else 0.0,
            escalated_tickets=escalated,
            period_days=days,
        )
