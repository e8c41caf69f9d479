"""
Escalation Executor
===================

Applies a matched rule's action list to a ticket.

The whole list is planned in memory first, then the ticket change and the
single audit entry for the firing are committed in one unit of work with a
compare-and-swap on the ticket version. Notifications are handed to the
dispatcher only after that commit succeeds.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type
from uuid import uuid4

from src.config import (
    TicketStatus, EscalationType, ExecutionStatus, ActionOutcome,
    NotificationChannel, RecipientType, SYSTEM_ACTOR, settings,
)
from src.core import (
    ApplicationException, InvalidTransitionException, NotificationEnqueueException,
    StorageUnavailableException, VersionConflictException,
)
from src.escalation.domain import (
    Ticket, EscalationRule, EscalationLog, NotificationRequest, TicketStateMachine,
    NotifyManagerAction, NotifyAssigneeAction, BumpPriorityAction,
    FlagReviewAction, EscalateToRoleAction, next_priority,
)
from src.escalation.application.services import (
    IClock, INotificationDispatcher, ISLAPolicyProvider, SystemClock, UnitOfWorkFactory,
)
from src.escalation.application.evaluator import EvaluationContext
from src.shared.infrastructure.logging import get_context_logger


class FiringStatus(str, Enum):
    """What happened to one (rule, ticket) pair in a tick."""
    FIRED = "fired"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    NOT_APPLICABLE = "not_applicable"
    FAILED = "failed"


@dataclass
class FiringPlan:
    """The in-memory result of applying every action, before anything is persisted."""
    ticket: Ticket
    log_entry: EscalationLog
    notifications: List[NotificationRequest] = field(default_factory=list)


@dataclass
class ExecutionOutcome:
    rule_id: str
    ticket_id: str
    status: FiringStatus
    ticket: Optional[Ticket] = None
    log_entry: Optional[EscalationLog] = None
    notifications_enqueued: int = 0
    notifications_failed: int = 0

    @property
    def fired(self) -> bool:
        return self.status == FiringStatus.FIRED


ActionResult = Tuple[Ticket, ActionOutcome, str]


class EscalationExecutor:
    """
    Executes rule firings atomically per (rule, ticket) pair.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        policy_provider: ISLAPolicyProvider,
        dispatcher: INotificationDispatcher,
        clock: Optional[IClock] = None,
        manager_role: Optional[str] = None,
        default_channel: Optional[str] = None,
    ):
        self._uow_factory = uow_factory
        self._policy_provider = policy_provider
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._manager_role = manager_role or settings.manager_role
        self._default_channel = NotificationChannel(default_channel or settings.default_notification_channel)
        self._handlers: Dict[Type, Callable[..., ActionResult]] = {
            NotifyManagerAction: self._notify_manager,
            NotifyAssigneeAction: self._notify_assignee,
            BumpPriorityAction: self._bump_priority,
            FlagReviewAction: self._flag_review,
            EscalateToRoleAction: self._escalate_to_role,
        }

    def plan(
        self,
        rule: EscalationRule,
        ticket: Ticket,
        now: datetime,
        actor: str = SYSTEM_ACTOR,
        escalation_type: EscalationType = EscalationType.AUTOMATIC,
    ) -> FiringPlan:
        """
        Apply the rule's actions in order to a copy of the ticket.

        Raises:
            InvalidTransitionException: an action needs a transition the
                state machine refuses; the firing does not apply right now
        """
        updated = ticket.copy()
        executed: List[dict] = []
        notifications: List[NotificationRequest] = []

        for action in rule.actions:
            handler = self._handlers[type(action)]
            updated, outcome, detail = handler(action, rule, updated, now, notifications)
            executed.append({"type": action.type, "outcome": outcome.value, "detail": detail})

        if ticket.diff(updated):
            updated.updated_at = now

        partial = any(a["outcome"] == ActionOutcome.SKIPPED.value for a in executed)
        entry = EscalationLog(
            ticket_id=ticket.id,
            rule_id=rule.id,
            from_status=ticket.status,
            to_status=updated.status,
            reason=rule.name,
            actor=actor,
            created_at=now,
            escalation_type=escalation_type,
            executed_actions=executed,
            execution_status=ExecutionStatus.PARTIAL if partial else ExecutionStatus.SUCCESS,
            unit_id=updated.unit_id,
        )
        return FiringPlan(ticket=updated, log_entry=entry, notifications=notifications)

    async def execute(
        self,
        rule: EscalationRule,
        ticket: Ticket,
        context: EvaluationContext
    ) -> ExecutionOutcome:
        """
        Plan, commit and (after the commit) dispatch one firing.

        Raises:
            StorageUnavailableException: the store is down; the tick aborts
        """
        log = get_context_logger(__name__, tick_id=context.tick_id)
        pair = {"rule_id": rule.id, "ticket_id": ticket.id}

        try:
            plan = self.plan(rule, ticket, self._clock.now())
        except InvalidTransitionException as e:
            log.info("Rule does not apply right now", extra={**pair, "error": e.message})
            return ExecutionOutcome(rule.id, ticket.id, FiringStatus.INVALID_TRANSITION)

        try:
            saved, entry = await self._commit(ticket, plan)
        except VersionConflictException:
            log.info("Ticket changed concurrently, dropping firing for this tick", extra=pair)
            return ExecutionOutcome(rule.id, ticket.id, FiringStatus.CONFLICT)
        except StorageUnavailableException:
            raise
        except ApplicationException as e:
            log.error("Firing rolled back", extra={**pair, "error": e.message})
            return ExecutionOutcome(rule.id, ticket.id, FiringStatus.FAILED)

        enqueued, failed = self._dispatch(plan.notifications, log)
        log.info(
            "Escalation rule fired",
            extra={
                **pair,
                "rule_name": rule.name,
                "from_status": entry.from_status.value,
                "to_status": entry.to_status.value,
                "execution_status": entry.execution_status.value,
                "notifications": enqueued,
            }
        )
        return ExecutionOutcome(
            rule.id, ticket.id, FiringStatus.FIRED,
            ticket=saved, log_entry=entry,
            notifications_enqueued=enqueued, notifications_failed=failed,
        )

    async def execute_manual(self, rule: EscalationRule, ticket: Ticket, actor_id: str) -> ExecutionOutcome:
        """
        Run a rule's actions on a ticket at a staff member's request.

        Trigger conditions and the firing ledger are not consulted. The
        audit entry is a manual one attributed to ``actor_id``.

        Raises:
            InvalidTransitionException: an action needs a refused transition
            VersionConflictException: the ticket changed since it was read
        """
        log = get_context_logger(__name__, actor=actor_id)
        plan = self.plan(rule, ticket, self._clock.now(), actor=actor_id, escalation_type=EscalationType.MANUAL)
        saved, entry = await self._commit(ticket, plan)

        enqueued, failed = self._dispatch(plan.notifications, log)
        log.info(
            "Escalation rule executed manually",
            extra={
                "rule_id": rule.id,
                "ticket_id": ticket.id,
                "rule_name": rule.name,
                "from_status": entry.from_status.value,
                "to_status": entry.to_status.value,
                "execution_status": entry.execution_status.value,
                "notifications": enqueued,
            }
        )
        return ExecutionOutcome(
            rule.id, ticket.id, FiringStatus.FIRED,
            ticket=saved, log_entry=entry,
            notifications_enqueued=enqueued, notifications_failed=failed,
        )

    async def _commit(self, ticket: Ticket, plan: FiringPlan) -> Tuple[Ticket, EscalationLog]:
        # Always written, even when only notifications changed, so the
        # version check rejects firings computed against stale state.
        patch = ticket.diff(plan.ticket)
        patch.setdefault("updated_at", plan.log_entry.created_at)

        async with self._uow_factory() as uow:
            saved = await uow.tickets.update(ticket.id, patch, ticket.version)
            entry = await uow.escalation_logs.append(plan.log_entry)
            await uow.commit()
        return saved, entry

    def _dispatch(self, requests: List[NotificationRequest], log) -> Tuple[int, int]:
        enqueued = failed = 0
        for request in requests:
            try:
                self._dispatcher.enqueue(request)
                enqueued += 1
            except NotificationEnqueueException as e:
                failed += 1
                log.warning(
                    "Notification dropped",
                    extra={"ticket_id": request.ticket_id, "recipient": request.recipient, "error": e.message}
                )
        return enqueued, failed

    # ========== Action handlers ==========

    def _notify_manager(self, action: NotifyManagerAction, rule, ticket, now, out) -> ActionResult:
        recipient = action.target or self._manager_role
        out.append(self._request(rule, ticket, now, recipient, RecipientType.ROLE, action.message, action.channel))
        return ticket, ActionOutcome.APPLIED, f"role:{recipient}"

    def _notify_assignee(self, action: NotifyAssigneeAction, rule, ticket, now, out) -> ActionResult:
        if ticket.assignee_id:
            recipient, kind = f"user:{ticket.assignee_id}", RecipientType.USER
        elif ticket.unit_id:
            recipient, kind = f"unit:{ticket.unit_id}", RecipientType.UNIT
        else:
            return ticket, ActionOutcome.SKIPPED, "no assignee or unit"
        out.append(self._request(rule, ticket, now, recipient, kind, action.message, action.channel))
        return ticket, ActionOutcome.APPLIED, recipient

    def _bump_priority(self, action: BumpPriorityAction, rule, ticket, now, out) -> ActionResult:
        raised = next_priority(ticket.priority)
        if raised is None:
            return ticket, ActionOutcome.SKIPPED, "already critical"
        previous = ticket.priority
        ticket.priority = raised
        ticket.sla_deadline = self._policy_provider.get_policy().deadline_for(raised, now)
        return ticket, ActionOutcome.APPLIED, f"{previous.value}->{raised.value}"

    def _flag_review(self, action: FlagReviewAction, rule, ticket, now, out) -> ActionResult:
        if ticket.review_flag:
            return ticket, ActionOutcome.SKIPPED, "already flagged"
        ticket.review_flag = True
        ticket.flag_reason = action.message or rule.name
        return ticket, ActionOutcome.APPLIED, "flagged"

    def _escalate_to_role(self, action: EscalateToRoleAction, rule, ticket, now, out) -> ActionResult:
        escalated = TicketStateMachine.apply(
            ticket, TicketStatus.ESCALATED, now, automatic=True, unit_id=action.unit_id
        )
        out.append(self._request(rule, escalated, now, action.target, RecipientType.ROLE, action.message, action.channel))
        return escalated, ActionOutcome.APPLIED, f"role:{action.target}"

    def _request(
        self,
        rule: EscalationRule,
        ticket: Ticket,
        now: datetime,
        recipient: str,
        recipient_type: RecipientType,
        message: Optional[str],
        channel: Optional[NotificationChannel],
    ) -> NotificationRequest:
        return NotificationRequest(
            id=str(uuid4()),
            recipient=recipient,
            recipient_type=recipient_type,
            channel=channel or self._default_channel,
            ticket_id=ticket.id,
            rule_id=rule.id,
            message=message or f"[{ticket.ticket_number}] {ticket.title}: escalation rule '{rule.name}' fired",
            created_at=now,
        )
