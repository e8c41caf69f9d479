"""
Escalation Engine
=================

One tick is a single logical pass: load rules, evaluate, execute the
matches, commit. Ticks never overlap; a tick requested while another is
running is reported as skipped rather than queued.

Matches are grouped by ticket. Groups run concurrently on a bounded pool,
while the pairs inside a group run one after another under the ticket's
lock so two rules never race on the same ticket.

Staff can also run a single rule against a ticket on demand; that path
skips trigger conditions and is audited as a manual escalation.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from src.config import settings
from src.core import (
    ResourceNotFoundException, StorageUnavailableException, ValidationException,
)
from src.escalation.application.evaluator import (
    EngineState, EvaluationContext, RuleEvaluator, RuleMatch,
)
from src.escalation.application.executor import (
    EscalationExecutor, ExecutionOutcome, FiringStatus,
)
from src.escalation.application.services import (
    IClock, KeyedLock, SystemClock, UnitOfWorkFactory,
)
from src.shared.infrastructure.logging import get_context_logger, get_logger, log_latency

logger = get_logger(__name__)


@dataclass
class TickResult:
    """Summary of one evaluation tick."""
    tick_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    rules_evaluated: int = 0
    rules_failed: int = 0
    matches: int = 0
    fired: int = 0
    skipped_duplicates: int = 0
    conflicts: int = 0
    invalid_transitions: int = 0
    failed: int = 0
    notifications_enqueued: int = 0
    notifications_failed: int = 0
    skipped: bool = False
    aborted: bool = False
    fired_pairs: List[tuple] = field(default_factory=list)

    def record(self, outcome: ExecutionOutcome) -> None:
        if outcome.status == FiringStatus.FIRED:
            self.fired += 1
            self.fired_pairs.append((outcome.rule_id, outcome.ticket_id))
        elif outcome.status == FiringStatus.CONFLICT:
            self.conflicts += 1
        elif outcome.status == FiringStatus.INVALID_TRANSITION:
            self.invalid_transitions += 1
        elif outcome.status == FiringStatus.FAILED:
            self.failed += 1
        self.notifications_enqueued += outcome.notifications_enqueued
        self.notifications_failed += outcome.notifications_failed


class EscalationEngine:
    """
    Drives evaluation ticks.

    The engine owns its EngineState (overlap flag and firing ledger); it is
    passed explicitly to the evaluator through an EvaluationContext.
    """

    def __init__(
        self,
        evaluator: RuleEvaluator,
        executor: EscalationExecutor,
        clock: Optional[IClock] = None,
        locks: Optional[KeyedLock] = None,
        state: Optional[EngineState] = None,
        worker_pool_size: Optional[int] = None,
    ):
        self._evaluator = evaluator
        self._executor = executor
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLock()
        self.state = state or EngineState()
        self._worker_pool_size = worker_pool_size or settings.escalation_worker_pool_size

    @property
    def is_running(self) -> bool:
        return self.state.tick_in_progress

    async def run_tick(self) -> TickResult:
        """
        Run one evaluation pass.

        Storage unavailability aborts the tick (``aborted``); nothing of a
        pair that did not commit is kept, so it is redone next tick.
        Cancellation propagates after the overlap flag is cleared.
        """
        now = self._clock.now()
        tick_id = uuid4().hex[:12]

        if self.state.tick_in_progress:
            logger.warning("Previous tick still running, skipping", extra={"tick_id": tick_id})
            return TickResult(tick_id=tick_id, started_at=now, finished_at=now, skipped=True)

        self.state.tick_in_progress = True
        result = TickResult(tick_id=tick_id, started_at=now)
        log = get_context_logger(__name__, tick_id=tick_id)

        try:
            with log_latency(log, "escalation_tick"):
                await self._run(result, EvaluationContext(tick_id=tick_id, now=now, ledger=self.state.ledger))
        except StorageUnavailableException as e:
            result.aborted = True
            log.error("Tick aborted, storage unavailable", extra={"error": e.message})
        finally:
            self.state.tick_in_progress = False
            result.finished_at = self._clock.now()

        if not result.aborted:
            self.state.ticks_completed += 1
            self.state.last_tick_at = now

        log.info(
            "Escalation tick finished",
            extra={
                "rules_evaluated": result.rules_evaluated,
                "rules_failed": result.rules_failed,
                "matches": result.matches,
                "fired": result.fired,
                "skipped_duplicates": result.skipped_duplicates,
                "conflicts": result.conflicts,
                "invalid_transitions": result.invalid_transitions,
                "notifications_enqueued": result.notifications_enqueued,
                "aborted": result.aborted,
            }
        )
        return result

    async def _run(self, result: TickResult, context: EvaluationContext) -> None:
        rules = await self._evaluator.load_rules()
        context.ledger.retain_rules(rule.id for rule in rules)

        report = await self._evaluator.evaluate(rules, context)
        result.rules_evaluated = report.rules_evaluated
        result.rules_failed = len(report.failed_rules)
        result.skipped_duplicates = report.skipped_duplicates
        result.matches = len(report.matches)
        if not report.matches:
            return

        # Dicts keep insertion order, so each group keeps rule creation order.
        groups: Dict[str, List[RuleMatch]] = {}
        for match in report.matches:
            groups.setdefault(match.ticket.id, []).append(match)

        semaphore = asyncio.Semaphore(self._worker_pool_size)

        async def bounded(ticket_id: str, group: List[RuleMatch]) -> List[ExecutionOutcome]:
            async with semaphore:
                async with self._locks.hold(ticket_id):
                    return await self._run_group(group, context)

        outcomes = await asyncio.gather(
            *(bounded(ticket_id, group) for ticket_id, group in groups.items()),
            return_exceptions=True,
        )

        log = get_context_logger(__name__, tick_id=context.tick_id)
        storage_error = None
        for (ticket_id, group), group_outcomes in zip(groups.items(), outcomes):
            if isinstance(group_outcomes, StorageUnavailableException):
                storage_error = group_outcomes
                continue
            if isinstance(group_outcomes, Exception):
                # Local to this ticket; the other tickets of the tick go on.
                log.error(
                    "Ticket skipped for this tick",
                    extra={
                        "ticket_id": ticket_id,
                        "error_type": type(group_outcomes).__name__,
                        "error": str(group_outcomes),
                    }
                )
                for match in group:
                    result.record(ExecutionOutcome(match.rule.id, ticket_id, FiringStatus.FAILED))
                continue
            if isinstance(group_outcomes, BaseException):
                raise group_outcomes
            for outcome in group_outcomes:
                result.record(outcome)
        if storage_error is not None:
            raise storage_error

    async def _run_group(
        self,
        group: List[RuleMatch],
        context: EvaluationContext
    ) -> List[ExecutionOutcome]:
        outcomes: List[ExecutionOutcome] = []
        current = group[0].ticket

        for index, match in enumerate(group):
            rule = match.rule
            if index > 0 and (
                not RuleEvaluator.matches(rule, current, context.now)
                or context.ledger.has_fired(rule.id, current)
            ):
                # An earlier firing in this tick changed the ticket.
                outcomes.append(ExecutionOutcome(rule.id, current.id, FiringStatus.NOT_APPLICABLE))
                continue

            outcome = await self._executor.execute(rule, current, context)
            outcomes.append(outcome)

            if outcome.fired:
                context.ledger.record(rule.id, outcome.ticket)
                current = outcome.ticket
            elif outcome.status == FiringStatus.CONFLICT:
                outcomes.extend(
                    ExecutionOutcome(m.rule.id, m.ticket.id, FiringStatus.CONFLICT)
                    for m in group[index + 1:]
                )
                break

        return outcomes


class RuleExecutionService:
    """
    Runs one rule against one ticket on a staff member's request.

    Shares the per-ticket locks with the engine and the lifecycle service,
    so a manual run never interleaves with a tick touching the same ticket.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        executor: EscalationExecutor,
        locks: Optional[KeyedLock] = None,
    ):
        self._uow_factory = uow_factory
        self._executor = executor
        self._locks = locks or KeyedLock()

    async def execute_rule(self, rule_id: str, ticket_id: str, actor_id: str) -> ExecutionOutcome:
        """
        Apply the actions of an active rule to a ticket now.

        Raises:
            ResourceNotFoundException: unknown or inactive rule, unknown ticket
            RuleEvaluationException: the stored rule definition is malformed
            ValidationException: the ticket is already resolved or closed
            InvalidTransitionException: an action needs a refused transition
            VersionConflictException: the ticket changed concurrently
        """
        async with self._locks.hold(ticket_id):
            async with self._uow_factory() as uow:
                rule = await uow.rules.get_by_id(rule_id)
                ticket = await uow.tickets.get_by_id(ticket_id)

            if rule is None or not rule.is_active:
                raise ResourceNotFoundException("EscalationRule", rule_id)
            if ticket is None:
                raise ResourceNotFoundException("Ticket", ticket_id)
            if ticket.is_resolved:
                raise ValidationException(f"Ticket {ticket_id} is already {ticket.status.value}")

            return await self._executor.execute_manual(rule, ticket, actor_id)
