"""
Rule Evaluator
==============

Determines which tickets currently satisfy each active escalation rule.

For every rule the candidate set is bounded first by the rule's status and
priority filters (a store query); the time and sentiment conditions are then
checked in memory. A (rule, ticket) pair fires once per reference time: the
FiringLedger remembers pairs that already fired until the ticket's reference
time moves or the pair stops matching.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.config import EVALUABLE_STATUSES
from src.core import RuleEvaluationException, StorageUnavailableException
from src.escalation.domain import EscalationRule, Ticket
from src.escalation.application.services import UnitOfWorkFactory
from src.shared.infrastructure.logging import get_context_logger, get_logger

logger = get_logger(__name__)

PairKey = Tuple[str, str]


class FiringLedger:
    """
    "Already fired, not yet reset" state per (rule, ticket) pair.

    Each entry holds the ticket's reference time as of the committed firing;
    a different reference time on a later tick means the clock was reset.
    """

    def __init__(self):
        self._fired: Dict[PairKey, datetime] = {}

    def has_fired(self, rule_id: str, ticket: Ticket) -> bool:
        key = (rule_id, ticket.id)
        fired_at_reference = self._fired.get(key)
        if fired_at_reference is None:
            return False
        if fired_at_reference != ticket.reference_time:
            del self._fired[key]
            return False
        return True

    def record(self, rule_id: str, ticket: Ticket) -> None:
        self._fired[(rule_id, ticket.id)] = ticket.reference_time

    def prune(self, rule_id: str, still_matching: Iterable[str]) -> int:
        """Forget pairs of ``rule_id`` whose ticket no longer matches. Returns how many."""
        keep = set(still_matching)
        stale = [key for key in self._fired if key[0] == rule_id and key[1] not in keep]
        for key in stale:
            del self._fired[key]
        return len(stale)

    def retain_rules(self, rule_ids: Iterable[str]) -> None:
        """Drop state of rules that are no longer active."""
        active = set(rule_ids)
        for key in [k for k in self._fired if k[0] not in active]:
            del self._fired[key]

    def __contains__(self, key: PairKey) -> bool:
        return key in self._fired

    def __len__(self) -> int:
        return len(self._fired)


@dataclass
class EngineState:
    """
    State that outlives a single tick; owned by the engine, never global.
    """
    ledger: FiringLedger = field(default_factory=FiringLedger)
    tick_in_progress: bool = False
    ticks_completed: int = 0
    last_tick_at: Optional[datetime] = None


@dataclass
class EvaluationContext:
    """Everything one tick needs, passed explicitly through evaluator and executor."""
    tick_id: str
    now: datetime
    ledger: FiringLedger


@dataclass
class RuleMatch:
    rule: EscalationRule
    ticket: Ticket


@dataclass
class EvaluationReport:
    """Matches in rule creation order, plus bookkeeping for the tick summary."""
    matches: List[RuleMatch] = field(default_factory=list)
    rules_evaluated: int = 0
    failed_rules: List[str] = field(default_factory=list)
    skipped_duplicates: int = 0


class RuleEvaluator:
    """
    Produces the (rule, ticket) matches for a tick.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, worker_pool_size: int = 8):
        self._uow_factory = uow_factory
        self._worker_pool_size = worker_pool_size

    async def load_rules(self) -> List[EscalationRule]:
        """Active rules in ascending creation order."""
        async with self._uow_factory() as uow:
            rules = await uow.rules.get_active_rules()
        return sorted(rules, key=lambda r: r.sort_key)

    @staticmethod
    def matches(rule: EscalationRule, ticket: Ticket, now: datetime) -> bool:
        """
        Check every present trigger condition against a ticket.

        A rule without conditions never matches. Resolved and closed
        tickets are outside escalation entirely.
        """
        conditions = rule.conditions
        if conditions.is_empty:
            return False
        if ticket.status not in EVALUABLE_STATUSES:
            return False
        if conditions.priority is not None and ticket.priority not in conditions.priority:
            return False
        if conditions.status is not None and ticket.status not in conditions.status:
            return False
        if conditions.time_threshold is not None:
            elapsed = (now - ticket.reference_time).total_seconds()
            if elapsed < conditions.time_threshold:
                return False
        if conditions.sentiment_threshold is not None:
            if ticket.sentiment_score is None:
                return False
            if not ticket.sentiment_score < conditions.sentiment_threshold:
                return False
        return True

    async def evaluate(
        self,
        rules: Sequence[EscalationRule],
        context: EvaluationContext
    ) -> EvaluationReport:
        """
        Evaluate all rules, fanning candidate fetches out over a bounded pool.

        Raises:
            StorageUnavailableException: the store could not be reached
        """
        semaphore = asyncio.Semaphore(self._worker_pool_size)

        async def bounded(rule: EscalationRule) -> List[Ticket]:
            async with semaphore:
                return await self._matching_tickets(rule, context.now)

        results = await asyncio.gather(
            *(bounded(rule) for rule in rules), return_exceptions=True
        )

        for result in results:
            if isinstance(result, StorageUnavailableException):
                raise result

        log = get_context_logger(__name__, tick_id=context.tick_id)
        report = EvaluationReport()

        # Dedup is applied sequentially in rule order so the ledger is never
        # touched concurrently and match order stays deterministic.
        for rule, result in zip(rules, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                report.failed_rules.append(rule.id)
                log.warning(
                    "Rule skipped for this tick",
                    extra={
                        "rule_id": rule.id,
                        "rule_name": rule.name,
                        "error_type": type(result).__name__,
                        "error": str(result),
                    }
                )
                continue

            report.rules_evaluated += 1
            context.ledger.prune(rule.id, (t.id for t in result))
            for ticket in result:
                if context.ledger.has_fired(rule.id, ticket):
                    report.skipped_duplicates += 1
                    log.debug(
                        "Pair already fired, waiting for reset",
                        extra={"rule_id": rule.id, "ticket_id": ticket.id}
                    )
                    continue
                report.matches.append(RuleMatch(rule=rule, ticket=ticket))

        return report

    async def _matching_tickets(self, rule: EscalationRule, now: datetime) -> List[Ticket]:
        conditions = rule.conditions
        if conditions.is_empty:
            return []

        statuses = [
            s for s in EVALUABLE_STATUSES
            if conditions.status is None or s in conditions.status
        ]
        if not statuses:
            return []

        async with self._uow_factory() as uow:
            candidates = await uow.tickets.get_by_filter(statuses, conditions.priority)

        try:
            matched = [t for t in candidates if self.matches(rule, t, now)]
        except (TypeError, ValueError) as e:
            raise RuleEvaluationException(rule.id, f"evaluation failed: {e}") from e

        # Stable order within a rule so action ordering is reproducible.
        matched.sort(key=lambda t: (t.created_at, t.id))
        return matched
