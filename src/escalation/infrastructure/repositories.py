"""
Escalation Infrastructure Repositories
======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Every SQLAlchemy error leaving this module is
translated into the repository exception taxonomy.
"""

import functools
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import TicketStatus, Priority, EscalationType, ExecutionStatus
from src.core import (
    ResourceNotFoundException, RuleEvaluationException, VersionConflictException,
)
from src.escalation.application.services import (
    ITicketRepository, IEscalationLogRepository, IRuleRepository, IUnitOfWork,
    UnitOfWorkFactory,
)
from src.escalation.domain import Ticket, EscalationRule, EscalationLog
from src.escalation.infrastructure.models import (
    TicketModel, EscalationRuleModel, EscalationLogModel,
)
from src.infrastructure.database import translate_db_error
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def translated(method):
    """Re-raise SQLAlchemy errors as repository exceptions."""

    @functools.wraps(method)
    async def wrapper(*args, **kwargs):
        try:
            return await method(*args, **kwargs)
        except SQLAlchemyError as e:
            raise translate_db_error(e) from e

    return wrapper


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _ticket_to_domain(model: TicketModel) -> Ticket:
    return Ticket(
        id=model.id,
        ticket_number=model.ticket_number,
        title=model.title,
        description=model.description,
        priority=model.priority,
        status=model.status,
        created_at=model.created_at,
        updated_at=model.updated_at,
        sla_deadline=model.sla_deadline,
        unit_id=model.unit_id,
        assignee_id=model.assignee_id,
        category_id=model.category_id,
        submitter_name=model.submitter_name,
        submitter_contact=model.submitter_contact,
        sentiment_score=model.sentiment_score,
        first_response_at=model.first_response_at,
        last_response_at=model.last_response_at,
        last_escalated_at=model.last_escalated_at,
        resolved_at=model.resolved_at,
        closed_at=model.closed_at,
        review_flag=model.review_flag,
        flag_reason=model.flag_reason,
        version=model.version,
    )


def _log_to_domain(model: EscalationLogModel) -> EscalationLog:
    return EscalationLog(
        id=model.id,
        sequence=model.sequence,
        ticket_id=model.ticket_id,
        rule_id=model.rule_id,
        from_status=TicketStatus(model.from_status),
        to_status=TicketStatus(model.to_status),
        reason=model.reason,
        actor=model.actor,
        created_at=model.created_at,
        escalation_type=EscalationType(model.escalation_type),
        executed_actions=list(model.executed_actions or []),
        execution_status=ExecutionStatus(model.execution_status),
        unit_id=model.unit_id,
    )


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of the ticket store.

    Updates are compare-and-swap on ``version``.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @translated
    async def get_by_id(self, ticket_id: str) -> Optional[Ticket]:
        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _ticket_to_domain(model) if model else None

    @translated
    async def get_by_filter(
        self,
        statuses: Sequence[TicketStatus],
        priorities: Optional[Sequence[Priority]] = None
    ) -> List[Ticket]:
        stmt = select(TicketModel).where(
            TicketModel.status.in_([_column_value(s) for s in statuses])
        )
        if priorities is not None:
            stmt = stmt.where(TicketModel.priority.in_([_column_value(p) for p in priorities]))
        stmt = stmt.order_by(TicketModel.created_at, TicketModel.id)

        result = await self._session.execute(stmt)

        # Rows come from an external intake writer; one that breaks the
        # ticket invariants is left out instead of failing the whole scan.
        tickets = []
        for model in result.scalars().all():
            try:
                tickets.append(_ticket_to_domain(model))
            except (ValueError, TypeError) as e:
                logger.warning(
                    "Malformed ticket row skipped",
                    extra={"ticket_id": model.id, "status": model.status, "error": str(e)}
                )
        return tickets

    @translated
    async def add(self, ticket: Ticket) -> Ticket:
        model = TicketModel(
            id=ticket.id or str(uuid4()),
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            description=ticket.description,
            priority=ticket.priority.value,
            status=ticket.status.value,
            unit_id=ticket.unit_id,
            assignee_id=ticket.assignee_id,
            category_id=ticket.category_id,
            submitter_name=ticket.submitter_name,
            submitter_contact=ticket.submitter_contact,
            sentiment_score=ticket.sentiment_score,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            sla_deadline=ticket.sla_deadline,
            first_response_at=ticket.first_response_at,
            last_response_at=ticket.last_response_at,
            last_escalated_at=ticket.last_escalated_at,
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            review_flag=ticket.review_flag,
            flag_reason=ticket.flag_reason,
            version=ticket.version,
        )
        self._session.add(model)
        await self._session.flush()
        return _ticket_to_domain(model)

    @translated
    async def update(self, ticket_id: str, patch: Dict[str, Any], expected_version: int) -> Ticket:
        values = {key: _column_value(value) for key, value in patch.items()}
        values["version"] = expected_version + 1

        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket_id, TicketModel.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount == 0:
            exists = await self._session.execute(select(TicketModel.id).where(TicketModel.id == ticket_id))
            if exists.scalar_one_or_none() is None:
                raise ResourceNotFoundException("Ticket", ticket_id)
            raise VersionConflictException(ticket_id, expected_version)

        updated = await self.get_by_id(ticket_id)
        return updated

    @translated
    async def count_by_status(self, status: TicketStatus) -> int:
        stmt = select(func.count()).select_from(TicketModel).where(
            TicketModel.status == _column_value(status)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()


class SQLAlchemyEscalationLogRepository(IEscalationLogRepository):
    """
    SQLAlchemy implementation of the append-only escalation log.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @translated
    async def append(self, entry: EscalationLog) -> EscalationLog:
        """
        Append an entry.

        The timestamp is clamped forward to the ticket's latest entry so
        history never goes backwards, even when a retry carries an older
        clock reading.
        """
        latest_stmt = select(func.max(EscalationLogModel.created_at)).where(
            EscalationLogModel.ticket_id == entry.ticket_id
        )
        latest = (await self._session.execute(latest_stmt)).scalar_one_or_none()
        created_at = entry.created_at
        if latest is not None and latest > created_at:
            created_at = latest

        model = EscalationLogModel(
            id=entry.id or str(uuid4()),
            ticket_id=entry.ticket_id,
            rule_id=entry.rule_id,
            from_status=_column_value(entry.from_status),
            to_status=_column_value(entry.to_status),
            reason=entry.reason,
            actor=entry.actor,
            unit_id=entry.unit_id,
            escalation_type=_column_value(entry.escalation_type),
            execution_status=_column_value(entry.execution_status),
            executed_actions=list(entry.executed_actions),
            created_at=created_at,
        )
        self._session.add(model)
        await self._session.flush()
        return _log_to_domain(model)

    @translated
    async def list_for_ticket(self, ticket_id: str) -> List[EscalationLog]:
        stmt = (
            select(EscalationLogModel)
            .where(EscalationLogModel.ticket_id == ticket_id)
            .order_by(EscalationLogModel.created_at, EscalationLogModel.sequence)
        )
        result = await self._session.execute(stmt)
        return [_log_to_domain(m) for m in result.scalars().all()]

    @translated
    async def list_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        rule_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[EscalationLog]:
        stmt = select(EscalationLogModel)
        if start is not None:
            stmt = stmt.where(EscalationLogModel.created_at >= start)
        if end is not None:
            stmt = stmt.where(EscalationLogModel.created_at < end)
        if rule_id is not None:
            stmt = stmt.where(EscalationLogModel.rule_id == rule_id)
        if ticket_id is not None:
            stmt = stmt.where(EscalationLogModel.ticket_id == ticket_id)

        stmt = (
            stmt.order_by(EscalationLogModel.created_at, EscalationLogModel.sequence)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [_log_to_domain(m) for m in result.scalars().all()]

    @translated
    async def count_by_execution_status(self, since: datetime) -> Dict[str, int]:
        stmt = (
            select(EscalationLogModel.execution_status, func.count())
            .where(
                EscalationLogModel.escalation_type == EscalationType.AUTOMATIC.value,
                EscalationLogModel.created_at >= since,
            )
            .group_by(EscalationLogModel.execution_status)
        )
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}


def _rule_to_domain(model: EscalationRuleModel) -> EscalationRule:
    return EscalationRule.from_definition(
        rule_id=model.id,
        name=model.name,
        trigger_conditions=model.trigger_conditions,
        actions=model.actions,
        created_at=model.created_at,
        description=model.description,
        is_active=model.is_active,
    )


class SQLAlchemyRuleRepository(IRuleRepository):
    """
    SQLAlchemy implementation of the escalation rule store.

    Rule definitions are validated on load; a malformed rule is logged and
    left out rather than failing the whole load.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @translated
    async def get_active_rules(self) -> List[EscalationRule]:
        stmt = (
            select(EscalationRuleModel)
            .where(EscalationRuleModel.is_active.is_(True))
            .order_by(EscalationRuleModel.created_at, EscalationRuleModel.id)
        )
        result = await self._session.execute(stmt)

        rules = []
        for model in result.scalars().all():
            try:
                rules.append(_rule_to_domain(model))
            except RuleEvaluationException as e:
                logger.warning(
                    "Malformed escalation rule skipped",
                    extra={"rule_id": model.id, "rule_name": model.name, "error": e.message, **e.details}
                )
        return rules

    @translated
    async def get_by_id(self, rule_id: str) -> Optional[EscalationRule]:
        model = await self._session.get(EscalationRuleModel, rule_id)
        if model is None:
            return None
        return _rule_to_domain(model)

    @translated
    async def count_rules(self) -> Dict[str, int]:
        total = (await self._session.execute(
            select(func.count()).select_from(EscalationRuleModel)
        )).scalar_one()
        active = (await self._session.execute(
            select(func.count()).select_from(EscalationRuleModel)
            .where(EscalationRuleModel.is_active.is_(True))
        )).scalar_one()
        return {"total": total, "active": active}


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """
    One AsyncSession shared by the three repositories.

    Leaving the context without ``commit()`` discards everything, which is
    how a failed or cancelled firing leaves no partial state behind.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self._session = self._session_maker()
        self.tickets = SQLAlchemyTicketRepository(self._session)
        self.escalation_logs = SQLAlchemyEscalationLogRepository(self._session)
        self.rules = SQLAlchemyRuleRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Closing the session rolls back anything not committed.
        await self._session.close()
        self._session = None

    @translated
    async def commit(self) -> None:
        await self._session.commit()

    @translated
    async def rollback(self) -> None:
        await self._session.rollback()


def unit_of_work_factory(session_maker: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Factory handed to the application services."""
    return lambda: SQLAlchemyUnitOfWork(session_maker)
