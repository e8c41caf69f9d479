"""
Shared fixtures: a per-test SQLite database, a controllable clock, a
recording notification dispatcher and seeding helpers.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from src.config import TicketStatus
from src.core import NotificationEnqueueException
from src.escalation.application import (
    EscalationEngine,
    EscalationExecutor,
    EscalationQueryService,
    IClock,
    INotificationDispatcher,
    ISLAPolicyProvider,
    KeyedLock,
    RuleEvaluator,
    RuleExecutionService,
    TicketLifecycleService,
)
from src.escalation.domain import EscalationRule, NotificationRequest, SLAPolicy, Ticket
from src.escalation.infrastructure import EscalationRuleModel, unit_of_work_factory
from src.infrastructure.database import Base, build_session_maker

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
RULE_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

_ticket_numbers = itertools.count(1)
_rule_offsets = itertools.count(1)


class FrozenClock(IClock):
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingDispatcher(INotificationDispatcher):
    def __init__(self, fail: bool = False):
        self.requests: List[NotificationRequest] = []
        self.fail = fail

    def enqueue(self, request: NotificationRequest) -> None:
        if self.fail:
            raise NotificationEnqueueException("Notification queue is full")
        self.requests.append(request)


class StaticPolicyProvider(ISLAPolicyProvider):
    def __init__(self, policy: Optional[SLAPolicy] = None):
        self.policy = policy or SLAPolicy()

    def get_policy(self) -> SLAPolicy:
        return self.policy


def make_ticket(
    *,
    priority: str = "high",
    status: str = "open",
    created_at: datetime = T0,
    **overrides,
) -> Ticket:
    number = next(_ticket_numbers)
    values = dict(
        id=str(uuid4()),
        ticket_number=f"TCK-{number:06d}",
        title=f"Complaint {number}",
        description="Street light broken",
        priority=priority,
        status=status,
        created_at=created_at,
        updated_at=created_at,
        sla_deadline=SLAPolicy().deadline_for(priority, created_at),
    )
    if TicketStatus(status) in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
        values["resolved_at"] = created_at
    values.update(overrides)
    return Ticket(**values)


def make_rule(name: str = "rule", conditions: Optional[dict] = None, actions: Optional[list] = None,
              created_at: Optional[datetime] = None) -> EscalationRule:
    return EscalationRule.from_definition(
        rule_id=str(uuid4()),
        name=name,
        trigger_conditions=conditions if conditions is not None else {"priority": ["high"]},
        actions=actions if actions is not None else [{"type": "notify_manager"}],
        created_at=created_at or RULE_EPOCH + timedelta(seconds=next(_rule_offsets)),
    )


# ========== Database ==========

@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'escalation.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
def uow_factory(session_maker):
    return unit_of_work_factory(session_maker)


# ========== Collaborators ==========

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def policy_provider():
    return StaticPolicyProvider()


@pytest.fixture
def locks():
    return KeyedLock()


# ========== Services ==========

@pytest.fixture
def executor(uow_factory, policy_provider, dispatcher, clock):
    return EscalationExecutor(
        uow_factory, policy_provider, dispatcher, clock,
        manager_role="manager", default_channel="email",
    )


@pytest.fixture
def evaluator(uow_factory):
    return RuleEvaluator(uow_factory, worker_pool_size=1)


@pytest.fixture
def engine(evaluator, executor, clock, locks):
    return EscalationEngine(evaluator, executor, clock=clock, locks=locks, worker_pool_size=1)


@pytest.fixture
def rule_execution(uow_factory, executor, locks):
    return RuleExecutionService(uow_factory, executor, locks)


@pytest.fixture
def lifecycle(uow_factory, policy_provider, clock, locks, dispatcher):
    return TicketLifecycleService(
        uow_factory, policy_provider, clock=clock, locks=locks, dispatcher=dispatcher
    )


@pytest.fixture
def query_service(uow_factory, clock):
    return EscalationQueryService(uow_factory, clock)


# ========== Seeding ==========

@pytest.fixture
def seed_ticket(uow_factory):
    async def _seed(**kwargs) -> Ticket:
        ticket = make_ticket(**kwargs)
        async with uow_factory() as uow:
            saved = await uow.tickets.add(ticket)
            await uow.commit()
        return saved

    return _seed


@pytest.fixture
def seed_rule(session_maker):
    async def _seed(
        name: str,
        trigger_conditions: dict,
        actions: list,
        created_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> str:
        created_at = created_at or RULE_EPOCH + timedelta(seconds=next(_rule_offsets))
        model = EscalationRuleModel(
            id=str(uuid4()),
            name=name,
            trigger_conditions=trigger_conditions,
            actions=actions,
            is_active=is_active,
            created_at=created_at,
            updated_at=created_at,
        )
        async with session_maker() as session:
            session.add(model)
            await session.commit()
        return model.id

    return _seed


@pytest.fixture
def fetch_ticket(uow_factory):
    async def _fetch(ticket_id: str) -> Ticket:
        async with uow_factory() as uow:
            return await uow.tickets.get_by_id(ticket_id)

    return _fetch


@pytest.fixture
def fetch_history(uow_factory):
    async def _fetch(ticket_id: str):
        async with uow_factory() as uow:
            return await uow.escalation_logs.list_for_ticket(ticket_id)

    return _fetch
