from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from src.config import EscalationType, TicketStatus
from src.core import (
    RepositoryException, ResourceNotFoundException, StorageUnavailableException,
    VersionConflictException,
)
from src.escalation.domain import EscalationLog
from src.escalation.infrastructure import TicketModel
from src.infrastructure.database import translate_db_error

from tests.conftest import T0, make_ticket


def log_entry(ticket_id, created_at, reason="breach", **overrides):
    values = dict(
        ticket_id=ticket_id,
        from_status=TicketStatus.OPEN,
        to_status=TicketStatus.OPEN,
        reason=reason,
        created_at=created_at,
        rule_id="rule-1",
    )
    values.update(overrides)
    return EscalationLog(**values)


class TestTicketRepository:

    async def test_round_trip_keeps_timezone(self, uow_factory, seed_ticket):
        ticket = await seed_ticket(sentiment_score=1.5, unit_id="roads")

        async with uow_factory() as uow:
            stored = await uow.tickets.get_by_id(ticket.id)

        assert stored.created_at == T0
        assert stored.created_at.tzinfo is not None
        assert stored.sla_deadline == T0 + timedelta(hours=4)
        assert stored.sentiment_score == 1.5
        assert stored.version == 1

    async def test_update_increments_version(self, uow_factory, seed_ticket):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            saved = await uow.tickets.update(ticket.id, {"review_flag": True}, expected_version=1)
            await uow.commit()

        assert saved.review_flag
        assert saved.version == 2

    async def test_stale_version_conflicts(self, uow_factory, seed_ticket):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            await uow.tickets.update(ticket.id, {"review_flag": True}, expected_version=1)
            await uow.commit()

        async with uow_factory() as uow:
            with pytest.raises(VersionConflictException):
                await uow.tickets.update(ticket.id, {"flag_reason": "late"}, expected_version=1)

    async def test_update_missing_ticket(self, uow_factory):
        async with uow_factory() as uow:
            with pytest.raises(ResourceNotFoundException):
                await uow.tickets.update("missing", {"review_flag": True}, expected_version=1)

    async def test_uncommitted_update_is_discarded(self, uow_factory, seed_ticket, fetch_ticket):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            await uow.tickets.update(ticket.id, {"status": TicketStatus.ESCALATED}, expected_version=1)

        assert (await fetch_ticket(ticket.id)).status == TicketStatus.OPEN

    async def test_filter_by_status_and_priority(self, uow_factory, seed_ticket):
        high = await seed_ticket(priority="high")
        await seed_ticket(priority="low")
        await seed_ticket(priority="high", status="resolved")

        async with uow_factory() as uow:
            found = await uow.tickets.get_by_filter([TicketStatus.OPEN], ["high"])
            escalated = await uow.tickets.count_by_status(TicketStatus.ESCALATED)

        assert [t.id for t in found] == [high.id]
        assert escalated == 0

    async def test_filter_skips_rows_breaking_ticket_invariants(self, uow_factory, session_maker, seed_ticket):
        valid = await seed_ticket(priority="high", status="in_progress")
        async with session_maker() as session:
            session.add(TicketModel(
                id="broken-row",
                ticket_number="TCK-BROKEN",
                title="Imported",
                description="",
                priority="high",
                status="in_progress",
                created_at=T0,
                updated_at=T0,
                sla_deadline=T0 + timedelta(hours=4),
                resolved_at=T0,
            ))
            await session.commit()

        async with uow_factory() as uow:
            found = await uow.tickets.get_by_filter([TicketStatus.IN_PROGRESS], ["high"])

        assert [t.id for t in found] == [valid.id]

    async def test_duplicate_ticket_number(self, uow_factory, seed_ticket):
        ticket = await seed_ticket()
        clash = make_ticket(ticket_number=ticket.ticket_number)

        async with uow_factory() as uow:
            with pytest.raises(RepositoryException):
                await uow.tickets.add(clash)


class TestEscalationLogRepository:

    async def test_history_never_goes_backwards(self, uow_factory, seed_ticket, fetch_history):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            await uow.escalation_logs.append(log_entry(ticket.id, T0 + timedelta(hours=2), "later"))
            clamped = await uow.escalation_logs.append(log_entry(ticket.id, T0 + timedelta(hours=1), "retry"))
            await uow.commit()

        assert clamped.created_at == T0 + timedelta(hours=2)
        history = await fetch_history(ticket.id)
        assert [e.reason for e in history] == ["later", "retry"]
        assert history[0].sequence < history[1].sequence

    async def test_list_between_filters(self, uow_factory, seed_ticket):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            for hour in range(4):
                await uow.escalation_logs.append(
                    log_entry(ticket.id, T0 + timedelta(hours=hour), f"h{hour}", rule_id=f"rule-{hour % 2}")
                )
            await uow.commit()

        async with uow_factory() as uow:
            window = await uow.escalation_logs.list_between(T0 + timedelta(hours=1), T0 + timedelta(hours=3))
            by_rule = await uow.escalation_logs.list_between(rule_id="rule-0")
            paged = await uow.escalation_logs.list_between(limit=2, offset=1)

        assert [e.reason for e in window] == ["h1", "h2"]
        assert [e.reason for e in by_rule] == ["h0", "h2"]
        assert [e.reason for e in paged] == ["h1", "h2"]

    async def test_counts_only_automatic_entries(self, uow_factory, seed_ticket):
        ticket = await seed_ticket()

        async with uow_factory() as uow:
            await uow.escalation_logs.append(log_entry(ticket.id, T0))
            await uow.escalation_logs.append(
                log_entry(ticket.id, T0, escalation_type=EscalationType.MANUAL, actor="staff-1", rule_id=None)
            )
            await uow.commit()

        async with uow_factory() as uow:
            counts = await uow.escalation_logs.count_by_execution_status(T0 - timedelta(days=1))

        assert counts == {"success": 1}


class TestRuleRepository:

    async def test_count_rules(self, uow_factory, seed_rule):
        await seed_rule("a", {"priority": ["high"]}, [{"type": "flag_review"}])
        await seed_rule("b", {"priority": ["low"]}, [{"type": "flag_review"}], is_active=False)

        async with uow_factory() as uow:
            counts = await uow.rules.count_rules()

        assert counts == {"total": 2, "active": 1}

    async def test_get_by_id_includes_inactive_rules(self, uow_factory, seed_rule):
        rule_id = await seed_rule("off", {"priority": ["low"]}, [{"type": "flag_review"}], is_active=False)

        async with uow_factory() as uow:
            rule = await uow.rules.get_by_id(rule_id)
            missing = await uow.rules.get_by_id("missing")

        assert rule.name == "off"
        assert not rule.is_active
        assert missing is None

    async def test_malformed_conditions_skipped(self, uow_factory, seed_rule):
        await seed_rule("bad", {"priority": []}, [{"type": "flag_review"}])
        await seed_rule("good", {"priority": ["high"]}, [{"type": "flag_review"}])

        async with uow_factory() as uow:
            rules = await uow.rules.get_active_rules()

        assert [r.name for r in rules] == ["good"]


def test_operational_errors_mean_storage_unavailable():
    error = OperationalError("SELECT 1", {}, Exception("connection refused"))
    assert isinstance(translate_db_error(error), StorageUnavailableException)


def test_other_errors_are_repository_errors():
    error = IntegrityError("INSERT", {}, Exception("unique"))
    translated = translate_db_error(error)
    assert isinstance(translated, RepositoryException)
    assert not isinstance(translated, StorageUnavailableException)
