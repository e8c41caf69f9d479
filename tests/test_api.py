from datetime import timedelta

import httpx
import pytest

from src.config import settings
from src.main import app

from tests.conftest import T0


@pytest.fixture
async def client(lifecycle, query_service, engine, rule_execution):
    # ASGITransport does not run the lifespan; wire the services directly.
    app.state.settings = settings
    app.state.lifecycle_service = lifecycle
    app.state.query_service = query_service
    app.state.escalation_engine = engine
    app.state.rule_execution_service = rule_execution
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestTicketRoutes:

    async def test_get_ticket(self, client, clock, seed_ticket):
        ticket = await seed_ticket(priority="high")
        clock.advance(hours=1)

        response = await client.get(f"/escalation/tickets/{ticket.id}", headers={"X-Correlation-ID": "req-1"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "req-1"
        body = response.json()
        assert body["ticket_number"] == ticket.ticket_number
        assert body["sla_state"] == "on_track"
        assert body["sla_remaining_seconds"] == 3 * 3600
        assert body["version"] == 1

    async def test_unknown_ticket(self, client):
        response = await client.get("/escalation/tickets/missing", headers={"X-Correlation-ID": "req-2"})

        assert response.status_code == 404
        body = response.json()
        assert body["error_type"] == "ResourceNotFoundException"
        assert body["correlation_id"] == "req-2"

    async def test_transition_and_invalid_transition(self, client, seed_ticket):
        ticket = await seed_ticket()
        url = f"/escalation/tickets/{ticket.id}/transition"

        resolved = await client.post(url, json={"target_status": "resolved", "actor_id": "staff-1", "reason": "fixed"})
        reopened = await client.post(url, json={"target_status": "open", "actor_id": "staff-1", "reason": "again"})

        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert reopened.status_code == 409
        assert reopened.json()["details"] == {
            "ticket_id": ticket.id, "from_status": "resolved", "to_status": "open"
        }

    async def test_respond(self, client, seed_ticket):
        ticket = await seed_ticket()

        response = await client.post(f"/escalation/tickets/{ticket.id}/respond", json={"actor_id": "staff-1"})

        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"
        assert response.json()["last_response_at"] is not None

    async def test_assign_needs_a_target(self, client, seed_ticket):
        ticket = await seed_ticket()

        response = await client.post(f"/escalation/tickets/{ticket.id}/assign", json={"actor_id": "staff-1"})

        assert response.status_code == 422

    async def test_flag_and_priority(self, client, seed_ticket):
        ticket = await seed_ticket(priority="low")

        flagged = await client.post(
            f"/escalation/tickets/{ticket.id}/flag",
            json={"actor_id": "staff-1", "reason": "abusive language"},
        )
        raised = await client.post(
            f"/escalation/tickets/{ticket.id}/priority",
            json={"actor_id": "staff-1", "priority": "critical"},
        )

        assert flagged.json()["review_flag"] is True
        assert raised.json()["priority"] == "critical"
        assert raised.json()["version"] == 3

    async def test_unknown_priority_rejected(self, client, seed_ticket):
        ticket = await seed_ticket()

        response = await client.post(
            f"/escalation/tickets/{ticket.id}/priority",
            json={"actor_id": "staff-1", "priority": "urgent"},
        )

        assert response.status_code == 422


class TestEngineAndAuditRoutes:

    async def test_tick_then_history(self, client, clock, seed_ticket, seed_rule):
        ticket = await seed_ticket(priority="high")
        await seed_rule("breach", {"priority": ["high"], "time_threshold": 14400},
                        [{"type": "escalate_to_role", "target": "supervisor"}])
        clock.set(T0 + timedelta(hours=4, minutes=1))

        tick = await client.post("/escalation/engine/tick")
        history = await client.get(f"/escalation/tickets/{ticket.id}/history")

        assert tick.status_code == 200
        assert tick.json()["fired"] == 1
        assert tick.json()["skipped"] is False
        [entry] = history.json()["entries"]
        assert entry["to_status"] == "escalated"
        assert entry["escalation_type"] == "automatic"
        assert entry["executed_actions"][0]["type"] == "escalate_to_role"

    async def test_log_range(self, client, seed_ticket):
        ticket = await seed_ticket()
        await client.post(
            f"/escalation/tickets/{ticket.id}/transition",
            json={"target_status": "escalated", "actor_id": "staff-1", "reason": "urgent"},
        )

        inside = await client.get("/escalation/logs", params={"start": "2024-01-15T00:00:00Z", "limit": 10})
        outside = await client.get("/escalation/logs", params={"start": "2024-01-16T00:00:00Z"})

        assert inside.json()["count"] == 1
        assert inside.json()["limit"] == 10
        assert outside.json()["entries"] == []

    async def test_log_range_end_before_start(self, client):
        response = await client.get(
            "/escalation/logs",
            params={"start": "2024-02-01T00:00:00Z", "end": "2024-01-01T00:00:00Z"},
        )
        assert response.status_code == 422

    async def test_execute_rule(self, client, seed_ticket, seed_rule):
        ticket = await seed_ticket(priority="low")
        rule_id = await seed_rule("escalate", {"priority": ["critical"]}, [{"type": "escalate_to_role", "target": "supervisor"}])
        inactive_id = await seed_rule("off", {"priority": ["low"]}, [{"type": "flag_review"}], is_active=False)
        body = {"ticket_id": ticket.id, "actor_id": "staff-7"}

        response = await client.post(f"/escalation/rules/{rule_id}/execute", json=body)
        inactive = await client.post(f"/escalation/rules/{inactive_id}/execute", json=body)
        again = await client.post(f"/escalation/rules/{rule_id}/execute", json=body)

        assert response.status_code == 200
        payload = response.json()
        assert payload["ticket"]["status"] == "escalated"
        assert payload["log_entry"]["escalation_type"] == "manual"
        assert payload["log_entry"]["actor"] == "staff-7"
        assert payload["notifications_enqueued"] == 1
        assert inactive.status_code == 404
        assert again.status_code == 409

    async def test_execute_rule_needs_ticket_and_actor(self, client, seed_rule):
        rule_id = await seed_rule("notify", {"priority": ["high"]}, [{"type": "notify_manager"}])

        response = await client.post(f"/escalation/rules/{rule_id}/execute", json={"actor_id": "staff-7"})

        assert response.status_code == 422

    async def test_stats(self, client, seed_rule):
        await seed_rule("a", {"priority": ["high"]}, [{"type": "flag_review"}])

        response = await client.get("/escalation/stats", params={"days": 7})

        assert response.status_code == 200
        assert response.json()["rules_active"] == 1
        assert response.json()["period_days"] == 7


async def test_health_and_root(client):
    health = await client.get("/health")
    root = await client.get("/")

    assert health.status_code == 200
    assert health.json()["checks"]["tick_in_progress"] is False
    assert root.json()["service"] == "Escalation Engine"
    assert "X-Correlation-ID" in health.headers
