from datetime import timedelta

import pytest
from pydantic import ValidationError

from src.config import NotificationChannel, Priority, RecipientType, SLAState
from src.core import RuleEvaluationException
from src.escalation.domain import (
    BumpPriorityAction,
    EscalateToRoleAction,
    EscalationRule,
    NotificationRequest,
    SLACalculator,
    SLAPolicy,
    TriggerConditions,
    next_priority,
)

from tests.conftest import T0, make_ticket


class TestTriggerConditions:

    def test_empty_conditions(self):
        assert TriggerConditions().is_empty
        assert not TriggerConditions(priority=["high"]).is_empty

    def test_empty_filter_list_rejected(self):
        with pytest.raises(ValidationError):
            TriggerConditions(priority=[])

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            TriggerConditions(time_threshold=-1)

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            TriggerConditions.model_validate({"category": ["roads"]})

    def test_unknown_priority_rejected(self):
        with pytest.raises(ValidationError):
            TriggerConditions(priority=["urgent"])


class TestRuleDefinition:

    def test_actions_parsed_in_order(self):
        rule = EscalationRule.from_definition(
            rule_id="r1",
            name="breach",
            trigger_conditions={"priority": ["high"], "time_threshold": 14400},
            actions=[{"type": "bump_priority"}, {"type": "escalate_to_role", "target": "supervisor"}],
            created_at=T0,
        )

        assert isinstance(rule.actions[0], BumpPriorityAction)
        assert isinstance(rule.actions[1], EscalateToRoleAction)
        assert rule.actions[1].target == "supervisor"
        assert rule.conditions.time_threshold == 14400

    def test_unknown_action_kind(self):
        with pytest.raises(RuleEvaluationException) as exc_info:
            EscalationRule.from_definition(
                rule_id="r1", name="bad",
                trigger_conditions={"priority": ["high"]},
                actions=[{"type": "send_flowers"}],
                created_at=T0,
            )
        assert exc_info.value.details["rule_id"] == "r1"

    def test_escalate_requires_target(self):
        with pytest.raises(RuleEvaluationException):
            EscalationRule.from_definition(
                rule_id="r1", name="bad",
                trigger_conditions={"priority": ["high"]},
                actions=[{"type": "escalate_to_role"}],
                created_at=T0,
            )

    def test_rule_without_actions(self):
        with pytest.raises(RuleEvaluationException, match="no actions"):
            EscalationRule.from_definition(
                rule_id="r1", name="empty",
                trigger_conditions={"priority": ["high"]},
                actions=[],
                created_at=T0,
            )

    def test_sort_key_breaks_ties_by_id(self):
        first = EscalationRule.from_definition(
            rule_id="a", name="a", trigger_conditions={}, actions=[{"type": "flag_review"}], created_at=T0
        )
        second = EscalationRule.from_definition(
            rule_id="b", name="b", trigger_conditions={}, actions=[{"type": "flag_review"}], created_at=T0
        )
        assert sorted([second, first], key=lambda r: r.sort_key) == [first, second]


def test_next_priority():
    assert next_priority(Priority.LOW) == Priority.MEDIUM
    assert next_priority(Priority.MEDIUM) == Priority.HIGH
    assert next_priority(Priority.HIGH) == Priority.CRITICAL
    assert next_priority(Priority.CRITICAL) is None


class TestSLAPolicy:

    def test_defaults(self):
        policy = SLAPolicy()
        assert policy.get_sla_minutes("high") == 240
        assert policy.get_sla_minutes("critical", "response") == 30
        assert policy.deadline_for("high", T0) == T0 + timedelta(hours=4)
        assert policy.response_deadline_for("low", T0) == T0 + timedelta(hours=8)

    def test_partial_targets_are_filled(self):
        policy = SLAPolicy(sla_targets={"high": {"resolution": 600}})
        assert policy.get_sla_minutes("high") == 600
        assert policy.get_sla_minutes("high", "response") == 60
        assert policy.get_sla_minutes("low") == 4320

    def test_unknown_priority(self):
        with pytest.raises(ValidationError):
            SLAPolicy(sla_targets={"urgent": {"resolution": 10}})

    def test_non_positive_minutes(self):
        with pytest.raises(ValidationError):
            SLAPolicy(sla_targets={"low": {"resolution": 0}})


class TestSLACalculator:

    deadline = T0 + timedelta(hours=4)

    def test_on_track(self):
        state = SLACalculator.calculate_status(T0, self.deadline, T0 + timedelta(hours=1))
        assert state == SLAState.ON_TRACK

    def test_at_risk(self):
        # 30 of 240 minutes left, 12.5%
        state = SLACalculator.calculate_status(T0, self.deadline, T0 + timedelta(minutes=210))
        assert state == SLAState.AT_RISK

    def test_breached_at_deadline(self):
        state = SLACalculator.calculate_status(T0, self.deadline, self.deadline)
        assert state == SLAState.BREACHED

    def test_met_and_late(self):
        met = SLACalculator.calculate_status(
            T0, self.deadline, T0 + timedelta(hours=10), met_at=T0 + timedelta(hours=3)
        )
        late = SLACalculator.calculate_status(
            T0, self.deadline, T0 + timedelta(hours=10), met_at=T0 + timedelta(hours=5)
        )
        assert met == SLAState.MET
        assert late == SLAState.BREACHED

    def test_remaining_seconds_floor(self):
        assert SLACalculator.remaining_seconds(self.deadline, T0) == 4 * 3600
        assert SLACalculator.remaining_seconds(self.deadline, self.deadline + timedelta(hours=1)) == 0.0


class TestTicket:

    def test_reference_time_starts_at_creation(self):
        assert make_ticket().reference_time == T0

    def test_reference_time_uses_latest_event(self):
        ticket = make_ticket(
            last_response_at=T0 + timedelta(hours=2),
            last_escalated_at=T0 + timedelta(hours=1),
            updated_at=T0 + timedelta(hours=2),
        )
        assert ticket.reference_time == T0 + timedelta(hours=2)

    def test_updated_before_created_rejected(self):
        with pytest.raises(ValueError):
            make_ticket(updated_at=T0 - timedelta(seconds=1))

    def test_first_response_before_created_rejected(self):
        with pytest.raises(ValueError):
            make_ticket(first_response_at=T0 - timedelta(seconds=1))

    def test_diff_skips_identity_and_version(self):
        ticket = make_ticket()
        changed = ticket.copy()
        changed.version = 7
        changed.review_flag = True
        changed.flag_reason = "angry"

        assert ticket.diff(changed) == {"review_flag": True, "flag_reason": "angry"}


def test_notification_payload():
    request = NotificationRequest(
        id="n1", recipient="manager", recipient_type=RecipientType.ROLE,
        channel=NotificationChannel.EMAIL, ticket_id="t1", message="hello",
        created_at=T0, rule_id="r1",
    )

    payload = request.to_payload()

    assert payload["recipient_type"] == "role"
    assert payload["channel"] == "email"
    assert payload["rule_id"] == "r1"
    assert payload["created_at"] == T0.isoformat()
