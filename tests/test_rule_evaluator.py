from datetime import timedelta

import pytest

from src.core import RuleEvaluationException, StorageUnavailableException
from src.escalation.application import EvaluationContext, FiringLedger, RuleEvaluator

from tests.conftest import T0, make_rule, make_ticket


class TestMatches:

    def test_priority_and_status_filters(self):
        rule = make_rule(conditions={"priority": ["high"], "status": ["open"]})

        assert RuleEvaluator.matches(rule, make_ticket(priority="high"), T0)
        assert not RuleEvaluator.matches(rule, make_ticket(priority="low"), T0)
        assert not RuleEvaluator.matches(rule, make_ticket(status="in_progress"), T0)

    def test_sentiment_is_strictly_below(self):
        rule = make_rule(conditions={"sentiment_threshold": 3})

        assert RuleEvaluator.matches(rule, make_ticket(sentiment_score=2), T0)
        assert not RuleEvaluator.matches(rule, make_ticket(sentiment_score=3), T0)

    def test_missing_sentiment_never_matches(self):
        rule = make_rule(conditions={"sentiment_threshold": 3})
        assert not RuleEvaluator.matches(rule, make_ticket(sentiment_score=None), T0)

    def test_time_threshold_boundary(self):
        rule = make_rule(conditions={"time_threshold": 3600})
        ticket = make_ticket()

        assert not RuleEvaluator.matches(rule, ticket, T0 + timedelta(seconds=3599))
        assert RuleEvaluator.matches(rule, ticket, T0 + timedelta(seconds=3600))

    def test_time_threshold_measured_from_last_response(self):
        rule = make_rule(conditions={"time_threshold": 3600})
        ticket = make_ticket(
            status="in_progress",
            last_response_at=T0 + timedelta(minutes=50),
            updated_at=T0 + timedelta(minutes=50),
        )
        assert not RuleEvaluator.matches(rule, ticket, T0 + timedelta(minutes=70))

    def test_empty_conditions_never_match(self):
        rule = make_rule(conditions={})
        assert not RuleEvaluator.matches(rule, make_ticket(), T0 + timedelta(days=30))

    @pytest.mark.parametrize("status", ["resolved", "closed"])
    def test_resolved_tickets_are_never_evaluated(self, status):
        rule = make_rule(conditions={"time_threshold": 0})
        assert not RuleEvaluator.matches(rule, make_ticket(status=status), T0)


class TestFiringLedger:

    def test_record_and_has_fired(self):
        ledger = FiringLedger()
        ticket = make_ticket()

        ledger.record("r1", ticket)

        assert ledger.has_fired("r1", ticket)
        assert not ledger.has_fired("r2", ticket)

    def test_reference_time_change_resets(self):
        ledger = FiringLedger()
        ticket = make_ticket()
        ledger.record("r1", ticket)

        responded = ticket.copy()
        responded.last_response_at = T0 + timedelta(hours=1)

        assert not ledger.has_fired("r1", responded)
        assert ("r1", ticket.id) not in ledger

    def test_prune_forgets_non_matching(self):
        ledger = FiringLedger()
        a, b = make_ticket(), make_ticket()
        ledger.record("r1", a)
        ledger.record("r1", b)
        ledger.record("r2", a)

        assert ledger.prune("r1", [b.id]) == 1
        assert ("r1", a.id) not in ledger
        assert ("r1", b.id) in ledger
        assert ("r2", a.id) in ledger

    def test_retain_rules(self):
        ledger = FiringLedger()
        ticket = make_ticket()
        ledger.record("r1", ticket)
        ledger.record("r2", ticket)

        ledger.retain_rules(["r2"])

        assert len(ledger) == 1
        assert ("r2", ticket.id) in ledger


class TestEvaluate:

    async def test_matches_in_rule_creation_order(self, evaluator, seed_ticket, seed_rule):
        ticket = await seed_ticket(priority="high")
        await seed_rule("second", {"priority": ["high"]}, [{"type": "flag_review"}],
                        created_at=T0 - timedelta(days=1))
        await seed_rule("first", {"priority": ["high"]}, [{"type": "notify_manager"}],
                        created_at=T0 - timedelta(days=2))

        rules = await evaluator.load_rules()
        report = await evaluator.evaluate(rules, EvaluationContext("t", T0, FiringLedger()))

        assert [m.rule.name for m in report.matches] == ["first", "second"]
        assert all(m.ticket.id == ticket.id for m in report.matches)
        assert report.rules_evaluated == 2

    async def test_resolved_tickets_are_not_candidates(self, evaluator, seed_ticket, seed_rule):
        await seed_ticket(priority="high", status="resolved")
        await seed_rule("all-high", {"priority": ["high"]}, [{"type": "notify_manager"}])

        rules = await evaluator.load_rules()
        report = await evaluator.evaluate(rules, EvaluationContext("t", T0, FiringLedger()))

        assert report.matches == []

    async def test_already_fired_pairs_are_skipped(self, evaluator, seed_ticket, seed_rule):
        ticket = await seed_ticket(priority="high")
        await seed_rule("r", {"priority": ["high"]}, [{"type": "notify_manager"}])
        rules = await evaluator.load_rules()
        ledger = FiringLedger()
        ledger.record(rules[0].id, ticket)

        report = await evaluator.evaluate(rules, EvaluationContext("t", T0, ledger))

        assert report.matches == []
        assert report.skipped_duplicates == 1

    async def test_failing_rule_is_skipped(self, uow_factory, seed_ticket):
        await seed_ticket(priority="high")
        good = make_rule("good")
        bad = make_rule("bad")

        class BrokenEvaluator(RuleEvaluator):
            async def _matching_tickets(self, rule, now):
                if rule.id == bad.id:
                    raise RuleEvaluationException(rule.id, "boom")
                return await super()._matching_tickets(rule, now)

        evaluator = BrokenEvaluator(uow_factory, worker_pool_size=2)
        report = await evaluator.evaluate([bad, good], EvaluationContext("t", T0, FiringLedger()))

        assert report.failed_rules == [bad.id]
        assert [m.rule.id for m in report.matches] == [good.id]

    async def test_unexpected_rule_error_only_skips_that_rule(self, uow_factory, seed_ticket):
        ticket = await seed_ticket(priority="high")
        good = make_rule("good")
        odd = make_rule("odd")

        class GlitchyEvaluator(RuleEvaluator):
            async def _matching_tickets(self, rule, now):
                if rule.id == odd.id:
                    raise ValueError("unexpected column value")
                return await super()._matching_tickets(rule, now)

        report = await GlitchyEvaluator(uow_factory, worker_pool_size=2).evaluate(
            [odd, good], EvaluationContext("t", T0, FiringLedger())
        )

        assert report.failed_rules == [odd.id]
        assert [(m.rule.id, m.ticket.id) for m in report.matches] == [(good.id, ticket.id)]

    async def test_storage_failure_propagates(self, uow_factory):
        class DownEvaluator(RuleEvaluator):
            async def _matching_tickets(self, rule, now):
                raise StorageUnavailableException("Database unavailable")

        with pytest.raises(StorageUnavailableException):
            await DownEvaluator(uow_factory).evaluate(
                [make_rule()], EvaluationContext("t", T0, FiringLedger())
            )

    async def test_malformed_rules_are_not_loaded(self, evaluator, seed_rule):
        await seed_rule("broken", {"priority": ["high"]}, [{"type": "unknown"}])
        await seed_rule("inactive", {"priority": ["high"]}, [{"type": "flag_review"}], is_active=False)
        await seed_rule("ok", {"priority": ["high"]}, [{"type": "flag_review"}])

        rules = await evaluator.load_rules()

        assert [r.name for r in rules] == ["ok"]
