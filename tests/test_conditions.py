"""Condition evaluation: operators, missing fields, randomize, hours, stop expressions."""

import random
from datetime import datetime, timezone

import pytest

from constants import kind_of
from services.playbooks.conditions import ConditionEvaluator, parse_expression
from services.playbooks.errors import EvaluationError, RunStopped
from services.playbooks.graph import Node
from services.playbooks.models import ExecutionContext


@pytest.fixture
def bind(registry):
    def factory(node_type, config, node_id="cond"):
        return registry.bind(Node(node_id, kind_of(node_type), node_type, config=config))
    return factory


def ctx(**kwargs):
    return ExecutionContext(**kwargs)


class TestIfThen:
    def test_numeric_comparison(self, evaluator, bind):
        node = bind("if_then", {"field": "lead_score", "operator": "greater", "value": 80})
        assert evaluator.evaluate(node, ctx(contact={"lead_score": 85})) == "yes"
        assert evaluator.evaluate(node, ctx(contact={"lead_score": 80})) == "no"

    def test_numeric_strings_compare_as_numbers(self, evaluator, bind):
        node = bind("if_then", {"field": "deal.value", "operator": "less", "value": "1000"})
        assert evaluator.evaluate(node, ctx(deal={"value": 950})) == "yes"

    def test_contains_on_string_and_list(self, evaluator, bind):
        node = bind("if_then", {"field": "tags", "operator": "contains", "value": "vip"})
        assert evaluator.evaluate(node, ctx(contact={"tags": ["lead", "vip"]})) == "yes"

        node = bind("if_then", {"field": "email", "operator": "contains", "value": "@acme"})
        assert evaluator.evaluate(node, ctx(contact={"email": "ana@acme.com"})) == "yes"

    def test_contains_on_numeric_value(self, evaluator, bind):
        node = bind("if_then", {"field": "phone", "operator": "contains", "value": "5511"})
        assert evaluator.evaluate(node, ctx(contact={"phone": 5511987654321})) == "yes"
        assert evaluator.evaluate(node, ctx(contact={"phone": 5521987654321})) == "no"

    def test_equals_is_loose_for_numbers(self, evaluator, bind):
        node = bind("if_then", {"field": "stage", "operator": "equals", "value": 3})
        assert evaluator.evaluate(node, ctx(deal={"stage": "3"})) == "yes"

    def test_missing_field_takes_no_branch(self, evaluator, bind):
        node = bind("if_then", {"field": "lead_score", "operator": "greater", "value": 80})
        assert evaluator.evaluate(node, ctx(contact={"name": "Ana"})) == "no"

    def test_variables_shadow_entity_fields(self, evaluator, bind):
        node = bind("if_then", {"field": "lead_score", "operator": "greater", "value": 80})
        context = ctx(contact={"lead_score": 10}, variables={"lead_score": 90})
        assert evaluator.evaluate(node, context) == "yes"


class TestAdvancedCondition:
    config = {
        "field1": "lead_score", "operator1": "greater", "value1": 50,
        "field2": "city", "operator2": "equals", "value2": "Recife",
    }

    def test_and(self, evaluator, bind):
        node = bind("advanced_condition", {**self.config, "logic": "AND"})
        assert evaluator.evaluate(node, ctx(contact={"lead_score": 60, "city": "Recife"})) == "yes"
        assert evaluator.evaluate(node, ctx(contact={"lead_score": 60, "city": "Natal"})) == "no"

    def test_or_with_missing_predicate_field(self, evaluator, bind):
        node = bind("advanced_condition", {**self.config, "logic": "OR"})
        assert evaluator.evaluate(node, ctx(contact={"city": "Recife"})) == "yes"
        assert evaluator.evaluate(node, ctx(contact={})) == "no"


def test_randomize_distribution(bind):
    evaluator = ConditionEvaluator(rng=random.Random(42))
    node = bind("randomize", {"path_a_percent": 30})
    branches = [evaluator.evaluate(node, ctx()) for _ in range(10000)]
    assert 2800 <= branches.count("A") <= 3200
    assert branches.count("A") + branches.count("B") == 10000


def test_randomize_extremes(evaluator, bind):
    always_a = bind("randomize", {"path_a_percent": 100})
    never_a = bind("randomize", {"path_a_percent": 0})
    assert {evaluator.evaluate(always_a, ctx()) for _ in range(50)} == {"A"}
    assert {evaluator.evaluate(never_a, ctx()) for _ in range(50)} == {"B"}


def test_split_follows_all_unlabeled_edges(evaluator, bind):
    assert evaluator.evaluate(bind("split", {}), ctx()) is None


class TestCheckHours:
    def evaluator_at(self, moment):
        return ConditionEvaluator(clock=lambda: moment, timezone_name="America/Sao_Paulo")

    def test_inside_business_hours(self, bind):
        # Monday 09:00 in Sao Paulo
        evaluator = self.evaluator_at(datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc))
        assert evaluator.evaluate(bind("check_hours", {}), ctx()) == "yes"

    def test_before_opening(self, bind):
        # Monday 07:30 in Sao Paulo
        evaluator = self.evaluator_at(datetime(2024, 1, 8, 10, 30, tzinfo=timezone.utc))
        assert evaluator.evaluate(bind("check_hours", {}), ctx()) == "no"

    def test_weekend(self, bind):
        evaluator = self.evaluator_at(datetime(2024, 1, 7, 12, 0, tzinfo=timezone.utc))
        assert evaluator.evaluate(bind("check_hours", {}), ctx()) == "no"

    def test_node_timezone_overrides_default(self, bind):
        evaluator = self.evaluator_at(datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc))
        node = bind("check_hours", {"start_time": "08:00", "end_time": "11:00",
                                    "timezone": "Asia/Tokyo"})
        # 21:00 in Tokyo
        assert evaluator.evaluate(node, ctx()) == "no"


class TestEntityChecks:
    def test_check_label_matches_names_case_insensitively(self, evaluator, bind):
        node = bind("check_label", {"label_name": "VIP"})
        context = ctx(contact={"labels": [{"id": "l1", "name": "vip"}, "lead"]})
        assert evaluator.evaluate(node, context) == "yes"
        assert evaluator.evaluate(node, ctx(contact={"labels": ["lead"]})) == "no"

    def test_check_assignment_any_user(self, evaluator, bind):
        node = bind("check_assignment", {})
        assert evaluator.evaluate(node, ctx(conversation={"assigned_to": "u1"})) == "yes"
        assert evaluator.evaluate(node, ctx(contact={"id": "c1"})) == "no"

    def test_check_assignment_specific_user(self, evaluator, bind):
        node = bind("check_assignment", {"user_id": "u2"})
        assert evaluator.evaluate(node, ctx(deal={"assigned_to": "u1"})) == "no"
        assert evaluator.evaluate(node, ctx(deal={"assigned_to": "u2"})) == "yes"


class TestStopIf:
    def test_predicate_true_stops_the_run(self, evaluator, bind):
        node = bind("stop_if", {"stop_condition": "deal_lost"})
        with pytest.raises(RunStopped) as exc_info:
            evaluator.evaluate(node, ctx(deal={"id": "d1", "status": "lost"}))
        assert "deal_lost" in exc_info.value.reason

    def test_predicate_false_continues(self, evaluator, bind):
        node = bind("stop_if", {"stop_condition": "unsubscribed"})
        assert evaluator.evaluate(node, ctx(contact={"unsubscribed": False})) is None


class TestStopExpressions:
    def test_comparison(self, evaluator):
        context = ctx(conversation={"messages": [1, 2, 3, 4, 5, 6]})
        assert evaluator.stop_condition_met("message_count > 5", context)
        assert not evaluator.stop_condition_met("message_count >= 7", context)

    def test_named_predicate(self, evaluator):
        assert evaluator.stop_condition_met("deal_won", ctx(deal={"status": "Won"}))

    def test_bare_field_is_truthiness(self, evaluator):
        assert evaluator.stop_condition_met("replied", ctx(variables={"replied": True}))
        assert not evaluator.stop_condition_met("replied", ctx())

    def test_parsed_literals(self):
        expression = parse_expression("status == 'closed'")
        assert (expression.field, expression.operator, expression.value) == ("status", "equals", "closed")
        assert parse_expression("score < 2.5").value == 2.5

    @pytest.mark.parametrize("text", ["", "score >", "> 5", "a b c"])
    def test_unparsable(self, text):
        with pytest.raises(EvaluationError):
            parse_expression(text)
