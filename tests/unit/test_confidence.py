"""
Unit tests for the Confidence Protocol gate.
"""
import random

import pytest

from selfheal.app.core.config import Settings
from selfheal.app.services.confidence import (
    CRITICAL_EDGE_CASES,
    REMEDIATION_CONFIDENCE_FLOOR,
    ConfidenceEvaluator,
)


@pytest.fixture
def evaluator():
    return ConfidenceEvaluator()


def test_all_checks_pass(evaluator):
    decision = evaluator.decide(95, 90, 85, "LOW", [])
    assert decision.auto_execute is True
    assert decision.reason == "all_checks_passed"
    assert evaluator.evaluate(95, 90, 85, "MEDIUM") is True


def test_high_risk_blocks_first(evaluator):
    """HIGH risk is reported even when every score is also failing."""
    decision = evaluator.decide(10, 10, 10, "HIGH", ["novel_failure"])
    assert decision.auto_execute is False
    assert decision.reason == "risk_high"


def test_risk_is_case_insensitive(evaluator):
    assert evaluator.evaluate(99, 99, 99, "high") is False


def test_hypothesis_below_threshold(evaluator):
    decision = evaluator.decide(89.9, 99, 99, "LOW")
    assert decision.auto_execute is False
    assert decision.reason.startswith("hypothesis_confidence_below_threshold")


def test_context_below_threshold(evaluator):
    decision = evaluator.decide(95, 84, 99, "LOW")
    assert decision.auto_execute is False
    assert decision.reason.startswith("context_match_below_threshold")


def test_remediation_below_fixed_floor(evaluator):
    decision = evaluator.decide(95, 95, REMEDIATION_CONFIDENCE_FLOOR - 1, "LOW")
    assert decision.auto_execute is False
    assert decision.reason.startswith("remediation_confidence_too_low")


def test_thresholds_are_inclusive(evaluator):
    assert evaluator.evaluate(90, 85, 70, "LOW") is True


def test_missing_scores_count_as_zero(evaluator):
    assert evaluator.evaluate(None, 95, 95, "LOW") is False
    assert evaluator.evaluate(95, None, 95, "LOW") is False
    assert evaluator.evaluate(95, 95, None, "LOW") is False


@pytest.mark.parametrize("edge_case", sorted(CRITICAL_EDGE_CASES))
def test_critical_edge_case_overrides_perfect_scores(evaluator, edge_case):
    decision = evaluator.decide(100, 100, 100, "LOW", [edge_case])
    assert decision.auto_execute is False
    assert decision.reason.startswith("critical_edge_cases")
    assert edge_case in decision.reason


def test_non_critical_edge_cases_do_not_block(evaluator):
    assert evaluator.evaluate(95, 95, 95, "LOW", ["customer_facing_critical", "multiple_failures"]) is True


def test_high_risk_never_auto_executes_for_any_scores(evaluator):
    rng = random.Random(1234)
    for _ in range(500):
        assert evaluator.evaluate(
            rng.uniform(0, 100),
            rng.uniform(0, 100),
            rng.uniform(0, 100),
            "HIGH",
            rng.sample(["low_confidence", "novel_failure", "cascading_failure"], k=rng.randint(0, 2)),
        ) is False


def test_thresholds_come_from_settings():
    settings = Settings(_env_file=None, hypothesis_confidence_threshold=70, context_match_threshold=50)
    evaluator = ConfidenceEvaluator.from_settings(settings)
    assert evaluator.evaluate(75, 55, 80, "LOW") is True
    assert ConfidenceEvaluator().evaluate(75, 55, 80, "LOW") is False
