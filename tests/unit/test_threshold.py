from __future__ import annotations

from awe_fleetsteer.domain.models import FailureAction, FailurePolicy
from awe_fleetsteer.domain.threshold import evaluate_failure_threshold


def test_no_policy_never_exceeds():
    decision = evaluate_failure_threshold(None, completed=4, failed=4)
    assert decision.exceeded is False
    assert decision.failure_percent == 100.0


def test_uses_finished_groups_as_denominator():
    policy = FailurePolicy(threshold_percent=20, action=FailureAction.PAUSE)
    decision = evaluate_failure_threshold(policy, completed=3, failed=1)
    assert decision.exceeded is True
    assert decision.should_pause is True
    assert decision.should_abort is False
    assert decision.reason == 'failure rate 33.3% (1/3) exceeds threshold 20%'


def test_comparison_is_strictly_greater_than():
    policy = FailurePolicy(threshold_percent=50, action=FailureAction.ABORT)
    assert evaluate_failure_threshold(policy, completed=4, failed=2).exceeded is False
    decision = evaluate_failure_threshold(policy, completed=3, failed=2)
    assert decision.should_abort is True


def test_zero_threshold_trips_on_first_failure():
    policy = FailurePolicy(threshold_percent=0, action=FailureAction.PAUSE)
    assert evaluate_failure_threshold(policy, completed=1, failed=0).exceeded is False
    assert evaluate_failure_threshold(policy, completed=1, failed=1).should_pause is True


def test_nothing_completed_is_not_evaluated():
    policy = FailurePolicy(threshold_percent=0)
    decision = evaluate_failure_threshold(policy, completed=0, failed=0)
    assert decision.exceeded is False
    assert decision.failure_percent == 0.0


def test_failed_is_clamped_to_completed():
    policy = FailurePolicy(threshold_percent=90)
    decision = evaluate_failure_threshold(policy, completed=2, failed=5)
    assert decision.failure_percent == 100.0
    assert decision.exceeded is True
