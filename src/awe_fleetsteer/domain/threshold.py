from __future__ import annotations

from dataclasses import dataclass

from awe_fleetsteer.domain.models import FailureAction, FailurePolicy


@dataclass(frozen=True)
class ThresholdDecision:
    exceeded: bool
    action: FailureAction | None
    failure_percent: float
    reason: str | None = None

    @property
    def should_pause(self) -> bool:
        return self.exceeded and self.action == FailureAction.PAUSE

    @property
    def should_abort(self) -> bool:
        return self.exceeded and self.action == FailureAction.ABORT


def evaluate_failure_threshold(
    policy: FailurePolicy | None,
    *,
    completed: int,
    failed: int,
) -> ThresholdDecision:
    """Compare the failure rate over finished groups against the policy.

    The denominator is the number of groups finished so far, not the task
    total, and the comparison is strictly greater-than.
    """
    completed = max(0, int(completed))
    failed = max(0, min(int(failed), completed))
    percent = (failed / completed * 100.0) if completed else 0.0
    if policy is None or completed == 0:
        return ThresholdDecision(exceeded=False, action=None, failure_percent=percent)
    threshold = float(policy.threshold_percent)
    if percent > threshold:
        reason = (
            f'failure rate {percent:.1f}% ({failed}/{completed}) exceeds threshold {threshold:g}%'
        )
        return ThresholdDecision(exceeded=True, action=policy.action, failure_percent=percent, reason=reason)
    return ThresholdDecision(exceeded=False, action=None, failure_percent=percent)
