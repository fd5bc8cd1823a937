from awe_fleetsteer.domain.errors import FailureKind, GroupFailure, IterationLimitReached, ProvisioningError
from awe_fleetsteer.domain.events import EventType, TERMINAL_GROUP_EVENT_TYPES, normalize_event_type
from awe_fleetsteer.domain.models import (
    ExecutionKind,
    ExecutionProgress,
    FailureAction,
    FailurePolicy,
    Group,
    GroupOutcome,
    GroupStatus,
    Repository,
    SteeringState,
    Task,
    TaskMode,
    TaskResult,
    TaskStatus,
    build_retry_task,
    compute_progress,
)
from awe_fleetsteer.domain.threshold import ThresholdDecision, evaluate_failure_threshold

__all__ = [
    'EventType',
    'ExecutionKind',
    'ExecutionProgress',
    'FailureAction',
    'FailureKind',
    'FailurePolicy',
    'Group',
    'GroupFailure',
    'GroupOutcome',
    'GroupStatus',
    'IterationLimitReached',
    'ProvisioningError',
    'Repository',
    'SteeringState',
    'TERMINAL_GROUP_EVENT_TYPES',
    'Task',
    'TaskMode',
    'TaskResult',
    'TaskStatus',
    'ThresholdDecision',
    'build_retry_task',
    'compute_progress',
    'evaluate_failure_threshold',
    'normalize_event_type',
]
