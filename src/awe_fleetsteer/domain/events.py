from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    APPROVAL_REQUESTED = 'approval_requested'
    APPROVAL_TIMEOUT = 'approval_timeout'
    GROUP_APPROVED = 'group_approved'
    GROUP_CANCELLED = 'group_cancelled'
    GROUP_FAILED = 'group_failed'
    GROUP_REJECTED = 'group_rejected'
    GROUP_SKIPPED = 'group_skipped'
    GROUP_STARTED = 'group_started'
    GROUP_SUCCEEDED = 'group_succeeded'
    MANIFEST_SUBMITTED = 'manifest_submitted'
    SANDBOX_PROVISIONED = 'sandbox_provisioned'
    SANDBOX_TEARDOWN_FAILED = 'sandbox_teardown_failed'
    SIGNAL_RECEIVED = 'signal_received'
    STEERING_COMPLETED = 'steering_completed'
    STEERING_REJECTED = 'steering_rejected'
    STEERING_SENT = 'steering_sent'
    TASK_ABORTED = 'task_aborted'
    TASK_CANCEL_REQUESTED = 'task_cancel_requested'
    TASK_COMPLETED = 'task_completed'
    TASK_CONTINUED = 'task_continued'
    TASK_PAUSED = 'task_paused'
    TASK_RESUMED = 'task_resumed'
    TASK_STARTED = 'task_started'
    TASK_SUBMITTED = 'task_submitted'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


TERMINAL_GROUP_EVENT_TYPES = frozenset(
    {
        EventType.GROUP_SUCCEEDED.value,
        EventType.GROUP_FAILED.value,
        EventType.GROUP_SKIPPED.value,
    }
)
