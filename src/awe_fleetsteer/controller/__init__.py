from awe_fleetsteer.controller.durable import ActivityError, DurableContext
from awe_fleetsteer.controller.group import GroupRunner
from awe_fleetsteer.controller.notify import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier, safe_notify
from awe_fleetsteer.controller.store import (
    GroupStage,
    GroupState,
    InMemoryTaskStateStore,
    SignalRecord,
    TaskRecord,
    TaskStateStore,
)
from awe_fleetsteer.controller.task import TaskController

__all__ = [
    'ActivityError',
    'CompositeNotifier',
    'DurableContext',
    'GroupRunner',
    'GroupStage',
    'GroupState',
    'InMemoryTaskStateStore',
    'LogNotifier',
    'Notifier',
    'SignalRecord',
    'TaskController',
    'TaskRecord',
    'TaskStateStore',
    'WebhookNotifier',
    'safe_notify',
]
