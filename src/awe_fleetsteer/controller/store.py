from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from awe_fleetsteer.domain.events import normalize_event_type
from awe_fleetsteer.domain.models import (
    GroupOutcome,
    GroupStatus,
    SteeringState,
    Task,
    TaskResult,
    TaskStatus,
    TERMINAL_TASK_STATUSES,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GroupStage:
    PENDING = 'pending'
    PROVISIONING = 'provisioning'
    RUNNING = 'running'
    STEERING = 'steering'
    DONE = 'done'


@dataclass(frozen=True)
class TaskRecord:
    task: Task
    status: TaskStatus = TaskStatus.PENDING
    paused: bool = False
    paused_reason: str | None = None
    cancel_requested: bool = False
    acknowledged_failures: int = 0
    signal_cursor: int = 0
    result: TaskResult | None = None
    created_at: str = field(default_factory=_utc_now_iso)
    updated_at: str = field(default_factory=_utc_now_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass(frozen=True)
class GroupState:
    """Everything needed to resume a group procedure on another controller instance."""

    task_id: str
    group: str
    status: GroupStatus = GroupStatus.PENDING
    stage: str = GroupStage.PENDING
    sandbox_id: str | None = None
    signal_cursor: int = 0
    awaiting_since: float | None = None
    last_status_at: float | None = None
    last_status_key: str | None = None
    pending_instruction: dict | None = None
    steering: SteeringState = field(default_factory=SteeringState)
    agent_result: dict | None = None
    outcome: GroupOutcome | None = None
    updated_at: str = field(default_factory=_utc_now_iso)

    def state_dict(self) -> dict:
        return {
            'signal_cursor': self.signal_cursor,
            'awaiting_since': self.awaiting_since,
            'last_status_at': self.last_status_at,
            'last_status_key': self.last_status_key,
            'pending_instruction': self.pending_instruction,
            'steering': self.steering.to_dict(),
            'agent_result': self.agent_result,
            'outcome': (self.outcome.to_dict() if self.outcome else None),
        }

    @classmethod
    def from_state_dict(
        cls,
        *,
        task_id: str,
        group: str,
        status: str,
        stage: str,
        sandbox_id: str | None,
        data: dict,
        updated_at: str,
    ) -> 'GroupState':
        outcome = data.get('outcome')
        return cls(
            task_id=task_id,
            group=group,
            status=GroupStatus(status),
            stage=stage,
            sandbox_id=sandbox_id,
            signal_cursor=int(data.get('signal_cursor') or 0),
            awaiting_since=data.get('awaiting_since'),
            last_status_at=data.get('last_status_at'),
            last_status_key=data.get('last_status_key'),
            pending_instruction=data.get('pending_instruction'),
            steering=SteeringState.from_dict(data.get('steering') or {}),
            agent_result=data.get('agent_result'),
            outcome=(GroupOutcome.from_dict(outcome) if outcome else None),
            updated_at=updated_at,
        )


@dataclass(frozen=True)
class SignalRecord:
    task_id: str
    seq: int
    group: str | None
    action: str
    payload: dict[str, Any]
    created_at: str


class TaskStateStore(Protocol):
    def create_task(self, task: Task) -> TaskRecord:
        ...

    def get_task(self, task_id: str) -> TaskRecord | None:
        ...

    def list_tasks(self, *, limit: int = 100) -> list[TaskRecord]:
        ...

    def list_incomplete_tasks(self) -> list[TaskRecord]:
        ...

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        ...

    def get_group(self, task_id: str, group: str) -> GroupState:
        ...

    def list_groups(self, task_id: str) -> list[GroupState]:
        ...

    def save_group(self, state: GroupState) -> GroupState:
        ...

    def append_signal(self, task_id: str, *, group: str | None, action: str, payload: dict | None = None) -> SignalRecord:
        ...

    def signals_after(self, task_id: str, cursor: int) -> list[SignalRecord]:
        ...

    def append_event(self, task_id: str, event_type: str, *, group: str | None = None, payload: dict | None = None) -> dict:
        ...

    def list_events(self, task_id: str) -> list[dict]:
        ...


class InMemoryTaskStateStore:
    def __init__(self):
        self.tasks: dict[str, TaskRecord] = {}
        self.groups: dict[tuple[str, str], GroupState] = {}
        self.signals: dict[str, list[SignalRecord]] = {}
        self.events: dict[str, list[dict]] = {}
        self._lock = Lock()

    def create_task(self, task: Task) -> TaskRecord:
        with self._lock:
            if task.task_id in self.tasks:
                raise ValueError(f'task already exists: {task.task_id}')
            record = TaskRecord(task=task)
            self.tasks[task.task_id] = record
            for group in task.groups:
                self.groups[(task.task_id, group.name)] = GroupState(
                    task_id=task.task_id,
                    group=group.name,
                    steering=SteeringState(max_iterations=task.max_steering_iterations),
                )
            self.signals[task.task_id] = []
            self.events[task.task_id] = []
            return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            return self.tasks.get(task_id)

    def list_tasks(self, *, limit: int = 100) -> list[TaskRecord]:
        with self._lock:
            rows = sorted(self.tasks.values(), key=lambda item: item.created_at, reverse=True)
            return rows[: max(1, int(limit))]

    def list_incomplete_tasks(self) -> list[TaskRecord]:
        with self._lock:
            return [
                record for record in self.tasks.values()
                if record.status in {TaskStatus.RUNNING, TaskStatus.PAUSED}
            ]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        with self._lock:
            record = self.tasks.get(task_id)
            if record is None:
                raise KeyError(task_id)
            updated = replace(record, updated_at=_utc_now_iso(), **changes)
            self.tasks[task_id] = updated
            return updated

    def get_group(self, task_id: str, group: str) -> GroupState:
        with self._lock:
            state = self.groups.get((task_id, group))
            if state is None:
                raise KeyError(f'{task_id}/{group}')
            return state

    def list_groups(self, task_id: str) -> list[GroupState]:
        with self._lock:
            record = self.tasks.get(task_id)
            if record is None:
                raise KeyError(task_id)
            return [self.groups[(task_id, name)] for name in record.task.group_names]

    def save_group(self, state: GroupState) -> GroupState:
        with self._lock:
            key = (state.task_id, state.group)
            if key not in self.groups:
                raise KeyError(f'{state.task_id}/{state.group}')
            saved = replace(state, updated_at=_utc_now_iso())
            self.groups[key] = saved
            return saved

    def append_signal(self, task_id: str, *, group: str | None, action: str, payload: dict | None = None) -> SignalRecord:
        with self._lock:
            if task_id not in self.signals:
                raise KeyError(task_id)
            log = self.signals[task_id]
            record = SignalRecord(
                task_id=task_id,
                seq=len(log) + 1,
                group=group,
                action=str(action),
                payload=dict(payload or {}),
                created_at=_utc_now_iso(),
            )
            log.append(record)
            return record

    def signals_after(self, task_id: str, cursor: int) -> list[SignalRecord]:
        with self._lock:
            return [record for record in self.signals.get(task_id, []) if record.seq > cursor]

    def append_event(self, task_id: str, event_type: str, *, group: str | None = None, payload: dict | None = None) -> dict:
        with self._lock:
            log = self.events.setdefault(task_id, [])
            event = {
                'seq': len(log) + 1,
                'task_id': task_id,
                'type': normalize_event_type(event_type),
                'group': group,
                'payload': dict(payload or {}),
                'created_at': _utc_now_iso(),
            }
            log.append(event)
            return dict(event)

    def list_events(self, task_id: str) -> list[dict]:
        with self._lock:
            return [dict(item) for item in self.events.get(task_id, [])]
