from __future__ import annotations

import asyncio
from threading import Lock, Thread
import time
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from awe_fleetsteer.config import Settings, load_settings
from awe_fleetsteer.controller.durable import DurableContext
from awe_fleetsteer.controller.group import GroupRunner
from awe_fleetsteer.controller.notify import LogNotifier, Notifier
from awe_fleetsteer.controller.store import GroupStage, SignalRecord, TaskRecord, TaskStateStore
from awe_fleetsteer.controller.task import TaskController
from awe_fleetsteer.domain.errors import IterationLimitReached
from awe_fleetsteer.domain.events import EventType
from awe_fleetsteer.domain.models import (
    ExecutionProgress,
    GroupStatus,
    Task,
    TaskResult,
    TaskStatus,
    build_retry_task,
    compute_progress,
    utc_now,
)
from awe_fleetsteer.observability import get_logger, set_task_context
from awe_fleetsteer.protocol.messages import AgentResult, GitIdentity, SteeringAction
from awe_fleetsteer.sandbox.provider import SandboxProvider

_log = get_logger('awe_fleetsteer.service')


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class SignalRejectedError(InputValidationError):
    """The request is well formed but the task or group cannot accept it right now."""


def _new_task_id() -> str:
    return f'task-{uuid4().hex[:12]}'


class ControllerService:
    def __init__(
        self,
        *,
        store: TaskStateStore,
        provider: SandboxProvider,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or load_settings()
        self.notifier = notifier or LogNotifier()
        self.context = DurableContext(
            store,
            clock=clock,
            sleep=sleep,
            activity_retries=self.settings.activity_retries,
            signal_poll_seconds=self.settings.signal_poll_seconds,
        )
        self.group_runner = GroupRunner(
            self.context,
            provider,
            notifier=self.notifier,
            status_poll_seconds=self.settings.status_poll_seconds,
            staleness_seconds=self.settings.staleness_seconds,
            provisioning_timeout_seconds=self.settings.provisioning_timeout_seconds,
            approval_timeout_seconds=self.settings.approval_timeout_seconds,
            git=GitIdentity(user_name=self.settings.git_user_name, user_email=self.settings.git_user_email),
        )
        self.controller = TaskController(self.context, self.group_runner, notifier=self.notifier)
        self._workers: dict[str, Thread] = {}
        self._lock = Lock()

    # Submission and lifecycle

    def submit_task(self, payload: Mapping[str, Any] | Task) -> TaskRecord:
        if isinstance(payload, Task):
            task = payload
        else:
            data = dict(payload)
            data.setdefault('task_id', None)
            if not data.get('task_id'):
                data['task_id'] = _new_task_id()
            if data.get('timeout_seconds') is None:
                data['timeout_seconds'] = self.settings.default_timeout_seconds
            if data.get('max_parallel') is None:
                data['max_parallel'] = self.settings.default_max_parallel
            try:
                task = Task.from_dict(data)
            except (TypeError, ValueError) as exc:
                raise InputValidationError(f'invalid task definition: {exc}', field='task') from exc
        try:
            task.validate()
        except ValueError as exc:
            raise InputValidationError(str(exc), field='task') from exc
        try:
            record = self.store.create_task(task)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='task_id', code='duplicate_task') from exc
        self.store.append_event(
            task.task_id,
            EventType.TASK_SUBMITTED,
            payload={'groups': task.group_names, 'retry_of': task.retry_of},
        )
        _log.info('task_submitted groups=%s mode=%s', len(task.groups), task.mode.value)
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        return self.store.get_task(task_id)

    def list_tasks(self, *, limit: int = 100) -> list[TaskRecord]:
        return self.store.list_tasks(limit=limit)

    def _require_task(self, task_id: str) -> TaskRecord:
        record = self.store.get_task(task_id)
        if record is None:
            raise KeyError(task_id)
        return record

    def run_task(self, task_id: str) -> TaskResult:
        """Run the task to completion on a fresh event loop in the calling thread."""
        self._require_task(task_id)
        return asyncio.run(self.controller.run(task_id))

    def start_task(self, task_id: str) -> TaskRecord:
        record = self._require_task(task_id)
        if record.is_terminal:
            return record
        with self._lock:
            worker = self._workers.get(task_id)
            if worker is not None and worker.is_alive():
                return record
            worker = Thread(
                target=self._run_worker,
                args=(task_id,),
                name=f'fleetsteer-{task_id}',
                daemon=True,
            )
            self._workers[task_id] = worker
            worker.start()
        return record

    def _run_worker(self, task_id: str) -> None:
        set_task_context(task_id=task_id)
        try:
            self.run_task(task_id)
        except Exception as exc:
            reason_text = str(exc).strip() or exc.__class__.__name__
            _log.exception('background worker failed reason=%s', reason_text)
            try:
                self.store.update_task(task_id, status=TaskStatus.FAILED, completed_at=utc_now().isoformat())
                self.store.append_event(
                    task_id,
                    EventType.TASK_COMPLETED,
                    payload={'status': TaskStatus.FAILED.value, 'error': reason_text},
                )
            except Exception:
                _log.exception('background worker failed to mark task as failed')

    def wait_for_task(self, task_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            worker = self._workers.get(task_id)
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def resume_incomplete_tasks(self) -> list[str]:
        """Restart procedures interrupted by a controller restart."""
        resumed: list[str] = []
        for record in self.store.list_incomplete_tasks():
            self.start_task(record.task_id)
            resumed.append(record.task_id)
        if resumed:
            _log.info('tasks_resumed count=%s', len(resumed))
        return resumed

    # Signals

    def _signal(self, task_id: str, *, group: str | None, action: str, payload: dict | None = None) -> SignalRecord:
        record = self.store.append_signal(task_id, group=group, action=action, payload=payload)
        self.store.append_event(
            task_id,
            EventType.SIGNAL_RECEIVED,
            group=group,
            payload={'action': action, 'seq': record.seq},
        )
        _log.info('signal_received task_id=%s group=%s action=%s seq=%s', task_id, group, action, record.seq)
        return record

    def _active_task(self, task_id: str) -> TaskRecord:
        record = self._require_task(task_id)
        if record.is_terminal:
            raise SignalRejectedError(
                f'task {task_id} is {record.status.value}',
                field='task_id',
                code='task_not_active',
            )
        return record

    def _resolve_group(self, record: TaskRecord, group: str | None) -> str:
        if group is None or not str(group).strip():
            if len(record.task.groups) == 1:
                return record.task.groups[0].name
            raise InputValidationError('group is required for multi-group tasks', field='group')
        name = str(group).strip()
        if name not in record.task.group_names:
            raise KeyError(f'{record.task_id}/{name}')
        return name

    def _awaiting_group(self, task_id: str, group: str | None):
        record = self._active_task(task_id)
        name = self._resolve_group(record, group)
        state = self.store.get_group(task_id, name)
        if state.status != GroupStatus.RUNNING or state.stage != GroupStage.STEERING:
            raise SignalRejectedError(
                f'group {name} is not awaiting input',
                field='group',
                code='not_awaiting_input',
            )
        return name, state

    def approve(self, task_id: str, group: str | None = None) -> SignalRecord:
        name, _ = self._awaiting_group(task_id, group)
        return self._signal(task_id, group=name, action=SteeringAction.APPROVE.value)

    def reject(self, task_id: str, group: str | None = None) -> SignalRecord:
        name, _ = self._awaiting_group(task_id, group)
        return self._signal(task_id, group=name, action=SteeringAction.REJECT.value)

    def cancel_group(self, task_id: str, group: str | None = None) -> SignalRecord:
        record = self._active_task(task_id)
        name = self._resolve_group(record, group)
        state = self.store.get_group(task_id, name)
        if state.status.is_terminal:
            raise SignalRejectedError(f'group {name} already finished', field='group', code='group_finished')
        return self._signal(task_id, group=name, action=SteeringAction.CANCEL.value)

    def steer(self, task_id: str, group: str | None, prompt: str) -> SignalRecord:
        text = str(prompt or '').strip()
        if not text:
            raise InputValidationError('prompt is required', field='prompt')
        name, state = self._awaiting_group(task_id, group)
        queued = sum(
            1
            for signal in self.store.signals_after(task_id, state.signal_cursor)
            if signal.group == name and signal.action == SteeringAction.STEER.value
        )
        if state.pending_instruction and state.pending_instruction.get('action') == SteeringAction.STEER.value:
            queued += 1
        projected = state.steering.current_iteration + queued
        if projected >= state.steering.max_iterations:
            self.store.append_event(
                task_id,
                EventType.STEERING_REJECTED,
                group=name,
                payload={'reason': 'iteration_limit', 'iteration': projected, 'limit': state.steering.max_iterations},
            )
            raise IterationLimitReached(iteration=projected, limit=state.steering.max_iterations)
        return self._signal(task_id, group=name, action=SteeringAction.STEER.value, payload={'prompt': text})

    def continue_task(self, task_id: str, *, skip_remaining: bool = False) -> SignalRecord:
        record = self._active_task(task_id)
        if not record.paused:
            raise SignalRejectedError(f'task {task_id} is not paused', field='task_id', code='not_paused')
        return self._signal(task_id, group=None, action='continue', payload={'skip_remaining': bool(skip_remaining)})

    def cancel_task(self, task_id: str) -> SignalRecord:
        record = self._active_task(task_id)
        if record.status == TaskStatus.PENDING:
            # Nothing is running yet; the controller will observe the flag at start.
            self.store.update_task(task_id, cancel_requested=True)
        return self._signal(task_id, group=None, action='cancel')

    # Queries

    def get_progress(self, task_id: str) -> ExecutionProgress:
        record = self._require_task(task_id)
        statuses = {state.group: state.status for state in self.store.list_groups(task_id)}
        return compute_progress(statuses, paused=record.paused, paused_reason=record.paused_reason)

    def get_diff(self, task_id: str, group: str | None = None) -> dict:
        record = self._require_task(task_id)
        name = self._resolve_group(record, group)
        state = self.store.get_group(task_id, name)
        result = AgentResult.model_validate(state.agent_result) if state.agent_result else None
        awaiting = (
            state.stage == GroupStage.STEERING
            and state.pending_instruction is None
            and not state.status.is_terminal
        )
        return {
            'task_id': task_id,
            'group': name,
            'status': state.status.value,
            'awaiting_input': awaiting,
            'iteration': state.steering.current_iteration,
            'verifiers_passed': (result.verifiers_passed if result is not None else None),
            'agent_output': (result.agent_output if result is not None else ''),
            'repositories': [repo.model_dump(mode='json') for repo in (result.repositories if result else [])],
        }

    def get_steering(self, task_id: str, group: str | None = None) -> dict:
        record = self._require_task(task_id)
        name = self._resolve_group(record, group)
        state = self.store.get_group(task_id, name)
        steering = state.steering
        return {
            'task_id': task_id,
            'group': name,
            'status': state.status.value,
            'awaiting_input': (state.stage == GroupStage.STEERING and not state.status.is_terminal),
            'limit_reached': steering.limit_reached,
            **steering.to_dict(),
        }

    def get_result(self, task_id: str) -> TaskResult | None:
        return self._require_task(task_id).result

    def list_events(self, task_id: str) -> list[dict]:
        self._require_task(task_id)
        return self.store.list_events(task_id)

    def retry_failed_groups(self, task_id: str, *, start: bool = True) -> TaskRecord:
        record = self._require_task(task_id)
        if not record.is_terminal or record.result is None:
            raise SignalRejectedError(f'task {task_id} has not finished', field='task_id', code='task_not_finished')
        try:
            retry = build_retry_task(record.task, record.result, task_id=_new_task_id())
        except ValueError as exc:
            raise InputValidationError(str(exc), field='task_id', code='nothing_to_retry') from exc
        created = self.submit_task(retry)
        _log.info('retry_submitted retry_task_id=%s groups=%s', created.task_id, created.task.group_names)
        if start:
            self.start_task(created.task_id)
        return created
