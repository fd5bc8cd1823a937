from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field, replace

from awe_fleetsteer.controller.durable import DurableContext
from awe_fleetsteer.controller.group import GroupRunner
from awe_fleetsteer.controller.notify import Notifier, safe_notify
from awe_fleetsteer.controller.store import GroupStage, SignalRecord, TaskRecord, TaskStateStore
from awe_fleetsteer.domain.errors import FailureKind
from awe_fleetsteer.domain.events import EventType
from awe_fleetsteer.domain.models import (
    GroupOutcome,
    GroupStatus,
    Task,
    TaskResult,
    TaskStatus,
    summarize_task_status,
    utc_now,
)
from awe_fleetsteer.domain.threshold import evaluate_failure_threshold
from awe_fleetsteer.observability import bound_context, get_logger

_log = get_logger('awe_fleetsteer.controller.task')

TASK_SIGNAL_ACTIONS = frozenset({'continue', 'cancel'})


def _accepts_task_signal(record: SignalRecord) -> bool:
    return record.group is None and record.action in TASK_SIGNAL_ACTIONS


@dataclass
class _RunState:
    statuses: dict[str, GroupStatus]
    pending: deque[str]
    running: dict[str, asyncio.Task] = field(default_factory=dict)
    paused: bool = False
    paused_reason: str | None = None
    aborted: bool = False
    cancelled: bool = False
    acknowledged_failures: int = 0
    signal_cursor: int = 0

    def count(self, status: GroupStatus) -> int:
        return sum(1 for value in self.statuses.values() if value == status)


class TaskController:
    """Runs a task's groups with bounded parallelism and failure-threshold control.

    Group completions are funnelled through one queue and evaluated by this
    coroutine alone, so threshold decisions never race each other.
    """

    def __init__(
        self,
        ctx: DurableContext,
        group_runner: GroupRunner,
        *,
        notifier: Notifier | None = None,
    ):
        self.ctx = ctx
        self.group_runner = group_runner
        self.notifier = notifier

    @property
    def store(self) -> TaskStateStore:
        return self.ctx.store

    def _emit(
        self,
        task_id: str,
        event_type: EventType,
        payload: dict | None = None,
        *,
        group: str | None = None,
        notify: bool = False,
    ) -> None:
        body = dict(payload or {})
        self.store.append_event(task_id, event_type, group=group, payload=body)
        if notify:
            safe_notify(self.notifier, event_type.value, {'task_id': task_id, 'group': group, **body})

    async def run(self, task_id: str) -> TaskResult:
        record = self.store.get_task(task_id)
        if record is None:
            raise KeyError(task_id)
        if record.is_terminal and record.result is not None:
            return record.result
        with bound_context(task_id=task_id):
            return await self._run(record)

    async def _run(self, record: TaskRecord) -> TaskResult:
        task = record.task
        task_id = task.task_id
        if record.status == TaskStatus.PENDING:
            record = self.store.update_task(task_id, status=TaskStatus.RUNNING, started_at=utc_now().isoformat())
            self._emit(task_id, EventType.TASK_STARTED, {'groups': len(task.groups)})
            _log.info('task_started groups=%s max_parallel=%s', len(task.groups), task.max_parallel)
        else:
            self._emit(task_id, EventType.TASK_RESUMED, {'status': record.status.value})
            _log.info('task_resumed status=%s', record.status.value)

        groups = self.store.list_groups(task_id)
        run = _RunState(
            statuses={state.group: state.status for state in groups},
            pending=deque(state.group for state in groups if state.status == GroupStatus.PENDING),
            paused=record.paused,
            paused_reason=record.paused_reason,
            cancelled=record.cancel_requested,
            acknowledged_failures=record.acknowledged_failures,
            signal_cursor=record.signal_cursor,
        )
        completions: asyncio.Queue[tuple[str, GroupOutcome]] = asyncio.Queue()

        # Groups that were in flight when a previous controller stopped.
        for state in groups:
            if state.status == GroupStatus.RUNNING:
                self._launch(task, state.group, run, completions, resumed=True)

        try:
            while True:
                self._apply_signals(task, run)
                if run.cancelled or run.aborted:
                    self._skip_pending(task, run, 'task cancelled' if run.cancelled else 'task aborted')
                if not run.paused:
                    while run.pending and len(run.running) < max(1, int(task.max_parallel)):
                        self._launch(task, run.pending.popleft(), run, completions)
                if not run.running and not run.pending:
                    break
                try:
                    name, outcome = await asyncio.wait_for(completions.get(), timeout=self.ctx.signal_poll_seconds)
                except asyncio.TimeoutError:
                    continue
                self._on_group_finished(task, run, name, outcome)
        except asyncio.CancelledError:
            for pending_task in run.running.values():
                pending_task.cancel()
            raise

        return self._finish(task, run)

    def _launch(
        self,
        task: Task,
        name: str,
        run: _RunState,
        completions: asyncio.Queue,
        *,
        resumed: bool = False,
    ) -> None:
        if not resumed:
            state = self.store.get_group(task.task_id, name)
            self.store.save_group(replace(state, status=GroupStatus.RUNNING))
            self._emit(task.task_id, EventType.GROUP_STARTED, group=name)
        run.statuses[name] = GroupStatus.RUNNING
        run.running[name] = asyncio.create_task(self._run_group(task, name, completions))
        _log.info('group_launched group=%s running=%s', name, len(run.running))

    async def _run_group(self, task: Task, name: str, completions: asyncio.Queue) -> None:
        try:
            outcome = await self.group_runner.run(task, name)
        except Exception as exc:
            _log.exception('group_runner_crashed group=%s', name)
            outcome = GroupOutcome(
                group=name,
                status=GroupStatus.FAILED,
                failure_kind=FailureKind.PIPELINE.value,
                diagnostic=f'controller error: {exc}',
                completed_at=utc_now().isoformat(),
            )
            state = self.store.get_group(task.task_id, name)
            self.store.save_group(replace(state, status=GroupStatus.FAILED, stage=GroupStage.DONE, outcome=outcome))
        await completions.put((name, outcome))

    def _apply_signals(self, task: Task, run: _RunState) -> None:
        records, cursor = self.ctx.poll_signals(task.task_id, run.signal_cursor, _accepts_task_signal)
        for record in records:
            if record.action == 'cancel':
                if not run.cancelled:
                    run.cancelled = True
                    run.paused = False
                    self._emit(task.task_id, EventType.TASK_CANCEL_REQUESTED, {'seq': record.seq})
                    _log.info('task_cancel_requested seq=%s', record.seq)
            elif record.action == 'continue':
                if not run.paused:
                    _log.info('task_continue_ignored reason=not_paused seq=%s', record.seq)
                    continue
                skip_remaining = bool(record.payload.get('skip_remaining'))
                run.paused = False
                run.paused_reason = None
                run.acknowledged_failures = run.count(GroupStatus.FAILED)
                self._emit(task.task_id, EventType.TASK_CONTINUED, {'skip_remaining': skip_remaining})
                _log.info('task_continued skip_remaining=%s', skip_remaining)
                if skip_remaining:
                    self._skip_pending(task, run, 'skipped after pause')
        if cursor != run.signal_cursor or records:
            run.signal_cursor = cursor
            self.store.update_task(
                task.task_id,
                signal_cursor=cursor,
                paused=run.paused,
                paused_reason=run.paused_reason,
                cancel_requested=run.cancelled,
                acknowledged_failures=run.acknowledged_failures,
                status=(TaskStatus.PAUSED if run.paused else TaskStatus.RUNNING),
            )

    def _skip_pending(self, task: Task, run: _RunState, reason: str) -> None:
        while run.pending:
            name = run.pending.popleft()
            outcome = GroupOutcome(
                group=name,
                status=GroupStatus.SKIPPED,
                diagnostic=reason,
                completed_at=utc_now().isoformat(),
            )
            state = self.store.get_group(task.task_id, name)
            self.store.save_group(
                replace(
                    state,
                    status=GroupStatus.SKIPPED,
                    stage=GroupStage.DONE,
                    outcome=outcome,
                    steering=state.steering.close(),
                )
            )
            run.statuses[name] = GroupStatus.SKIPPED
            self._emit(task.task_id, EventType.GROUP_SKIPPED, {'reason': reason}, group=name)

    def _on_group_finished(self, task: Task, run: _RunState, name: str, outcome: GroupOutcome) -> None:
        run.running.pop(name, None)
        run.statuses[name] = outcome.status
        succeeded = run.count(GroupStatus.SUCCEEDED)
        failed = run.count(GroupStatus.FAILED)
        _log.info(
            'group_completed group=%s status=%s succeeded=%s failed=%s',
            name,
            outcome.status.value,
            succeeded,
            failed,
        )
        if outcome.status != GroupStatus.FAILED or run.cancelled or run.aborted:
            return
        if failed <= run.acknowledged_failures:
            return
        decision = evaluate_failure_threshold(task.failure_policy, completed=succeeded + failed, failed=failed)
        if decision.should_abort:
            run.aborted = True
            self._emit(
                task.task_id,
                EventType.TASK_ABORTED,
                {'reason': decision.reason, 'failure_percent': decision.failure_percent},
                notify=True,
            )
            _log.warning('task_aborted reason=%s', decision.reason)
            self._skip_pending(task, run, 'task aborted')
        elif decision.should_pause and not run.paused:
            run.paused = True
            run.paused_reason = decision.reason
            self.store.update_task(
                task.task_id,
                status=TaskStatus.PAUSED,
                paused=True,
                paused_reason=decision.reason,
            )
            self._emit(
                task.task_id,
                EventType.TASK_PAUSED,
                {
                    'reason': decision.reason,
                    'failure_percent': decision.failure_percent,
                    'failed_groups': [group for group, status in run.statuses.items() if status == GroupStatus.FAILED],
                },
                notify=True,
            )
            _log.warning('task_paused reason=%s', decision.reason)

    def _finish(self, task: Task, run: _RunState) -> TaskResult:
        record = self.store.get_task(task.task_id)
        outcomes = []
        for state in self.store.list_groups(task.task_id):
            outcomes.append(state.outcome or GroupOutcome(group=state.group, status=state.status))
        status = summarize_task_status(run.statuses, cancelled=run.cancelled)
        completed_at = utc_now().isoformat()
        result = TaskResult(
            task_id=task.task_id,
            status=status,
            mode=task.mode,
            groups=tuple(outcomes),
            retry_of=task.retry_of,
            started_at=(record.started_at if record else None),
            completed_at=completed_at,
        )
        self.store.update_task(
            task.task_id,
            status=status,
            paused=False,
            paused_reason=None,
            result=result,
            completed_at=completed_at,
        )
        self._emit(
            task.task_id,
            EventType.TASK_COMPLETED,
            {'status': status.value, 'failed_groups': result.failed_groups},
            notify=True,
        )
        _log.info('task_finished status=%s', status.value)
        return result
