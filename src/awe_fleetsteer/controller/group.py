from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable

from awe_fleetsteer.controller.durable import ActivityError, DurableContext
from awe_fleetsteer.controller.notify import Notifier, safe_notify
from awe_fleetsteer.controller.store import GroupStage, GroupState, SignalRecord, TaskStateStore
from awe_fleetsteer.domain.errors import FailureKind, GroupFailure
from awe_fleetsteer.domain.events import EventType
from awe_fleetsteer.domain.models import GroupOutcome, GroupStatus, SteeringIteration, Task, utc_now
from awe_fleetsteer.observability import bound_context, get_logger
from awe_fleetsteer.protocol.exchange import ControllerChannel
from awe_fleetsteer.protocol.messages import (
    AgentResult,
    AgentStatus,
    GitIdentity,
    Manifest,
    Phase,
    SteeringAction,
    SteeringInstruction,
)
from awe_fleetsteer.sandbox.provider import ProvisionOptions, SandboxHandle, SandboxProvider

_log = get_logger('awe_fleetsteer.controller.group')

GROUP_SIGNAL_ACTIONS = frozenset(action.value for action in SteeringAction)

_ACTION_EVENTS = {
    SteeringAction.APPROVE: EventType.GROUP_APPROVED,
    SteeringAction.REJECT: EventType.GROUP_REJECTED,
    SteeringAction.CANCEL: EventType.GROUP_CANCELLED,
}


class _CancelRequested(Exception):
    def __init__(self, state: GroupState, record: SignalRecord):
        super().__init__(f'cancel requested by signal {record.seq}')
        self.state = state
        self.record = record


def _status_key(status: AgentStatus) -> str:
    return f'{status.phase.value}:{status.iteration}:{status.updated_at.isoformat()}'


def _dump_result(result: AgentResult | None) -> dict | None:
    return result.model_dump(mode='json') if result is not None else None


def _failure_kind(value: str | None) -> FailureKind:
    try:
        return FailureKind(str(value or ''))
    except ValueError:
        return FailureKind.PIPELINE


class GroupRunner:
    """Drives one group through provision, manifest, status polling and the steering loop.

    Every transition is saved to the state store before it is acted on, so a
    second controller can pick the procedure up from ``GroupState.stage``
    against the same sandbox id.
    """

    def __init__(
        self,
        ctx: DurableContext,
        provider: SandboxProvider,
        *,
        notifier: Notifier | None = None,
        status_poll_seconds: float = 0.5,
        staleness_seconds: float = 300,
        provisioning_timeout_seconds: float = 300,
        approval_timeout_seconds: float = 24 * 3600,
        git: GitIdentity | None = None,
        sandbox_env: dict[str, str] | None = None,
    ):
        self.ctx = ctx
        self.provider = provider
        self.notifier = notifier
        self.status_poll_seconds = float(status_poll_seconds)
        self.staleness_seconds = float(staleness_seconds)
        self.provisioning_timeout_seconds = float(provisioning_timeout_seconds)
        self.approval_timeout_seconds = float(approval_timeout_seconds)
        self.git = git
        self.sandbox_env = dict(sandbox_env or {})

    @property
    def store(self) -> TaskStateStore:
        return self.ctx.store

    def _save(self, state: GroupState, **changes: Any) -> GroupState:
        return self.store.save_group(replace(state, **changes))

    def _emit(
        self,
        state: GroupState,
        event_type: EventType,
        payload: dict | None = None,
        *,
        notify: bool = False,
    ) -> None:
        body = dict(payload or {})
        self.store.append_event(state.task_id, event_type, group=state.group, payload=body)
        if notify:
            safe_notify(
                self.notifier,
                event_type.value,
                {'task_id': state.task_id, 'group': state.group, **body},
            )

    async def run(self, task: Task, group_name: str) -> GroupOutcome:
        state = self.store.get_group(task.task_id, group_name)
        if state.stage == GroupStage.DONE and state.outcome is not None:
            return state.outcome
        with bound_context(task_id=task.task_id, group=group_name):
            try:
                outcome = await self._drive(task, state)
            except GroupFailure as failure:
                _log.warning('group_failed kind=%s diagnostic=%s', failure.kind.value, failure.diagnostic)
                outcome = self._failed(
                    self.store.get_group(task.task_id, group_name),
                    failure.kind,
                    failure.diagnostic,
                )
            except ActivityError as exc:
                current = self.store.get_group(task.task_id, group_name)
                kind = (
                    FailureKind.PROVISIONING
                    if current.stage in {GroupStage.PENDING, GroupStage.PROVISIONING}
                    else FailureKind.PIPELINE
                )
                _log.warning('group_activity_exhausted kind=%s error=%s', kind.value, exc)
                outcome = self._failed(current, kind, str(exc))
            except Exception as exc:
                _log.exception('group_controller_error')
                outcome = self._failed(
                    self.store.get_group(task.task_id, group_name),
                    FailureKind.PIPELINE,
                    f'controller error: {exc}',
                )
            state = self.store.get_group(task.task_id, group_name)
            await self._teardown(state)
            return self._complete(state, outcome)

    def _failed(self, state: GroupState, kind: FailureKind, diagnostic: str) -> GroupOutcome:
        result = AgentResult.model_validate(state.agent_result) if state.agent_result else None
        return GroupOutcome(
            group=state.group,
            status=GroupStatus.FAILED,
            failure_kind=kind.value,
            diagnostic=diagnostic,
            sandbox_id=state.sandbox_id,
            repositories=tuple(repo.model_dump(mode='json') for repo in (result.repositories if result else [])),
            steering_history=tuple(entry.to_dict() for entry in state.steering.history),
            completed_at=utc_now().isoformat(),
        )

    def _complete(self, state: GroupState, outcome: GroupOutcome) -> GroupOutcome:
        self._save(
            state,
            status=outcome.status,
            stage=GroupStage.DONE,
            outcome=outcome,
            pending_instruction=None,
            steering=state.steering.close(),
        )
        event_type = EventType.GROUP_SUCCEEDED if outcome.status == GroupStatus.SUCCEEDED else EventType.GROUP_FAILED
        self._emit(
            state,
            event_type,
            {'failure_kind': outcome.failure_kind, 'diagnostic': outcome.diagnostic},
            notify=True,
        )
        _log.info('group_finished status=%s', outcome.status.value)
        return outcome

    async def _teardown(self, state: GroupState) -> None:
        if not state.sandbox_id:
            return
        try:
            await self.ctx.activity('destroy', self.provider.destroy, state.sandbox_id)
        except ActivityError as exc:
            _log.warning('sandbox_teardown_failed sandbox_id=%s error=%s', state.sandbox_id, exc)
            self._emit(state, EventType.SANDBOX_TEARDOWN_FAILED, {'sandbox_id': state.sandbox_id, 'error': str(exc)})

    async def _drive(self, task: Task, state: GroupState) -> GroupOutcome:
        handle, state = await self._ensure_sandbox(task, state)
        channel = ControllerChannel(handle.files)
        if state.stage == GroupStage.PROVISIONING:
            state = await self._submit_manifest(task, state, channel)
        else:
            _log.info('group_resumed stage=%s sandbox_id=%s', state.stage, state.sandbox_id)
            state = self._save(state, last_status_at=self.ctx.now())

        if state.stage == GroupStage.RUNNING:
            try:
                state, status = await self._watch(
                    state,
                    channel,
                    lambda s: s.phase == Phase.AWAITING_INPUT or s.phase.is_terminal,
                    cancellable=True,
                )
            except _CancelRequested:
                raise GroupFailure(FailureKind.HUMAN_CANCELLED, 'cancelled by reviewer')
            if status.phase.is_terminal:
                return await self._finish_from_agent(state, channel, status)
            state = await self._enter_steering(state, channel)

        return await self._steering_loop(state, channel)

    async def _ensure_sandbox(self, task: Task, state: GroupState) -> tuple[SandboxHandle, GroupState]:
        if state.sandbox_id:
            try:
                handle = await self.ctx.activity('attach', self.provider.attach, state.sandbox_id)
            except ActivityError as exc:
                raise GroupFailure(
                    FailureKind.PROVISIONING,
                    f'sandbox {state.sandbox_id} unavailable: {exc.cause}',
                ) from exc
            if state.stage == GroupStage.PENDING:
                state = self._save(state, stage=GroupStage.PROVISIONING)
            return handle, state

        state = self._save(
            state,
            status=GroupStatus.RUNNING,
            stage=GroupStage.PROVISIONING,
            last_status_at=None,
            last_status_key=None,
        )
        options = ProvisionOptions(
            task_id=task.task_id,
            group=state.group,
            env=dict(self.sandbox_env),
            timeout_seconds=int(task.timeout_seconds),
        )
        try:
            handle = await self.ctx.activity('provision', self.provider.provision, options)
        except ActivityError as exc:
            raise GroupFailure(FailureKind.PROVISIONING, f'provisioning failed: {exc.cause}') from exc
        state = self._save(state, sandbox_id=handle.sandbox_id, last_status_at=self.ctx.now())
        self._emit(state, EventType.SANDBOX_PROVISIONED, {'sandbox_id': handle.sandbox_id})
        try:
            await self.ctx.activity(
                'wait_ready',
                self.provider.wait_ready,
                handle.sandbox_id,
                self.provisioning_timeout_seconds,
            )
        except ActivityError as exc:
            raise GroupFailure(FailureKind.PROVISIONING, f'sandbox never became ready: {exc.cause}') from exc
        return handle, state

    async def _submit_manifest(self, task: Task, state: GroupState, channel: ControllerChannel) -> GroupState:
        manifest = Manifest.for_group(
            task,
            state.group,
            git=self.git,
            approval_timeout_seconds=int(self.approval_timeout_seconds),
        )
        # A resumed controller may find the manifest already in place.
        existing = await self.ctx.activity('read_manifest', channel.read_manifest)
        if existing is None:
            await self.ctx.activity('submit_manifest', channel.submit_manifest, manifest)
        state = self._save(state, stage=GroupStage.RUNNING, last_status_at=self.ctx.now())
        self._emit(state, EventType.MANIFEST_SUBMITTED, {'sandbox_id': state.sandbox_id})
        return state

    def _accepts_cancel(self, group: str) -> Callable[[SignalRecord], bool]:
        return lambda record: record.action == SteeringAction.CANCEL.value and record.group in {None, group}

    def _accepts_group_signal(self, group: str) -> Callable[[SignalRecord], bool]:
        def accept(record: SignalRecord) -> bool:
            if record.group is None:
                return record.action == SteeringAction.CANCEL.value
            return record.group == group and record.action in GROUP_SIGNAL_ACTIONS

        return accept

    async def _watch(
        self,
        state: GroupState,
        channel: ControllerChannel,
        done: Callable[[AgentStatus], bool],
        *,
        cancellable: bool,
    ) -> tuple[GroupState, AgentStatus]:
        """Poll status.json until ``done`` holds or the sandbox goes quiet for too long.

        Liveness is judged on the controller clock: the window restarts every time
        the observed (phase, iteration, updated_at) changes.
        """
        while True:
            if cancellable:
                records, _ = self.ctx.poll_signals(state.task_id, state.signal_cursor, self._accepts_cancel(state.group))
                if records:
                    state = self._save(state, signal_cursor=records[0].seq)
                    raise _CancelRequested(state, records[0])
            status = await self.ctx.activity('read_status', channel.read_status)
            now = self.ctx.now()
            if status is not None:
                key = _status_key(status)
                if key != state.last_status_key:
                    state = self._save(state, last_status_key=key, last_status_at=now)
                if done(status):
                    return state, status
            since = state.last_status_at if state.last_status_at is not None else now
            quiet = now - since
            if state.last_status_key is None:
                if quiet > self.provisioning_timeout_seconds:
                    raise GroupFailure(
                        FailureKind.PROVISIONING,
                        f'sandbox {state.sandbox_id} reported no status within '
                        f'{self.provisioning_timeout_seconds:g}s',
                    )
            elif quiet > self.staleness_seconds:
                raise GroupFailure(
                    FailureKind.STALENESS,
                    f'sandbox {state.sandbox_id} status unchanged for {quiet:.0f}s '
                    f'(last {state.last_status_key.split(":")[0]})',
                )
            await self.ctx.sleep(self.status_poll_seconds)

    async def _finish_from_agent(
        self,
        state: GroupState,
        channel: ControllerChannel,
        status: AgentStatus,
    ) -> GroupOutcome:
        result = await self.ctx.activity('read_result', channel.read_result)
        if result is not None:
            state = self._save(state, agent_result=_dump_result(result))
        repositories = tuple(repo.model_dump(mode='json') for repo in (result.repositories if result else []))
        history = tuple(entry.to_dict() for entry in state.steering.history)
        outcome = GroupOutcome(
            group=state.group,
            status=GroupStatus.FAILED,
            sandbox_id=state.sandbox_id,
            repositories=repositories,
            steering_history=history,
            completed_at=utc_now().isoformat(),
        )
        if result is None:
            return replace(
                outcome,
                failure_kind=FailureKind.PIPELINE.value,
                diagnostic=f'agent reported {status.phase.value} without a result',
            )
        if status.phase == Phase.COMPLETE:
            return replace(outcome, status=GroupStatus.SUCCEEDED)
        if status.phase == Phase.CANCELLED:
            return replace(
                outcome,
                failure_kind=FailureKind.HUMAN_CANCELLED.value,
                diagnostic=result.error or 'cancelled',
            )
        return replace(
            outcome,
            failure_kind=_failure_kind(result.failure_kind).value,
            diagnostic=result.error or status.message or 'agent pipeline failed',
        )

    async def _enter_steering(self, state: GroupState, channel: ControllerChannel) -> GroupState:
        result = await self.ctx.activity('read_result', channel.read_result)
        state = self._save(
            state,
            stage=GroupStage.STEERING,
            agent_result=_dump_result(result),
            awaiting_since=self.ctx.now(),
        )
        self._emit(
            state,
            EventType.APPROVAL_REQUESTED,
            {
                'iteration': state.steering.current_iteration,
                'verifiers_passed': (result.verifiers_passed if result is not None else None),
            },
            notify=True,
        )
        return state

    def _instruction_iteration(self, state: GroupState) -> int:
        # A steer that is still in flight may already have advanced the agent.
        pending = state.pending_instruction or {}
        return max(state.steering.current_iteration, int(pending.get('iteration') or 0))

    async def _steering_loop(self, state: GroupState, channel: ControllerChannel) -> GroupOutcome:
        while True:
            if state.pending_instruction is not None:
                instruction = SteeringInstruction.model_validate(state.pending_instruction)
                await self.ctx.activity('submit_instruction', channel.submit_instruction, instruction)
                state = self._save(state, last_status_at=self.ctx.now())
                response = await self._await_response(state, channel, instruction)
                if isinstance(response, GroupOutcome):
                    return response
                state = response
                continue

            deadline = (state.awaiting_since or self.ctx.now()) + self.approval_timeout_seconds
            records, _ = await self.ctx.wait_for_signals(
                state.task_id,
                state.signal_cursor,
                self._accepts_group_signal(state.group),
                deadline=min(deadline, self.ctx.now() + self.status_poll_seconds),
            )
            if not records and self.ctx.now() < deadline:
                # The agent runs its own wall clock and may time out while the human decides.
                status = await self.ctx.activity('read_status', channel.read_status)
                if status is not None and status.phase == Phase.FAILED:
                    _log.warning('agent_failed_while_awaiting message=%s', status.message)
                    return await self._finish_from_agent(state, channel, status)
                continue
            if not records:
                _log.warning('approval_timeout seconds=%s', self.approval_timeout_seconds)
                self._emit(state, EventType.APPROVAL_TIMEOUT, {'seconds': self.approval_timeout_seconds}, notify=True)
                state = self._queue_terminal(state, SteeringAction.CANCEL, state.signal_cursor, reason='approval timed out')
                continue

            cancel = next((record for record in records if record.action == SteeringAction.CANCEL.value), None)
            if cancel is not None:
                # Cancel supersedes whatever else arrived in the same batch.
                state = self._queue_terminal(
                    state,
                    SteeringAction.CANCEL,
                    max(record.seq for record in records),
                    reason='cancelled by reviewer',
                )
                continue

            record = records[0]
            action = SteeringAction(record.action)
            if action == SteeringAction.STEER:
                state = self._queue_steer(state, record)
            else:
                state = self._queue_terminal(state, action, record.seq)

    def _queue_terminal(
        self,
        state: GroupState,
        action: SteeringAction,
        cursor: int,
        *,
        reason: str = '',
    ) -> GroupState:
        instruction = SteeringInstruction(
            action=action,
            prompt=reason,
            iteration=self._instruction_iteration(state),
        )
        state = self._save(
            state,
            signal_cursor=max(state.signal_cursor, int(cursor)),
            pending_instruction=instruction.model_dump(mode='json'),
        )
        self._emit(state, _ACTION_EVENTS[action], {'iteration': instruction.iteration, 'reason': reason or None})
        _log.info('terminal_instruction_queued action=%s iteration=%s', action.value, instruction.iteration)
        return state

    def _queue_steer(self, state: GroupState, record: SignalRecord) -> GroupState:
        steering = state.steering
        if steering.limit_reached:
            reason = f'steering iteration limit reached ({steering.current_iteration}/{steering.max_iterations})'
            state = self._save(state, signal_cursor=record.seq, steering=steering.reject(reason))
            self._emit(state, EventType.STEERING_REJECTED, {'reason': reason}, notify=True)
            _log.info('steering_rejected reason=%s', reason)
            return state
        prompt = str(record.payload.get('prompt') or '').strip()
        if not prompt:
            state = self._save(state, signal_cursor=record.seq, steering=steering.reject('steering prompt is empty'))
            self._emit(state, EventType.STEERING_REJECTED, {'reason': 'steering prompt is empty'})
            return state
        instruction = SteeringInstruction(
            action=SteeringAction.STEER,
            prompt=prompt,
            iteration=steering.current_iteration + 1,
        )
        state = self._save(
            state,
            signal_cursor=record.seq,
            pending_instruction=instruction.model_dump(mode='json'),
        )
        self._emit(state, EventType.STEERING_SENT, {'iteration': instruction.iteration})
        _log.info('steering_sent iteration=%s', instruction.iteration)
        return state

    async def _await_response(
        self,
        state: GroupState,
        channel: ControllerChannel,
        instruction: SteeringInstruction,
    ) -> GroupState | GroupOutcome:
        if instruction.action != SteeringAction.STEER:
            state, status = await self._watch(state, channel, lambda s: s.phase.is_terminal, cancellable=False)
            state = self._save(state, pending_instruction=None)
            outcome = await self._finish_from_agent(state, channel, status)
            if instruction.action == SteeringAction.CANCEL and instruction.prompt and outcome.status == GroupStatus.FAILED:
                outcome = replace(outcome, diagnostic=instruction.prompt)
            return outcome

        target = instruction.iteration
        try:
            state, status = await self._watch(
                state,
                channel,
                lambda s: s.phase.is_terminal or (s.phase == Phase.AWAITING_INPUT and s.iteration >= target),
                cancellable=True,
            )
        except _CancelRequested as request:
            return self._queue_terminal(
                request.state,
                SteeringAction.CANCEL,
                request.record.seq,
                reason='cancelled by reviewer',
            )

        result = await self.ctx.activity('read_result', channel.read_result)
        record = None
        if result is not None:
            record = next((item for item in result.steering_history if item.iteration == target), None)
        steering = state.steering
        if target > steering.current_iteration:
            steering = steering.record(
                SteeringIteration(
                    iteration=target,
                    prompt=instruction.prompt,
                    issued_at=instruction.issued_at.isoformat(),
                    files_modified=tuple(record.files_modified) if record else (),
                    output=(record.output if record else ''),
                )
            )
        state = self._save(
            state,
            steering=steering,
            pending_instruction=None,
            agent_result=_dump_result(result) if result is not None else state.agent_result,
            awaiting_since=self.ctx.now(),
        )
        if status.phase.is_terminal:
            return await self._finish_from_agent(state, channel, status)
        self._emit(
            state,
            EventType.STEERING_COMPLETED,
            {
                'iteration': target,
                'files_modified': list(record.files_modified) if record else [],
                'limit_reached': bool(status.limit_reached or steering.limit_reached),
            },
            notify=True,
        )
        return state
