from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path

from awe_fleetsteer.controller.durable import DurableContext
from awe_fleetsteer.controller.group import GroupRunner
from awe_fleetsteer.controller.store import GroupStage, InMemoryTaskStateStore
from awe_fleetsteer.domain.models import GroupStatus
from awe_fleetsteer.protocol.exchange import AgentChannel
from awe_fleetsteer.protocol.messages import AgentStatus, Phase

from fleet_fakes import ScriptedRunner, ThreadSandboxProvider, make_task


class FailingProvisionProvider(ThreadSandboxProvider):
    def provision(self, options):
        raise RuntimeError('quota exceeded')


class FailingTeardownProvider(ThreadSandboxProvider):
    def destroy(self, sandbox_id):
        super().destroy(sandbox_id)
        raise RuntimeError('sandbox api unavailable')


def _runner(store, provider, **kwargs) -> GroupRunner:
    ctx = DurableContext(store, activity_retries=1, retry_initial_seconds=0.01, signal_poll_seconds=0.01)
    kwargs.setdefault('status_poll_seconds', 0.01)
    return GroupRunner(ctx, provider, **kwargs)


def _store_with(task) -> InMemoryTaskStateStore:
    store = InMemoryTaskStateStore()
    store.create_task(task)
    return store


async def until(predicate, *, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError('condition not met before timeout')


def _awaiting(store, task_id='task-1', group='g1', *, iteration: int = 0):
    def check() -> bool:
        state = store.get_group(task_id, group)
        return (
            state.stage == GroupStage.STEERING
            and state.pending_instruction is None
            and state.steering.current_iteration == iteration
        )

    return check


def _event_types(store, task_id='task-1') -> list[str]:
    return [event['type'] for event in store.list_events(task_id)]


def test_group_without_approval_runs_to_success(tmp_path: Path):
    task = make_task()
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)
    runner = _runner(store, provider)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.status == GroupStatus.SUCCEEDED
    assert outcome.sandbox_id == 'sbx-task-1-g1'
    assert outcome.repositories[0]['pull_request']['number'] == 42
    assert provider.destroyed == ['sbx-task-1-g1']
    state = store.get_group('task-1', 'g1')
    assert state.stage == GroupStage.DONE
    assert state.steering.closed is True
    assert _event_types(store)[:2] == ['sandbox_provisioned', 'manifest_submitted']
    assert _event_types(store)[-1] == 'group_succeeded'

    # A finished group answers from its stored outcome without touching the sandbox again.
    assert asyncio.run(runner.run(task, 'g1')) == outcome
    assert provider.provisioned == ['sbx-task-1-g1']


def test_steer_then_approve(tmp_path: Path):
    task = make_task(require_approval=True)
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)
    runner = _runner(store, provider)

    async def scenario():
        run = asyncio.create_task(runner.run(task, 'g1'))
        await until(_awaiting(store))
        store.append_signal('task-1', group='g1', action='steer', payload={'prompt': 'also update the README'})
        await until(_awaiting(store, iteration=1))
        store.append_signal('task-1', group='g1', action='approve')
        return await run

    outcome = asyncio.run(scenario())
    assert outcome.status == GroupStatus.SUCCEEDED
    assert [entry['prompt'] for entry in outcome.steering_history] == ['also update the README']
    assert outcome.steering_history[0]['files_modified'] == ['src/app.py']
    assert len(provider.runners['g1'].prompts) == 2
    types = _event_types(store)
    assert types.index('approval_requested') < types.index('steering_sent') < types.index('steering_completed')
    assert 'group_approved' in types


def test_steering_past_the_limit_is_rejected(tmp_path: Path):
    task = make_task(require_approval=True, max_steering_iterations=5)
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)
    runner = _runner(store, provider)

    async def scenario():
        run = asyncio.create_task(runner.run(task, 'g1'))
        await until(_awaiting(store))
        for iteration in range(1, 6):
            store.append_signal('task-1', group='g1', action='steer', payload={'prompt': f'round {iteration}'})
            await until(_awaiting(store, iteration=iteration))
        store.append_signal('task-1', group='g1', action='steer', payload={'prompt': 'one more'})
        await until(lambda: store.get_group('task-1', 'g1').steering.last_rejection is not None)
        store.append_signal('task-1', group='g1', action='approve')
        return await run

    outcome = asyncio.run(scenario())
    assert outcome.status == GroupStatus.SUCCEEDED
    assert len(outcome.steering_history) == 5
    state = store.get_group('task-1', 'g1')
    assert state.steering.current_iteration == 5
    assert state.steering.last_rejection == 'steering iteration limit reached (5/5)'
    assert 'steering_rejected' in _event_types(store)
    completed = [event for event in store.list_events('task-1') if event['type'] == 'steering_completed']
    assert completed[-1]['payload']['limit_reached'] is True
    assert len(provider.runners['g1'].prompts) == 6


def test_silent_sandbox_fails_provisioning(tmp_path: Path):
    task = make_task()
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path, start_agent=False)
    runner = _runner(store, provider, provisioning_timeout_seconds=0.3)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.status == GroupStatus.FAILED
    assert outcome.failure_kind == 'provisioning'
    assert outcome.diagnostic == 'sandbox sbx-task-1-g1 reported no status within 0.3s'
    assert provider.destroyed == ['sbx-task-1-g1']


def test_unchanging_status_fails_with_staleness(tmp_path: Path):
    task = make_task()
    store = _store_with(task)

    def seed(files):
        AgentChannel(files).write_status(AgentStatus(phase=Phase.EXECUTING, step='service-1'))

    provider = ThreadSandboxProvider(tmp_path, start_agent=False, on_provision=seed)
    runner = _runner(store, provider, staleness_seconds=0.3)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.failure_kind == 'staleness'
    assert outcome.diagnostic.startswith('sandbox sbx-task-1-g1 status unchanged for')
    assert outcome.diagnostic.endswith('(last executing)')


def test_cancel_while_running(tmp_path: Path):
    task = make_task()
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path, lambda group: ScriptedRunner(agent_delay=1.0))
    runner = _runner(store, provider)

    async def scenario():
        run = asyncio.create_task(runner.run(task, 'g1'))
        await until(lambda: store.get_group('task-1', 'g1').stage == GroupStage.RUNNING)
        store.append_signal('task-1', group='g1', action='cancel')
        return await run

    outcome = asyncio.run(scenario())
    assert outcome.status == GroupStatus.FAILED
    assert outcome.failure_kind == 'human_cancelled'
    assert outcome.diagnostic == 'cancelled by reviewer'
    assert provider.destroyed == ['sbx-task-1-g1']


def test_approval_timeout_cancels_group(tmp_path: Path):
    task = make_task(require_approval=True)
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)
    runner = _runner(store, provider, approval_timeout_seconds=1.5)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.status == GroupStatus.FAILED
    assert outcome.failure_kind == 'human_cancelled'
    assert outcome.diagnostic == 'approval timed out'
    assert 'approval_timeout' in _event_types(store)
    assert provider.runners['g1'].count('gh') == 0


def test_agent_timeout_while_awaiting_fails_group(tmp_path: Path):
    task = make_task(require_approval=True, timeout_seconds=1)
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)
    runner = _runner(store, provider, approval_timeout_seconds=3600)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.status == GroupStatus.FAILED
    assert outcome.failure_kind == 'timeout'
    assert outcome.diagnostic == 'task exceeded its timeout of 1s while awaiting input'
    assert 'approval_timeout' not in _event_types(store)
    assert provider.runners['g1'].count('gh') == 0
    assert provider.destroyed == ['sbx-task-1-g1']


def test_provisioning_error_fails_group(tmp_path: Path):
    task = make_task()
    store = _store_with(task)
    provider = FailingProvisionProvider(tmp_path)
    runner = _runner(store, provider)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.failure_kind == 'provisioning'
    assert outcome.diagnostic == 'provisioning failed: quota exceeded'
    assert outcome.sandbox_id is None
    assert provider.destroyed == []


def test_teardown_failure_is_recorded_but_not_fatal(tmp_path: Path):
    task = make_task()
    store = _store_with(task)
    provider = FailingTeardownProvider(tmp_path)
    runner = _runner(store, provider)

    outcome = asyncio.run(runner.run(task, 'g1'))

    assert outcome.status == GroupStatus.SUCCEEDED
    failures = [event for event in store.list_events('task-1') if event['type'] == 'sandbox_teardown_failed']
    assert failures[0]['payload']['sandbox_id'] == 'sbx-task-1-g1'
    assert 'sandbox api unavailable' in failures[0]['payload']['error']


def test_interrupted_procedure_resumes_against_same_sandbox(tmp_path: Path):
    task = make_task(require_approval=True)
    store = _store_with(task)
    provider = ThreadSandboxProvider(tmp_path)

    async def scenario():
        first = asyncio.create_task(_runner(store, provider).run(task, 'g1'))
        await until(_awaiting(store))
        first.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await first
        # The sandbox keeps waiting while no controller is attached.
        assert provider.destroyed == []

        second = asyncio.create_task(_runner(store, provider).run(task, 'g1'))
        store.append_signal('task-1', group='g1', action='approve')
        return await second

    outcome = asyncio.run(scenario())
    assert outcome.status == GroupStatus.SUCCEEDED
    assert provider.provisioned == ['sbx-task-1-g1']
    assert provider.destroyed == ['sbx-task-1-g1']
    assert provider.runners['g1'].count('gh', 'pr', 'create') == 1
