from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
import shutil
import subprocess
import sys
from threading import Lock, Thread
import time

from fastapi.testclient import TestClient
import pytest

from awe_fleetsteer.agent.commands import CommandRunner
from awe_fleetsteer.agent.pipeline import AgentPipeline
from awe_fleetsteer.api import create_app
from awe_fleetsteer.config import load_settings
from awe_fleetsteer.controller.db import Database, SqlTaskStateStore
from awe_fleetsteer.controller.store import GroupStage
from awe_fleetsteer.protocol.exchange import AgentChannel, DirectoryFileStore
from awe_fleetsteer.sandbox.provider import ProvisionOptions, SandboxHandle, SandboxPhase, SandboxState
from awe_fleetsteer.service import ControllerService

pytestmark = pytest.mark.skipif(shutil.which('git') is None, reason='git is required')

TRANSFORM_SCRIPT = (
    'import pathlib\n'
    'for path in pathlib.Path(".").glob("*/app.py"):\n'
    '    path.write_text(path.read_text().replace("print(", "log.info("))\n'
)
VERIFY_SCRIPT = 'import pathlib, sys; sys.exit("print(" in pathlib.Path("app.py").read_text())'


class ThreadedAgentProvider:
    """Real agent pipelines and real commands, with each sandbox on a local thread."""

    name = 'threaded'

    def __init__(self, root: Path):
        self.root = Path(root)
        self.pipelines: dict[str, AgentPipeline] = {}
        self.threads: dict[str, Thread] = {}
        self.provisioned: list[str] = []
        self.destroyed: list[str] = []
        self._lock = Lock()

    def _files(self, sandbox_id: str) -> DirectoryFileStore:
        return DirectoryFileStore(self.root / sandbox_id / 'protocol')

    def provision(self, options: ProvisionOptions) -> SandboxHandle:
        sandbox_id = f'sbx-{options.task_id}-{options.group}'
        files = self._files(sandbox_id)
        pipeline = AgentPipeline(
            AgentChannel(files),
            workspace_root=self.root / sandbox_id / 'workspace',
            agent_command='claude',
            runner=CommandRunner(),
            manifest_poll_seconds=0.02,
            steering_poll_seconds=0.02,
            heartbeat_seconds=None,
        )
        thread = Thread(target=pipeline.run, name=f'agent-{sandbox_id}', daemon=True)
        with self._lock:
            self.pipelines[sandbox_id] = pipeline
            self.threads[sandbox_id] = thread
            self.provisioned.append(sandbox_id)
        thread.start()
        return SandboxHandle(sandbox_id=sandbox_id, provider=self.name, files=files)

    def attach(self, sandbox_id: str) -> SandboxHandle:
        return SandboxHandle(sandbox_id=sandbox_id, provider=self.name, files=self._files(sandbox_id))

    def wait_ready(self, sandbox_id: str, timeout_seconds: float) -> SandboxState:
        return SandboxState(phase=SandboxPhase.RUNNING)

    def status(self, sandbox_id: str) -> SandboxState:
        return SandboxState(phase=SandboxPhase.RUNNING)

    def destroy(self, sandbox_id: str) -> None:
        pipeline = self.pipelines.get(sandbox_id)
        if pipeline is not None:
            pipeline.request_stop()
            self.threads[sandbox_id].join(timeout=10)
        with self._lock:
            self.destroyed.append(sandbox_id)


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(['git', *args], cwd=str(cwd), check=True, capture_output=True, text=True)


def _seed_repo(root: Path, name: str) -> str:
    repo = root / 'remotes' / name
    repo.mkdir(parents=True)
    _git(repo, 'init', '-q')
    _git(repo, 'checkout', '-q', '-b', 'main')
    (repo / 'app.py').write_text('def main():\n    print("hello")\n', encoding='utf-8')
    _git(repo, 'add', 'app.py')
    _git(repo, '-c', 'user.name=seed', '-c', 'user.email=seed@example.com', 'commit', '-q', '-m', 'init')
    return repo.as_uri()


def _settings(tmp_path: Path):
    return replace(
        load_settings(),
        database_url=f'sqlite:///{tmp_path / "state" / "fleet.db"}',
        status_poll_seconds=0.02,
        signal_poll_seconds=0.02,
        staleness_seconds=60,
        provisioning_timeout_seconds=60,
        activity_retries=2,
    )


def _service(tmp_path: Path, provider: ThreadedAgentProvider) -> ControllerService:
    settings = _settings(tmp_path)
    db = Database(settings.database_url)
    db.create_schema()
    return ControllerService(store=SqlTaskStateStore(db), provider=provider, settings=settings)


def _task_body(tmp_path: Path, **overrides) -> dict:
    body = {
        'task_id': 'task-int',
        'title': 'Replace print with logging',
        'groups': [
            {'name': 'payments', 'repositories': [{'url': _seed_repo(tmp_path, 'payments')}]},
            {'name': 'billing', 'repositories': [{'url': _seed_repo(tmp_path, 'billing')}]},
        ],
        'execution': {
            'kind': 'deterministic',
            'command': [sys.executable, '-c', TRANSFORM_SCRIPT],
            'verifiers': [{'name': 'no-print', 'command': [sys.executable, '-c', VERIFY_SCRIPT]}],
        },
        'timeout_seconds': 120,
        'max_parallel': 2,
    }
    body.update(overrides)
    return body


def _wait(predicate, *, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError('condition not met before timeout')


def test_deterministic_transform_runs_across_groups(tmp_path: Path):
    provider = ThreadedAgentProvider(tmp_path / 'sandboxes')
    service = _service(tmp_path, provider)
    client = TestClient(create_app(service=service))

    resp = client.post('/api/tasks', json={**_task_body(tmp_path), 'auto_start': True})
    assert resp.status_code == 201
    _wait(lambda: client.get('/api/tasks/task-int').json()['status'] == 'completed')
    assert service.wait_for_task('task-int', timeout=10)

    result = client.get('/api/tasks/task-int/result').json()
    assert [group['status'] for group in result['groups']] == ['succeeded', 'succeeded']
    repo = result['groups'][0]['repositories'][0]
    assert repo['name'] == 'payments'
    assert repo['files_modified'] == ['app.py']
    assert '+    log.info("hello")' in repo['diffs'][0]['diff']
    assert repo['verifier_results'][0]['success'] is True
    assert repo['pull_request'] is None
    assert sorted(provider.destroyed) == sorted(provider.provisioned)

    progress = client.get('/api/tasks/task-int/progress').json()
    assert progress['succeeded_groups'] == 2
    assert progress['failure_percent'] == 0.0


def test_controller_restart_resumes_group_awaiting_approval(tmp_path: Path):
    provider = ThreadedAgentProvider(tmp_path / 'sandboxes')
    first = _service(tmp_path, provider)
    body = _task_body(tmp_path, require_approval=True)
    body['groups'] = body['groups'][:1]
    first.submit_task(body)

    def awaiting(service: ControllerService) -> bool:
        state = service.store.get_group('task-int', 'payments')
        return state.stage == GroupStage.STEERING and state.pending_instruction is None

    async def interrupted() -> None:
        run = asyncio.create_task(first.controller.run('task-int'))
        while not awaiting(first):
            await asyncio.sleep(0.02)
        run.cancel()
        try:
            await run
        except asyncio.CancelledError:
            pass

    asyncio.run(interrupted())
    assert provider.destroyed == []

    # A fresh controller process over the same database.
    second = _service(tmp_path, provider)
    assert second.resume_incomplete_tasks() == ['task-int']
    _wait(lambda: awaiting(second))
    assert second.get_diff('task-int')['repositories'][0]['files_modified'] == ['app.py']

    second.approve('task-int')
    assert second.wait_for_task('task-int', timeout=30)

    result = second.get_result('task-int')
    assert result.status.value == 'completed'
    assert provider.provisioned == ['sbx-task-int-payments']
    assert provider.destroyed == ['sbx-task-int-payments']
    types = [event['type'] for event in second.list_events('task-int')]
    assert 'task_resumed' in types
    assert types.count('approval_requested') == 1
