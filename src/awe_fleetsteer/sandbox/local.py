from __future__ import annotations

import os
from pathlib import Path
import shlex
import shutil
import signal
import subprocess
from threading import Lock
import time
from uuid import uuid4

from awe_fleetsteer.domain.errors import ProvisioningError
from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.exchange import DirectoryFileStore
from awe_fleetsteer.sandbox.provider import ProvisionOptions, SandboxHandle, SandboxPhase, SandboxState

_log = get_logger('awe_fleetsteer.sandbox.local')

PROTOCOL_DIR = '.fleetsteer'
WORKSPACE_DIR = 'workspace'
PID_FILE = 'agent.pid'
LOG_FILE = 'agent.log'


class LocalSandboxProvider:
    """One directory plus one agent subprocess per sandbox.

    Layout under ``root/<sandbox_id>/``: ``workspace/`` holds the checkouts and
    ``workspace/.fleetsteer/`` holds the protocol files.
    """

    name = 'local'

    def __init__(self, root: Path, *, agent_command: str, env: dict[str, str] | None = None):
        self.root = Path(root)
        self.agent_command = agent_command
        self.env = dict(env or {})
        self._processes: dict[str, subprocess.Popen] = {}
        self._lock = Lock()

    def _sandbox_dir(self, sandbox_id: str) -> Path:
        if '/' in sandbox_id or '..' in sandbox_id or not sandbox_id.strip():
            raise ValueError(f'invalid sandbox id: {sandbox_id!r}')
        return self.root / sandbox_id

    def _handle(self, sandbox_id: str) -> SandboxHandle:
        protocol_dir = self._sandbox_dir(sandbox_id) / WORKSPACE_DIR / PROTOCOL_DIR
        return SandboxHandle(sandbox_id=sandbox_id, provider=self.name, files=DirectoryFileStore(protocol_dir))

    def provision(self, options: ProvisionOptions) -> SandboxHandle:
        sandbox_id = f'sbx-{options.task_id}-{options.group}-{uuid4().hex[:8]}'
        base = self._sandbox_dir(sandbox_id)
        workspace = base / WORKSPACE_DIR
        protocol_dir = workspace / PROTOCOL_DIR
        protocol_dir.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **self.env, **options.env}
        env['AWE_AGENT_WORKSPACE'] = str(workspace)
        env['AWE_AGENT_PROTOCOL_DIR'] = str(protocol_dir)
        argv = shlex.split(self.agent_command)
        if not argv:
            raise ProvisioningError('agent command is empty')
        try:
            with open(base / LOG_FILE, 'ab') as log_handle:
                process = subprocess.Popen(
                    argv,
                    cwd=str(workspace),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            shutil.rmtree(base, ignore_errors=True)
            raise ProvisioningError(f'failed to start sandbox agent: {exc}') from exc
        (base / PID_FILE).write_text(str(process.pid), encoding='utf-8')
        with self._lock:
            self._processes[sandbox_id] = process
        _log.info('sandbox_provisioned sandbox_id=%s pid=%s', sandbox_id, process.pid)
        return self._handle(sandbox_id)

    def attach(self, sandbox_id: str) -> SandboxHandle:
        if not self._sandbox_dir(sandbox_id).is_dir():
            raise ProvisioningError(f'sandbox not found: {sandbox_id}')
        return self._handle(sandbox_id)

    def wait_ready(self, sandbox_id: str, timeout_seconds: float) -> SandboxState:
        """Block until the agent process is up; an early exit is a provisioning failure."""
        deadline = time.monotonic() + max(0.0, float(timeout_seconds))
        while True:
            state = self.status(sandbox_id)
            if state.phase in {SandboxPhase.RUNNING, SandboxPhase.SUCCEEDED}:
                return state
            if state.phase == SandboxPhase.FAILED:
                raise ProvisioningError(f'sandbox {sandbox_id} failed to start: {state.message}')
            if time.monotonic() >= deadline:
                raise ProvisioningError(f'sandbox {sandbox_id} not ready: {state.phase.value}')
            time.sleep(0.1)

    def _pid(self, sandbox_id: str) -> int | None:
        try:
            return int((self._sandbox_dir(sandbox_id) / PID_FILE).read_text(encoding='utf-8').strip())
        except (OSError, ValueError):
            return None

    def status(self, sandbox_id: str) -> SandboxState:
        with self._lock:
            process = self._processes.get(sandbox_id)
        if process is not None:
            code = process.poll()
            if code is None:
                return SandboxState(phase=SandboxPhase.RUNNING)
            if code == 0:
                return SandboxState(phase=SandboxPhase.SUCCEEDED)
            return SandboxState(phase=SandboxPhase.FAILED, message=f'agent exited with {code}')
        if not self._sandbox_dir(sandbox_id).is_dir():
            return SandboxState(phase=SandboxPhase.UNKNOWN, message='sandbox not found')
        pid = self._pid(sandbox_id)
        if pid is None:
            return SandboxState(phase=SandboxPhase.UNKNOWN, message='agent pid unavailable')
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return SandboxState(phase=SandboxPhase.SUCCEEDED, message='agent process exited')
        except PermissionError:
            pass
        return SandboxState(phase=SandboxPhase.RUNNING)

    def destroy(self, sandbox_id: str) -> None:
        with self._lock:
            process = self._processes.pop(sandbox_id, None)
        if process is not None:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait(timeout=5)
        else:
            pid = self._pid(sandbox_id)
            if pid is not None:
                try:
                    os.kill(pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
        shutil.rmtree(self._sandbox_dir(sandbox_id), ignore_errors=True)
        _log.info('sandbox_destroyed sandbox_id=%s', sandbox_id)
