from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from threading import Event, Lock, Thread
import time
from typing import Callable

from awe_fleetsteer.agent.commands import CommandRunner, truncate
from awe_fleetsteer.agent.executors import ConversationTurn, ExecutionOutcome, ExecutionRequest, build_executor
from awe_fleetsteer.agent.finalize import build_finalizer
from awe_fleetsteer.agent.verify import VerifierRunner
from awe_fleetsteer.agent.workspace import Workspace, WorkspaceError
from awe_fleetsteer.domain.errors import FailureKind
from awe_fleetsteer.domain.models import TARGETS_DIR, validate_safe_name
from awe_fleetsteer.observability import get_logger, set_task_context
from awe_fleetsteer.protocol.exchange import AgentChannel
from awe_fleetsteer.protocol.messages import (
    MAX_OUTPUT_CHARS,
    AgentResult,
    AgentStatus,
    Manifest,
    Phase,
    RepoResult,
    SteeringAction,
    SteeringInstruction,
    SteeringRecord,
    StatusProgress,
    VerifierOutcome,
)

_log = get_logger('awe_fleetsteer.agent.pipeline')

_CANCEL_REASONS = {
    SteeringAction.REJECT: 'rejected by reviewer',
    SteeringAction.CANCEL: 'cancelled by reviewer',
}


class ManifestValidationError(ValueError):
    pass


class _PipelineFailure(Exception):
    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


def validate_manifest(manifest: Manifest) -> None:
    if not manifest.task_id.strip():
        raise ManifestValidationError('task_id is required')
    if manifest.mode not in {'transform', 'report'}:
        raise ManifestValidationError(f"mode must be 'transform' or 'report', got {manifest.mode!r}")
    if not manifest.effective_repositories():
        raise ManifestValidationError('at least one repository is required')
    if manifest.for_each and manifest.mode != 'report':
        raise ManifestValidationError('for_each targets require report mode')
    try:
        validate_safe_name(manifest.group, 'group')
        for repo in manifest.effective_repositories():
            validate_safe_name(repo.name, 'repository')
        if manifest.transformation is not None:
            validate_safe_name(manifest.transformation.name, 'transformation')
            if manifest.transformation.name == TARGETS_DIR:
                raise ValueError(f'transformation name {TARGETS_DIR!r} is reserved for target checkouts')
        for target in manifest.for_each:
            validate_safe_name(target.name, 'for_each target')
        for verifier in manifest.verifiers:
            validate_safe_name(verifier.name, 'verifier')
    except ValueError as exc:
        raise ManifestValidationError(str(exc)) from exc


def _workspace_failure(exc: WorkspaceError) -> _PipelineFailure:
    if exc.result is not None and exc.result.timed_out:
        return _PipelineFailure(FailureKind.TIMEOUT, str(exc))
    return _PipelineFailure(FailureKind.PIPELINE, str(exc))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentPipeline:
    """Sandbox-side state machine for one group.

    idle -> initializing -> cloning -> executing -> verifying
        -> [awaiting_input <-> executing/verifying] -> finalizing -> complete
    with ``failed`` reachable from any state and ``cancelled`` from awaiting_input.
    The task timeout is wall clock from the moment the manifest is accepted and
    keeps running while a human decides; the approval timeout is a separate,
    usually longer, bound on a single wait.
    """

    def __init__(
        self,
        channel: AgentChannel,
        *,
        workspace_root: Path,
        agent_command: str,
        runner: CommandRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
        manifest_poll_seconds: float = 0.5,
        steering_poll_seconds: float = 2.0,
        heartbeat_seconds: float | None = 15.0,
        github_token: bool = False,
    ):
        self.channel = channel
        self.workspace_root = Path(workspace_root)
        self.agent_command = agent_command
        self.runner = runner or CommandRunner()
        self.clock = clock
        self.stop_event = Event()
        self.sleep = sleep or self.stop_event.wait
        self.manifest_poll_seconds = manifest_poll_seconds
        self.steering_poll_seconds = steering_poll_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.github_token = github_token

        self.manifest: Manifest | None = None
        self.iteration = 0
        self.history: list[SteeringRecord] = []
        self.turns: tuple[ConversationTurn, ...] = ()
        self.repositories: list[RepoResult] = []
        self.agent_output = ''
        self.last_error: str | None = None
        self.finalized = False
        self.started_at = _utc_now()

        self._status: AgentStatus | None = None
        self._status_lock = Lock()
        self._started: float | None = None
        self._heartbeat: Thread | None = None
        self._heartbeat_stop = Event()

    def request_stop(self) -> None:
        self.stop_event.set()

    # --- status / result -------------------------------------------------

    def _set_status(
        self,
        phase: Phase,
        *,
        step: str | None = None,
        message: str | None = None,
        progress: StatusProgress | None = None,
        limit_reached: bool = False,
    ) -> None:
        with self._status_lock:
            self._status = AgentStatus(
                phase=phase,
                step=step,
                message=message,
                progress=progress,
                iteration=self.iteration,
                limit_reached=limit_reached,
            )
            self.channel.write_status(self._status)
        _log.debug('status phase=%s step=%s iteration=%s', phase.value, step, self.iteration)

    def _beat(self) -> None:
        while not self._heartbeat_stop.wait(self.heartbeat_seconds):
            with self._status_lock:
                if self._status is None or self._status.phase.is_terminal:
                    continue
                self._status = self._status.model_copy(update={'updated_at': _utc_now()})
                self.channel.write_status(self._status)

    def _start_heartbeat(self) -> None:
        if not self.heartbeat_seconds or self._heartbeat is not None:
            return
        self._heartbeat = Thread(target=self._beat, name='agent-heartbeat', daemon=True)
        self._heartbeat.start()

    def _stop_heartbeat(self) -> None:
        self._heartbeat_stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=2)
            self._heartbeat = None

    def _result(self, status: Phase, *, failure_kind: FailureKind | None = None) -> AgentResult:
        terminal = status.is_terminal
        return AgentResult(
            status=status,
            repositories=list(self.repositories),
            agent_output=truncate(self.agent_output, MAX_OUTPUT_CHARS),
            steering_history=list(self.history),
            iteration=self.iteration,
            error=self.last_error,
            failure_kind=(failure_kind.value if failure_kind else None),
            finalized=self.finalized,
            started_at=self.started_at,
            completed_at=(_utc_now() if terminal else None),
        )

    # --- wall-clock budget -----------------------------------------------

    def remaining(self) -> float:
        assert self.manifest is not None
        elapsed = 0.0 if self._started is None else self.clock() - self._started
        return float(self.manifest.timeout_seconds) - elapsed

    def _command_budget(self) -> float:
        return max(0.05, self.remaining())

    def _checkpoint(self) -> None:
        if self.stop_event.is_set():
            raise _PipelineFailure(FailureKind.PIPELINE, 'agent terminated')
        if self.remaining() <= 0:
            raise _PipelineFailure(
                FailureKind.TIMEOUT,
                f'task exceeded its timeout of {self.manifest.timeout_seconds}s',
            )

    # --- entry points ----------------------------------------------------

    def wait_for_manifest(self, *, max_wait_seconds: float | None = None) -> Manifest | None:
        started = self.clock()
        while not self.stop_event.is_set():
            manifest = self.channel.read_manifest()
            if manifest is not None:
                return manifest
            if max_wait_seconds is not None and self.clock() - started >= max_wait_seconds:
                return None
            self.sleep(self.manifest_poll_seconds)
        return None

    def run(self, manifest: Manifest | None = None) -> AgentResult:
        previous = self.channel.read_result()
        if previous is not None and previous.status.is_terminal:
            # A restarted agent must not redo work, least of all finalization.
            _log.info('pipeline_already_terminal status=%s', previous.status.value)
            self._set_status(previous.status, message='already finished')
            return previous

        self._set_status(Phase.IDLE, message='waiting for manifest')
        manifest = manifest or self.wait_for_manifest()
        if manifest is None:
            self.last_error = 'no manifest received'
            return self._fail(FailureKind.PIPELINE)
        self.manifest = manifest
        set_task_context(manifest.task_id, manifest.group)

        try:
            validate_manifest(manifest)
        except ManifestValidationError as exc:
            self.last_error = f'invalid manifest: {exc}'
            return self._fail(FailureKind.PIPELINE)

        self._started = self.clock()
        self._start_heartbeat()
        try:
            self._set_status(Phase.INITIALIZING)
            self._prepare()
            outcome = self._execute(steering_prompt=None)
            if not outcome.ok:
                raise _PipelineFailure(FailureKind.PIPELINE, outcome.error or 'transformation failed')
            if manifest.require_approval:
                return self._await_input()
            failed = self._failed_verifiers()
            if failed:
                raise _PipelineFailure(FailureKind.PIPELINE, f'verifiers failed: {", ".join(failed)}')
            return self._finalize()
        except _PipelineFailure as exc:
            self.last_error = exc.message
            return self._fail(exc.kind)
        finally:
            self._stop_heartbeat()

    def _fail(self, kind: FailureKind) -> AgentResult:
        _log.error('pipeline_failed kind=%s error=%s', kind.value, self.last_error)
        result = self._result(Phase.FAILED, failure_kind=kind)
        self.channel.write_result(result)
        self._set_status(Phase.FAILED, message=self.last_error)
        return result

    # --- steps -----------------------------------------------------------

    def _workspace(self) -> Workspace:
        assert self.manifest is not None
        return Workspace(
            self.workspace_root,
            runner=self.runner,
            remaining=self._command_budget,
            repo_subdir=self.manifest.repo_subdir,
        )

    def _prepare(self) -> None:
        assert self.manifest is not None
        workspace = self._workspace()
        transformation = self.manifest.transformation
        if transformation is not None:
            self._checkpoint()
            self._set_status(Phase.CLONING, step=transformation.name)
            try:
                workspace.clone_transformation(transformation, git=self.manifest.git)
                workspace.run_setup(transformation, cwd=workspace.transformation_path(transformation.name))
            except WorkspaceError as exc:
                raise _workspace_failure(exc) from exc
        repositories = self.manifest.effective_repositories()
        total = len(repositories)
        for index, repo in enumerate(repositories):
            self._checkpoint()
            self._set_status(
                Phase.CLONING,
                step=repo.name,
                progress=StatusProgress(completed_repos=index, total_repos=total),
            )
            try:
                workspace.clone(repo, git=self.manifest.git, github_token=self.github_token)
                workspace.run_setup(repo)
            except WorkspaceError as exc:
                raise _workspace_failure(exc) from exc

    def _execute(self, *, steering_prompt: str | None) -> ExecutionOutcome:
        assert self.manifest is not None
        self._checkpoint()
        self._set_status(Phase.EXECUTING, step=('steering' if steering_prompt is not None else 'transform'))
        executor = build_executor(self.manifest, agent_command=self.agent_command, runner=self.runner)
        workspace = self._workspace()
        cwd = self.workspace_root
        if self.manifest.transformation is not None:
            cwd = workspace.transformation_path(self.manifest.transformation.name)
        outcome = executor.execute(
            ExecutionRequest(
                manifest=self.manifest,
                workspace=cwd,
                repo_root=workspace.repo_root,
                timeout_seconds=self._command_budget(),
                iteration=self.iteration,
                steering_prompt=steering_prompt,
                history=self.turns,
            )
        )
        if outcome.timed_out:
            raise _PipelineFailure(
                FailureKind.TIMEOUT,
                f'task exceeded its timeout of {self.manifest.timeout_seconds}s',
            )
        self.agent_output = outcome.output
        self.turns = self.turns + (ConversationTurn(prompt=steering_prompt or '', output=outcome.output),)
        self._checkpoint()
        self._set_status(Phase.VERIFYING)
        verifier_outcomes = VerifierRunner(runner=self.runner, remaining=self._command_budget).run(
            workspace,
            [repo.name for repo in self.manifest.effective_repositories()],
            list(self.manifest.verifiers),
        )
        self._checkpoint()
        self.repositories = self._collect(workspace, verifier_outcomes)
        return outcome

    def _collect(self, workspace: Workspace, verifier_outcomes: dict[str, list[VerifierOutcome]]) -> list[RepoResult]:
        assert self.manifest is not None
        results: list[RepoResult] = []
        for repo in self.manifest.effective_repositories():
            files = workspace.modified_files(repo.name)
            outcomes = verifier_outcomes.get(repo.name, [])
            failed = next((item.name for item in outcomes if not item.success), None)
            results.append(
                RepoResult(
                    name=repo.name,
                    status=('failed' if failed else 'success'),
                    files_modified=files,
                    diffs=(workspace.diffs(repo.name) if files else []),
                    verifier_results=outcomes,
                    error=(f'verifier {failed} failed' if failed else None),
                )
            )
        return results

    def _failed_verifiers(self) -> list[str]:
        names: list[str] = []
        for repo in self.repositories:
            for outcome in repo.verifier_results:
                if not outcome.success:
                    names.append(f'{repo.name}:{outcome.name}')
        return names

    def _finalize(self) -> AgentResult:
        assert self.manifest is not None
        if self.finalized:
            raise RuntimeError('finalization already ran')
        self._checkpoint()
        self._set_status(Phase.FINALIZING)
        finalizer = build_finalizer(self.manifest, runner=self.runner, remaining=self._command_budget)
        self.repositories = finalizer.finalize(self.manifest, self._workspace(), list(self.repositories))
        self.finalized = True
        result = self._result(Phase.COMPLETE)
        self.channel.write_result(result)
        self._set_status(Phase.COMPLETE)
        _log.info('pipeline_complete repositories=%s', len(self.repositories))
        return result

    def _cancel(self, reason: str) -> AgentResult:
        self.last_error = reason
        result = self._result(Phase.CANCELLED, failure_kind=FailureKind.HUMAN_CANCELLED)
        self.channel.write_result(result)
        self._set_status(Phase.CANCELLED, message=reason)
        _log.info('pipeline_cancelled reason=%s', reason)
        return result

    # --- human in the loop -----------------------------------------------

    def _enter_awaiting(self, *, limit_reached: bool = False, message: str | None = None) -> None:
        self.channel.write_result(self._result(Phase.AWAITING_INPUT))
        self._set_status(Phase.AWAITING_INPUT, message=message, limit_reached=limit_reached)

    def _is_stale(self, instruction: SteeringInstruction) -> bool:
        if instruction.action == SteeringAction.STEER:
            return instruction.iteration <= self.iteration
        return instruction.iteration < self.iteration

    def _await_input(self) -> AgentResult:
        assert self.manifest is not None
        self._enter_awaiting()
        deadline = self.clock() + float(self.manifest.approval_timeout_seconds)
        while True:
            if self.stop_event.is_set():
                raise _PipelineFailure(FailureKind.PIPELINE, 'agent terminated')
            instruction = self.channel.claim_instruction()
            if instruction is None:
                if self.clock() >= deadline:
                    return self._cancel('approval timed out')
                remaining = self.remaining()
                if remaining <= 0:
                    raise _PipelineFailure(
                        FailureKind.TIMEOUT,
                        f'task exceeded its timeout of {self.manifest.timeout_seconds}s while awaiting input',
                    )
                self.sleep(min(self.steering_poll_seconds, remaining))
                continue
            if self._is_stale(instruction):
                _log.info(
                    'steering_instruction_discarded action=%s iteration=%s current=%s',
                    instruction.action.value, instruction.iteration, self.iteration,
                )
                continue
            deadline = self.clock() + float(self.manifest.approval_timeout_seconds)
            _log.info('steering_instruction action=%s iteration=%s', instruction.action.value, instruction.iteration)
            if instruction.action == SteeringAction.APPROVE:
                return self._finalize()
            if instruction.action in {SteeringAction.REJECT, SteeringAction.CANCEL}:
                return self._cancel(_CANCEL_REASONS[instruction.action])
            if self.iteration >= self.manifest.max_steering_iterations:
                self._enter_awaiting(
                    limit_reached=True,
                    message=f'steering limit reached ({self.iteration}/{self.manifest.max_steering_iterations})',
                )
                continue
            if instruction.iteration != self.iteration + 1:
                # Steering iterations are consecutive.
                _log.warning(
                    'steering_instruction_out_of_order iteration=%s expected=%s',
                    instruction.iteration, self.iteration + 1,
                )
                self._enter_awaiting(
                    message=f'steering instruction out of order (expected {self.iteration + 1}, got {instruction.iteration})',
                )
                continue
            self._steer(instruction)

    def _steer(self, instruction: SteeringInstruction) -> None:
        self.iteration += 1
        self.last_error = None
        outcome = self._execute(steering_prompt=instruction.prompt)
        if not outcome.ok:
            self.last_error = outcome.error
        self.history.append(
            SteeringRecord(
                iteration=self.iteration,
                prompt=instruction.prompt,
                timestamp=instruction.issued_at,
                files_modified=sorted({path for repo in self.repositories for path in repo.files_modified}),
                output=truncate(outcome.output, MAX_OUTPUT_CHARS),
            )
        )
        self._enter_awaiting()
