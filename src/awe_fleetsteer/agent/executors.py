from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shlex
from typing import Protocol

from awe_fleetsteer.agent.commands import CommandRunner, truncate
from awe_fleetsteer.domain.models import BLOCKED_ENV_VARS, ExecutionKind
from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.messages import Manifest

_log = get_logger('awe_fleetsteer.agent.executors')

MAX_STEERING_CONTEXT_CHARS = 4000


@dataclass(frozen=True)
class ConversationTurn:
    prompt: str
    output: str


@dataclass(frozen=True)
class ExecutionRequest:
    manifest: Manifest
    workspace: Path
    timeout_seconds: float
    iteration: int = 0
    steering_prompt: str | None = None
    history: tuple[ConversationTurn, ...] = ()
    # Where the repositories live when that differs from the working directory.
    repo_root: Path | None = None


@dataclass(frozen=True)
class ExecutionOutcome:
    ok: bool
    output: str
    timed_out: bool = False
    error: str | None = None


class TransformationExecutor(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        ...


def build_transform_prompt(manifest: Manifest, repo_root: Path) -> str:
    lines = [
        f'Task: {manifest.title}',
        '',
        'Instructions:',
        manifest.execution.instruction,
        '',
    ]
    if manifest.transformation is not None:
        lines.extend([
            '## Transformation Repository',
            '',
            f'- `{manifest.transformation.name}` (branch: {manifest.transformation.branch}), the current directory',
            '',
        ])
    lines.append('Repositories:')
    for repo in manifest.effective_repositories():
        lines.append(f'- {repo.name} (in {repo_root / repo.name})')
    lines.extend(['', 'Make minimal, targeted changes. Follow existing code style.'])
    if manifest.for_each:
        lines.extend(['', '## Targets', '', 'Apply the instructions to each of these targets:', ''])
        for target in manifest.for_each:
            lines.append(f'- **{target.name}**: {target.context}' if target.context else f'- **{target.name}**')
        lines.extend(['', 'Process each target and include its name in any output files.'])
    if manifest.verifiers:
        lines.extend(['', '## Verification', '', 'After changes, run these and fix any errors:', ''])
        for verifier in manifest.verifiers:
            lines.append(f'- **{verifier.name}**: `{" ".join(verifier.command)}`')
        lines.extend(['', 'All verifiers must pass.'])
    if manifest.mode == 'report':
        if manifest.for_each:
            requirement = 'Write one report per target to REPORT-<target>.md in each repository, starting with YAML frontmatter.'
        else:
            requirement = 'Write your report to REPORT.md in each repository, starting with YAML frontmatter.'
        lines.extend(['', '## Output Requirements', '', requirement])
    return '\n'.join(lines) + '\n'


def build_steering_prompt(
    manifest: Manifest,
    *,
    iteration: int,
    feedback: str,
    history: tuple[ConversationTurn, ...],
) -> str:
    """Compose the follow-up prompt from the original task and every earlier turn."""
    lines = [
        f'Task: {manifest.title}',
        '',
        'Original instructions:',
        manifest.execution.instruction,
        '',
    ]
    for number, turn in enumerate(history):
        label = 'Initial run' if number == 0 else f'Steering iteration {number}'
        lines.append(f'--- {label} ---')
        if number > 0:
            lines.extend(['Reviewer feedback:', turn.prompt])
        if turn.output:
            lines.extend(['Output:', truncate(turn.output, MAX_STEERING_CONTEXT_CHARS)])
        lines.append('')
    lines.extend([
        f'--- Steering iteration {iteration} ---',
        '',
        'Additional feedback from reviewer:',
        feedback,
        '',
        'Please address the feedback above. The previous changes are still in the workspace.',
    ])
    return '\n'.join(lines) + '\n'


class AgenticExecutor:
    """Drive a coding-agent CLI with a natural-language prompt."""

    def __init__(self, *, command: str, runner: CommandRunner | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError('agent command is empty')
        self.runner = runner or CommandRunner()

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        if request.steering_prompt is None:
            prompt = build_transform_prompt(request.manifest, request.repo_root or request.workspace)
        else:
            prompt = build_steering_prompt(
                request.manifest,
                iteration=request.iteration,
                feedback=request.steering_prompt,
                history=request.history,
            )
        argv = [self.argv[0], '-p', prompt, *self.argv[1:]]
        _log.info('agentic_execution_started iteration=%s', request.iteration)
        # The coding agent never needs git push credentials.
        result = self.runner.run(
            argv,
            cwd=request.workspace,
            timeout_seconds=request.timeout_seconds,
            drop_env={'GITHUB_TOKEN'},
        )
        output = result.combined_output
        if result.ok:
            return ExecutionOutcome(ok=True, output=output)
        return ExecutionOutcome(
            ok=False,
            output=output,
            timed_out=result.timed_out,
            error=f'agent command failed with exit code {result.returncode}',
        )


class DeterministicExecutor:
    """Run a fixed command; steering feedback is exposed through the environment."""

    def __init__(self, *, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    @staticmethod
    def filtered_env(env: dict[str, str]) -> dict[str, str]:
        allowed: dict[str, str] = {}
        for key, value in env.items():
            if key.upper() in BLOCKED_ENV_VARS:
                _log.warning('blocked_env_override key=%s', key)
                continue
            allowed[key] = value
        return allowed

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        command = list(request.manifest.execution.command)
        if not command:
            return ExecutionOutcome(ok=False, output='', error='deterministic execution requires a command')
        env = self.filtered_env(dict(request.manifest.execution.env))
        if request.steering_prompt is not None:
            env['AWE_STEERING_PROMPT'] = request.steering_prompt
            env['AWE_STEERING_ITERATION'] = str(request.iteration)
        _log.info('deterministic_execution_started command=%s iteration=%s', command[0], request.iteration)
        result = self.runner.run(command, cwd=request.workspace, timeout_seconds=request.timeout_seconds, env=env)
        if result.ok:
            return ExecutionOutcome(ok=True, output=result.combined_output)
        return ExecutionOutcome(
            ok=False,
            output=result.combined_output,
            timed_out=result.timed_out,
            error=f'deterministic command failed with exit code {result.returncode}',
        )


def build_executor(
    manifest: Manifest,
    *,
    agent_command: str,
    runner: CommandRunner | None = None,
) -> TransformationExecutor:
    kind = str(manifest.execution.kind or '').strip().lower()
    if kind == ExecutionKind.DETERMINISTIC.value:
        return DeterministicExecutor(runner=runner)
    if kind and kind != ExecutionKind.AGENTIC.value:
        _log.warning('unknown_execution_kind kind=%s fallback=agentic', kind)
    return AgenticExecutor(command=agent_command, runner=runner)
