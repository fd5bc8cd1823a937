"""Wire schemas for the controller <-> sandbox agent file protocol.

Four JSON documents live in the sandbox protocol directory:

    manifest.json  - controller -> agent, task definition, written once
    status.json    - agent -> controller, lightweight phase indicator, polled
    result.json    - agent -> controller, full structured result
    steering.json  - controller -> agent, human instruction, removed once claimed

Unknown fields are ignored on read so either side can be upgraded first.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from awe_fleetsteer.domain.models import TARGETS_DIR, Task

MANIFEST_FILE = 'manifest.json'
STATUS_FILE = 'status.json'
RESULT_FILE = 'result.json'
STEERING_FILE = 'steering.json'

MAX_DIFF_LINES_PER_FILE = 1000
MAX_OUTPUT_CHARS = 10_000
DEFAULT_CLONE_DEPTH = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    IDLE = 'idle'
    INITIALIZING = 'initializing'
    CLONING = 'cloning'
    EXECUTING = 'executing'
    VERIFYING = 'verifying'
    AWAITING_INPUT = 'awaiting_input'
    FINALIZING = 'finalizing'
    COMPLETE = 'complete'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in {Phase.COMPLETE, Phase.FAILED, Phase.CANCELLED}


class SteeringAction(str, Enum):
    STEER = 'steer'
    APPROVE = 'approve'
    REJECT = 'reject'
    CANCEL = 'cancel'


class _Message(BaseModel):
    model_config = ConfigDict(extra='ignore')


class ManifestRepo(_Message):
    url: str
    branch: str = 'main'
    name: str
    setup: list[str] = Field(default_factory=list)


class ForEachTarget(_Message):
    name: str
    context: str = ''


class ManifestVerifier(_Message):
    name: str
    command: list[str]


class ManifestExecution(_Message):
    kind: str = 'agentic'
    instruction: str = ''
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class ManifestPullRequest(_Message):
    branch_prefix: str | None = None
    title: str | None = None
    body: str | None = None
    labels: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)


class GitIdentity(_Message):
    user_name: str = 'fleetsteer'
    user_email: str = 'fleetsteer@localhost'
    clone_depth: int = DEFAULT_CLONE_DEPTH


class Manifest(_Message):
    task_id: str
    group: str
    mode: str = 'transform'
    title: str = ''
    repositories: list[ManifestRepo] = Field(default_factory=list)
    transformation: ManifestRepo | None = None
    targets: list[ManifestRepo] = Field(default_factory=list)
    for_each: list[ForEachTarget] = Field(default_factory=list)
    execution: ManifestExecution
    verifiers: list[ManifestVerifier] = Field(default_factory=list)
    timeout_seconds: int = 1800
    require_approval: bool = False
    max_steering_iterations: int = 5
    approval_timeout_seconds: int = 24 * 3600
    pull_request: ManifestPullRequest | None = None
    report_schema: dict[str, Any] | None = None
    git: GitIdentity = Field(default_factory=GitIdentity)

    def effective_repositories(self) -> list[ManifestRepo]:
        """Repositories the agent changes: the targets when a transformation repo drives the run."""
        if self.transformation is not None and self.targets:
            return self.targets
        return self.repositories

    @property
    def repo_subdir(self) -> str:
        return TARGETS_DIR if self.transformation is not None else ''

    @classmethod
    def for_group(
        cls,
        task: Task,
        group_name: str,
        *,
        git: GitIdentity | None = None,
        approval_timeout_seconds: int = 24 * 3600,
    ) -> 'Manifest':
        group = task.group(group_name)
        pull_request = None
        if task.pull_request is not None:
            pull_request = ManifestPullRequest(**task.pull_request.to_dict())
        repositories = [ManifestRepo(**repo.to_dict()) for repo in group.repositories]
        transformation = None
        if task.transformation is not None:
            transformation = ManifestRepo(**task.transformation.to_dict())
        return cls(
            task_id=task.task_id,
            group=group.name,
            mode=task.mode.value,
            title=task.title,
            repositories=([] if transformation else repositories),
            transformation=transformation,
            targets=(repositories if transformation else []),
            for_each=[ForEachTarget(**target.to_dict()) for target in task.for_each],
            execution=ManifestExecution(
                kind=task.execution.kind.value,
                instruction=task.execution.instruction,
                command=list(task.execution.command),
                env=dict(task.execution.env),
            ),
            verifiers=[ManifestVerifier(**verifier.to_dict()) for verifier in task.execution.verifiers],
            timeout_seconds=int(task.timeout_seconds),
            require_approval=bool(task.require_approval),
            max_steering_iterations=int(task.max_steering_iterations),
            approval_timeout_seconds=int(approval_timeout_seconds),
            pull_request=pull_request,
            report_schema=task.report_schema,
            git=git or GitIdentity(),
        )


class StatusProgress(_Message):
    completed_repos: int = 0
    total_repos: int = 0


class AgentStatus(_Message):
    phase: Phase
    step: str | None = None
    message: str | None = None
    progress: StatusProgress | None = None
    iteration: int = 0
    limit_reached: bool = False
    updated_at: datetime = Field(default_factory=_now)


class VerifierOutcome(_Message):
    name: str
    success: bool
    exit_code: int
    output: str = ''


class DiffEntry(_Message):
    path: str
    status: str
    additions: int = 0
    deletions: int = 0
    diff: str = ''


class ReportOutcome(_Message):
    frontmatter: dict[str, Any] | None = None
    body: str = ''
    raw: str = ''
    validation_errors: list[str] = Field(default_factory=list)


class ForEachResult(_Message):
    target: ForEachTarget
    report: ReportOutcome | None = None
    error: str | None = None


class PullRequestRef(_Message):
    url: str
    number: int = 0
    branch_name: str
    title: str


class RepoResult(_Message):
    name: str
    status: str = 'success'
    files_modified: list[str] = Field(default_factory=list)
    diffs: list[DiffEntry] = Field(default_factory=list)
    verifier_results: list[VerifierOutcome] = Field(default_factory=list)
    report: ReportOutcome | None = None
    for_each_results: list[ForEachResult] = Field(default_factory=list)
    pull_request: PullRequestRef | None = None
    error: str | None = None


class SteeringRecord(_Message):
    iteration: int
    prompt: str
    timestamp: datetime = Field(default_factory=_now)
    files_modified: list[str] = Field(default_factory=list)
    output: str = ''


class AgentResult(_Message):
    status: Phase
    repositories: list[RepoResult] = Field(default_factory=list)
    agent_output: str = ''
    steering_history: list[SteeringRecord] = Field(default_factory=list)
    iteration: int = 0
    error: str | None = None
    failure_kind: str | None = None
    finalized: bool = False
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def verifiers_passed(self) -> bool:
        return all(
            outcome.success
            for repo in self.repositories
            for outcome in repo.verifier_results
        )


class SteeringInstruction(_Message):
    action: SteeringAction
    prompt: str = ''
    iteration: int = 0
    issued_at: datetime = Field(default_factory=_now)
