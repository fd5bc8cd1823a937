from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
import unicodedata


class TaskMode(str, Enum):
    TRANSFORM = 'transform'
    REPORT = 'report'


class ExecutionKind(str, Enum):
    AGENTIC = 'agentic'
    DETERMINISTIC = 'deterministic'


class GroupStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SKIPPED = 'skipped'

    @property
    def is_terminal(self) -> bool:
        return self in {GroupStatus.SUCCEEDED, GroupStatus.FAILED, GroupStatus.SKIPPED}


class TaskStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    PARTIAL = 'partial'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.PARTIAL, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class FailureAction(str, Enum):
    PAUSE = 'pause'
    ABORT = 'abort'


DEFAULT_BRANCH = 'main'
DEFAULT_TIMEOUT_SECONDS = 30 * 60
DEFAULT_MAX_STEERING_ITERATIONS = 5
DEFAULT_MAX_PARALLEL = 5
DEFAULT_GROUP_NAME = 'default'
TARGETS_DIR = 'targets'

# Variables a deterministic command may not override inside the sandbox.
BLOCKED_ENV_VARS = frozenset(
    {
        'PATH',
        'HOME',
        'USER',
        'SHELL',
        'LD_PRELOAD',
        'LD_LIBRARY_PATH',
        'ANTHROPIC_API_KEY',
        'GITHUB_TOKEN',
    }
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def repo_name_from_url(url: str) -> str:
    """Derive a checkout directory name, e.g. https://github.com/org/repo.git -> repo."""
    text = str(url or '').strip().rstrip('/')
    if not text:
        return ''
    name = text.split('/')[-1]
    if ':' in name:
        name = name.split(':')[-1]
    if name.endswith('.git'):
        name = name[:-4]
    return name


def validate_safe_name(name: str, kind: str) -> None:
    """Reject names that would escape their directory when joined into a path."""
    text = str(name or '')
    if not text.strip():
        raise ValueError(f'{kind} name is required')
    if '/' in text or '\\' in text:
        raise ValueError(f"{kind} name {text!r} must not contain path separators")
    if '..' in text:
        raise ValueError(f"{kind} name {text!r} must not contain '..'")
    if any(unicodedata.category(ch) == 'Cc' for ch in text):
        raise ValueError(f'{kind} name {text!r} must not contain control characters')


@dataclass(frozen=True)
class Repository:
    url: str
    branch: str = DEFAULT_BRANCH
    name: str = ''
    setup: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, 'name', repo_name_from_url(self.url))
        if not self.branch:
            object.__setattr__(self, 'branch', DEFAULT_BRANCH)

    def to_dict(self) -> dict:
        return {'url': self.url, 'branch': self.branch, 'name': self.name, 'setup': list(self.setup)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Repository':
        return cls(
            url=str(data.get('url') or '').strip(),
            branch=str(data.get('branch') or DEFAULT_BRANCH).strip(),
            name=str(data.get('name') or '').strip(),
            setup=tuple(str(item) for item in (data.get('setup') or ())),
        )


@dataclass(frozen=True)
class Verifier:
    name: str
    command: tuple[str, ...]

    def to_dict(self) -> dict:
        return {'name': self.name, 'command': list(self.command)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Verifier':
        return cls(
            name=str(data.get('name') or '').strip(),
            command=tuple(str(part) for part in (data.get('command') or ())),
        )


@dataclass(frozen=True)
class ExecutionSpec:
    """Agentic (natural-language instruction) or deterministic (fixed command) execution."""

    kind: ExecutionKind
    instruction: str = ''
    command: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    verifiers: tuple[Verifier, ...] = ()

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'instruction': self.instruction,
            'command': list(self.command),
            'env': dict(self.env),
            'verifiers': [verifier.to_dict() for verifier in self.verifiers],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ExecutionSpec':
        return cls(
            kind=ExecutionKind(str(data.get('kind') or ExecutionKind.AGENTIC.value).strip().lower()),
            instruction=str(data.get('instruction') or ''),
            command=tuple(str(part) for part in (data.get('command') or ())),
            env={str(k): str(v) for k, v in dict(data.get('env') or {}).items()},
            verifiers=tuple(Verifier.from_dict(item) for item in (data.get('verifiers') or ())),
        )


@dataclass(frozen=True)
class FailurePolicy:
    threshold_percent: float
    action: FailureAction = FailureAction.PAUSE

    def to_dict(self) -> dict:
        return {'threshold_percent': self.threshold_percent, 'action': self.action.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FailurePolicy':
        return cls(
            threshold_percent=float(data.get('threshold_percent', 0)),
            action=FailureAction(str(data.get('action') or FailureAction.PAUSE.value).strip().lower()),
        )


@dataclass(frozen=True)
class PullRequestSpec:
    branch_prefix: str | None = None
    title: str | None = None
    body: str | None = None
    labels: tuple[str, ...] = ()
    reviewers: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            'branch_prefix': self.branch_prefix,
            'title': self.title,
            'body': self.body,
            'labels': list(self.labels),
            'reviewers': list(self.reviewers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PullRequestSpec':
        return cls(
            branch_prefix=(str(data['branch_prefix']).strip() if data.get('branch_prefix') else None),
            title=(str(data['title']) if data.get('title') else None),
            body=(str(data['body']) if data.get('body') else None),
            labels=tuple(str(item) for item in (data.get('labels') or ())),
            reviewers=tuple(str(item) for item in (data.get('reviewers') or ())),
        )


@dataclass(frozen=True)
class ForEachTarget:
    """One item a report-mode run covers inside every repository, e.g. a service or module."""

    name: str
    context: str = ''

    def to_dict(self) -> dict:
        return {'name': self.name, 'context': self.context}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ForEachTarget':
        return cls(name=str(data.get('name') or '').strip(), context=str(data.get('context') or ''))


@dataclass(frozen=True)
class Group:
    name: str
    repositories: tuple[Repository, ...]

    def to_dict(self) -> dict:
        return {'name': self.name, 'repositories': [repo.to_dict() for repo in self.repositories]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Group':
        return cls(
            name=str(data.get('name') or '').strip(),
            repositories=tuple(Repository.from_dict(item) for item in (data.get('repositories') or ())),
        )


@dataclass(frozen=True)
class Task:
    task_id: str
    title: str
    mode: TaskMode
    groups: tuple[Group, ...]
    execution: ExecutionSpec
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    require_approval: bool = False
    max_steering_iterations: int = DEFAULT_MAX_STEERING_ITERATIONS
    max_parallel: int = DEFAULT_MAX_PARALLEL
    failure_policy: FailurePolicy | None = None
    pull_request: PullRequestSpec | None = None
    report_schema: dict | None = None
    # When set, the agent runs from this checkout and group repositories become
    # targets cloned under targets/.
    transformation: Repository | None = None
    for_each: tuple[ForEachTarget, ...] = ()
    retry_of: str | None = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def group(self, name: str) -> Group:
        for item in self.groups:
            if item.name == name:
                return item
        raise KeyError(name)

    @property
    def group_names(self) -> list[str]:
        return [item.name for item in self.groups]

    def validate(self) -> None:
        validate_safe_name(self.task_id, 'task')
        if not str(self.title or '').strip():
            raise ValueError('title is required')
        if not self.groups:
            raise ValueError('at least one group is required')
        seen_groups: set[str] = set()
        for group in self.groups:
            validate_safe_name(group.name, 'group')
            if group.name in seen_groups:
                raise ValueError(f'duplicate group name {group.name!r}')
            seen_groups.add(group.name)
            if not group.repositories:
                raise ValueError(f'group {group.name!r} has no repositories')
            seen_repos: set[str] = set()
            for repo in group.repositories:
                if not repo.url:
                    raise ValueError(f'group {group.name!r} has a repository without url')
                validate_safe_name(repo.name, 'repository')
                if repo.name in seen_repos:
                    raise ValueError(f'duplicate repository name {repo.name!r} in group {group.name!r}')
                seen_repos.add(repo.name)
        if self.transformation is not None:
            if not self.transformation.url:
                raise ValueError('transformation repository requires a url')
            validate_safe_name(self.transformation.name, 'transformation')
            if self.transformation.name == TARGETS_DIR:
                raise ValueError(f'transformation name {TARGETS_DIR!r} is reserved for target checkouts')
        if self.for_each:
            if self.mode != TaskMode.REPORT:
                raise ValueError('for_each targets require report mode')
            seen_targets: set[str] = set()
            for target in self.for_each:
                validate_safe_name(target.name, 'for_each target')
                if target.name in seen_targets:
                    raise ValueError(f'duplicate for_each target {target.name!r}')
                seen_targets.add(target.name)
        execution = self.execution
        if execution.kind == ExecutionKind.AGENTIC and not execution.instruction.strip():
            raise ValueError('agentic execution requires an instruction')
        if execution.kind == ExecutionKind.DETERMINISTIC and not execution.command:
            raise ValueError('deterministic execution requires a command')
        blocked = sorted(key for key in execution.env if key.upper() in BLOCKED_ENV_VARS)
        if blocked:
            raise ValueError(f'environment override not allowed: {", ".join(blocked)}')
        for verifier in execution.verifiers:
            validate_safe_name(verifier.name, 'verifier')
            if not verifier.command:
                raise ValueError(f'verifier {verifier.name!r} has no command')
        if int(self.timeout_seconds) < 1:
            raise ValueError('timeout_seconds must be positive')
        if int(self.max_parallel) < 1:
            raise ValueError('max_parallel must be at least 1')
        if int(self.max_steering_iterations) < 0:
            raise ValueError('max_steering_iterations must not be negative')
        if self.failure_policy is not None:
            percent = float(self.failure_policy.threshold_percent)
            if percent < 0 or percent > 100:
                raise ValueError('threshold_percent must be between 0 and 100')

    def to_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'title': self.title,
            'mode': self.mode.value,
            'groups': [group.to_dict() for group in self.groups],
            'execution': self.execution.to_dict(),
            'timeout_seconds': int(self.timeout_seconds),
            'require_approval': bool(self.require_approval),
            'max_steering_iterations': int(self.max_steering_iterations),
            'max_parallel': int(self.max_parallel),
            'failure_policy': (self.failure_policy.to_dict() if self.failure_policy else None),
            'pull_request': (self.pull_request.to_dict() if self.pull_request else None),
            'report_schema': self.report_schema,
            'transformation': (self.transformation.to_dict() if self.transformation else None),
            'for_each': [target.to_dict() for target in self.for_each],
            'retry_of': self.retry_of,
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Task':
        policy = data.get('failure_policy')
        pull_request = data.get('pull_request')
        transformation = data.get('transformation')
        groups = tuple(Group.from_dict(item) for item in (data.get('groups') or ()))
        if not groups and data.get('targets'):
            # A flat target list is one implicit group.
            groups = (Group.from_dict({'name': DEFAULT_GROUP_NAME, 'repositories': data['targets']}),)
        kwargs: dict[str, Any] = {}
        if data.get('created_at'):
            kwargs['created_at'] = str(data['created_at'])
        return cls(
            task_id=str(data.get('task_id') or '').strip(),
            title=str(data.get('title') or '').strip(),
            mode=TaskMode(str(data.get('mode') or TaskMode.TRANSFORM.value).strip().lower()),
            groups=groups,
            execution=ExecutionSpec.from_dict(data.get('execution') or {}),
            timeout_seconds=int(data.get('timeout_seconds') or DEFAULT_TIMEOUT_SECONDS),
            require_approval=bool(data.get('require_approval', False)),
            max_steering_iterations=int(
                data['max_steering_iterations']
                if data.get('max_steering_iterations') is not None
                else DEFAULT_MAX_STEERING_ITERATIONS
            ),
            max_parallel=int(data.get('max_parallel') or DEFAULT_MAX_PARALLEL),
            failure_policy=(FailurePolicy.from_dict(policy) if policy else None),
            pull_request=(PullRequestSpec.from_dict(pull_request) if pull_request else None),
            report_schema=(dict(data['report_schema']) if data.get('report_schema') else None),
            transformation=(Repository.from_dict(transformation) if transformation else None),
            for_each=tuple(ForEachTarget.from_dict(item) for item in (data.get('for_each') or ())),
            retry_of=(str(data['retry_of']) if data.get('retry_of') else None),
            **kwargs,
        )


@dataclass(frozen=True)
class SteeringIteration:
    iteration: int
    prompt: str
    issued_at: str
    files_modified: tuple[str, ...] = ()
    output: str = ''

    def to_dict(self) -> dict:
        return {
            'iteration': self.iteration,
            'prompt': self.prompt,
            'issued_at': self.issued_at,
            'files_modified': list(self.files_modified),
            'output': self.output,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SteeringIteration':
        return cls(
            iteration=int(data.get('iteration') or 0),
            prompt=str(data.get('prompt') or ''),
            issued_at=str(data.get('issued_at') or ''),
            files_modified=tuple(str(item) for item in (data.get('files_modified') or ())),
            output=str(data.get('output') or ''),
        )


@dataclass(frozen=True)
class SteeringState:
    """Per-group steering bookkeeping; history is append-only and frozen once closed."""

    max_iterations: int = DEFAULT_MAX_STEERING_ITERATIONS
    current_iteration: int = 0
    history: tuple[SteeringIteration, ...] = ()
    last_rejection: str | None = None
    closed: bool = False

    @property
    def limit_reached(self) -> bool:
        return self.current_iteration >= self.max_iterations

    def record(self, entry: SteeringIteration) -> 'SteeringState':
        if self.closed:
            raise ValueError('steering state is closed')
        if entry.iteration <= self.current_iteration:
            raise ValueError(f'steering iteration {entry.iteration} is not after {self.current_iteration}')
        return replace(
            self,
            current_iteration=entry.iteration,
            history=self.history + (entry,),
            last_rejection=None,
        )

    def reject(self, reason: str) -> 'SteeringState':
        if self.closed:
            raise ValueError('steering state is closed')
        return replace(self, last_rejection=reason)

    def close(self) -> 'SteeringState':
        return replace(self, closed=True)

    def to_dict(self) -> dict:
        return {
            'max_iterations': self.max_iterations,
            'current_iteration': self.current_iteration,
            'history': [entry.to_dict() for entry in self.history],
            'last_rejection': self.last_rejection,
            'closed': self.closed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SteeringState':
        return cls(
            max_iterations=int(data.get('max_iterations', DEFAULT_MAX_STEERING_ITERATIONS)),
            current_iteration=int(data.get('current_iteration') or 0),
            history=tuple(SteeringIteration.from_dict(item) for item in (data.get('history') or ())),
            last_rejection=(str(data['last_rejection']) if data.get('last_rejection') else None),
            closed=bool(data.get('closed', False)),
        )


@dataclass(frozen=True)
class GroupOutcome:
    group: str
    status: GroupStatus
    failure_kind: str | None = None
    diagnostic: str | None = None
    sandbox_id: str | None = None
    repositories: tuple[dict, ...] = ()
    steering_history: tuple[dict, ...] = ()
    completed_at: str | None = None

    def to_dict(self) -> dict:
        return {
            'group': self.group,
            'status': self.status.value,
            'failure_kind': self.failure_kind,
            'diagnostic': self.diagnostic,
            'sandbox_id': self.sandbox_id,
            'repositories': [dict(item) for item in self.repositories],
            'steering_history': [dict(item) for item in self.steering_history],
            'completed_at': self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'GroupOutcome':
        return cls(
            group=str(data.get('group') or ''),
            status=GroupStatus(str(data.get('status') or GroupStatus.PENDING.value)),
            failure_kind=data.get('failure_kind'),
            diagnostic=data.get('diagnostic'),
            sandbox_id=data.get('sandbox_id'),
            repositories=tuple(dict(item) for item in (data.get('repositories') or ())),
            steering_history=tuple(dict(item) for item in (data.get('steering_history') or ())),
            completed_at=data.get('completed_at'),
        )


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    status: TaskStatus
    mode: TaskMode
    groups: tuple[GroupOutcome, ...]
    retry_of: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def failed_groups(self) -> list[str]:
        return [item.group for item in self.groups if item.status == GroupStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'status': self.status.value,
            'mode': self.mode.value,
            'groups': [item.to_dict() for item in self.groups],
            'retry_of': self.retry_of,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TaskResult':
        return cls(
            task_id=str(data.get('task_id') or ''),
            status=TaskStatus(str(data.get('status') or TaskStatus.PENDING.value)),
            mode=TaskMode(str(data.get('mode') or TaskMode.TRANSFORM.value)),
            groups=tuple(GroupOutcome.from_dict(item) for item in (data.get('groups') or ())),
            retry_of=data.get('retry_of'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
        )


def summarize_task_status(statuses: Mapping[str, GroupStatus], *, cancelled: bool = False) -> TaskStatus:
    if cancelled:
        return TaskStatus.CANCELLED
    values = list(statuses.values())
    succeeded = sum(1 for value in values if value == GroupStatus.SUCCEEDED)
    if values and succeeded == len(values):
        return TaskStatus.COMPLETED
    if succeeded > 0:
        return TaskStatus.PARTIAL
    return TaskStatus.FAILED


@dataclass(frozen=True)
class ExecutionProgress:
    total_groups: int
    completed_groups: int
    succeeded_groups: int
    failed_groups: int
    skipped_groups: int
    running_groups: int
    pending_groups: int
    failure_percent: float
    paused: bool = False
    paused_reason: str | None = None
    failed_group_names: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            'total_groups': self.total_groups,
            'completed_groups': self.completed_groups,
            'succeeded_groups': self.succeeded_groups,
            'failed_groups': self.failed_groups,
            'skipped_groups': self.skipped_groups,
            'running_groups': self.running_groups,
            'pending_groups': self.pending_groups,
            'failure_percent': self.failure_percent,
            'paused': self.paused,
            'paused_reason': self.paused_reason,
            'failed_group_names': list(self.failed_group_names),
        }


def compute_progress(
    statuses: Mapping[str, GroupStatus],
    *,
    paused: bool = False,
    paused_reason: str | None = None,
) -> ExecutionProgress:
    """Derive a progress view from group statuses; completed means finished (succeeded or failed)."""
    counts = {status: 0 for status in GroupStatus}
    failed_names: list[str] = []
    for name, status in statuses.items():
        counts[status] += 1
        if status == GroupStatus.FAILED:
            failed_names.append(name)
    completed = counts[GroupStatus.SUCCEEDED] + counts[GroupStatus.FAILED]
    percent = (counts[GroupStatus.FAILED] / completed * 100.0) if completed else 0.0
    return ExecutionProgress(
        total_groups=len(statuses),
        completed_groups=completed,
        succeeded_groups=counts[GroupStatus.SUCCEEDED],
        failed_groups=counts[GroupStatus.FAILED],
        skipped_groups=counts[GroupStatus.SKIPPED],
        running_groups=counts[GroupStatus.RUNNING],
        pending_groups=counts[GroupStatus.PENDING],
        failure_percent=round(percent, 2),
        paused=bool(paused),
        paused_reason=(paused_reason if paused else None),
        failed_group_names=tuple(failed_names),
    )


def build_retry_task(original: Task, result: TaskResult, *, task_id: str) -> Task:
    """Derive a new task scoped to exactly the groups that failed in ``result``."""
    failed = set(result.failed_groups)
    if not failed:
        raise ValueError(f'task {original.task_id} has no failed groups to retry')
    groups = tuple(group for group in original.groups if group.name in failed)
    return replace(
        original,
        task_id=task_id,
        groups=groups,
        retry_of=original.task_id,
        created_at=utc_now().isoformat(),
    )
