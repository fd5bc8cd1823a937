from __future__ import annotations

from pathlib import Path
import re
from typing import Any, Callable, Protocol

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
import yaml

from awe_fleetsteer.agent.commands import CommandRunner
from awe_fleetsteer.agent.workspace import Workspace
from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.messages import ForEachResult, Manifest, PullRequestRef, RepoResult, ReportOutcome

_log = get_logger('awe_fleetsteer.agent.finalize')

REPORT_FILE = 'REPORT.md'

# Never staged for commit, whatever the transformation produced.
SENSITIVE_PATTERNS = (
    '.env',
    '.env.*',
    '*.key',
    '*.pem',
    'credentials*',
    '.git-credentials',
    '*.secret',
)

_PR_NUMBER = re.compile(r'/pull/(\d+)')


class Finalizer(Protocol):
    def finalize(self, manifest: Manifest, workspace: Workspace, results: list[RepoResult]) -> list[RepoResult]:
        ...


class FinalizeError(RuntimeError):
    pass


class PullRequestFinalizer:
    """Branch, commit, push and open a pull request for every repository with changes."""

    def __init__(self, *, runner: CommandRunner, remaining: Callable[[], float]):
        self.runner = runner
        self.remaining = remaining

    def _run(self, argv: list[str], cwd: Path) -> str:
        result = self.runner.run(argv, cwd=cwd, timeout_seconds=self.remaining())
        if not result.ok:
            raise FinalizeError(f'{" ".join(argv[:3])} failed: {result.combined_output.strip()[:500]}')
        return result.stdout

    def finalize(self, manifest: Manifest, workspace: Workspace, results: list[RepoResult]) -> list[RepoResult]:
        settings = manifest.pull_request
        if settings is None:
            _log.info('pull_request_skipped reason=not_configured')
            return results
        prefix = settings.branch_prefix or f'auto/{manifest.task_id}'
        title = settings.title or f'fix: {manifest.title}'
        body = settings.body or f'Automated change for task {manifest.task_id} (group {manifest.group}).'
        finalized: list[RepoResult] = []
        for result in results:
            if not result.files_modified:
                finalized.append(result)
                continue
            branch = f'{prefix}-{result.name}'
            cwd = workspace.repo_path(result.name)
            try:
                self._run(['git', 'checkout', '-b', branch], cwd)
                excludes = [f':(exclude){pattern}' for pattern in SENSITIVE_PATTERNS]
                self._run(['git', 'add', '--all', '--', '.', *excludes], cwd)
                self._run(['git', 'commit', '-m', title], cwd)
                self._run(['git', 'push', 'origin', branch], cwd)
                argv = ['gh', 'pr', 'create', '--title', title, '--body', body, '--head', branch]
                for label in settings.labels:
                    argv.extend(['--label', label])
                for reviewer in settings.reviewers:
                    argv.extend(['--reviewer', reviewer])
                url = self._run(argv, cwd).strip().splitlines()[-1:] or ['']
            except FinalizeError as exc:
                _log.error('pull_request_failed repo=%s error=%s', result.name, exc)
                finalized.append(result.model_copy(update={'error': f'PR creation failed: {exc}'}))
                continue
            match = _PR_NUMBER.search(url[0])
            ref = PullRequestRef(
                url=url[0],
                number=int(match.group(1)) if match else 0,
                branch_name=branch,
                title=title,
            )
            _log.info('pull_request_created repo=%s url=%s', result.name, ref.url)
            finalized.append(result.model_copy(update={'pull_request': ref}))
        return finalized


def split_frontmatter(raw: str) -> tuple[dict[str, Any] | None, str, list[str]]:
    """Split a markdown document into (frontmatter, body, errors)."""
    text = raw.lstrip('\ufeff')
    if not text.startswith('---'):
        return None, raw, []
    lines = text.splitlines(keepends=True)
    if lines[0].strip() != '---':
        return None, raw, []
    for index in range(1, len(lines)):
        if lines[index].strip() in {'---', '...'}:
            header = ''.join(lines[1:index])
            body = ''.join(lines[index + 1:]).lstrip('\n')
            try:
                data = yaml.safe_load(header)
            except yaml.YAMLError as exc:
                return None, body, [f'invalid YAML frontmatter: {exc}']
            if data is None:
                return {}, body, []
            if not isinstance(data, dict):
                return None, body, ['frontmatter must be a mapping']
            return data, body, []
    return None, raw, ['unterminated frontmatter block']


def validate_frontmatter(frontmatter: dict[str, Any] | None, schema: dict[str, Any]) -> list[str]:
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        return [f'invalid report schema: {exc.message}']
    if frontmatter is None:
        return ['(root): frontmatter is missing']
    validator = Draft202012Validator(schema)
    errors: list[str] = []
    for error in sorted(validator.iter_errors(frontmatter), key=lambda item: [str(part) for part in item.absolute_path]):
        path = '.'.join(str(part) for part in error.absolute_path) or '(root)'
        errors.append(f'{path}: {error.message}')
    return errors


def for_each_report_file(target: str) -> str:
    return f'REPORT-{target}.md'


def read_report(path: Path, schema: dict[str, Any] | None) -> ReportOutcome | None:
    """Parse one report file; None when the agent did not write it."""
    try:
        raw = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        return None
    frontmatter, body, errors = split_frontmatter(raw)
    if schema and not errors:
        errors = validate_frontmatter(frontmatter, schema)
    return ReportOutcome(frontmatter=frontmatter, body=body, raw=raw, validation_errors=errors)


class ReportFinalizer:
    """Collect REPORT.md, or one REPORT-<target>.md per for_each target, and validate the frontmatter."""

    def finalize(self, manifest: Manifest, workspace: Workspace, results: list[RepoResult]) -> list[RepoResult]:
        finalized: list[RepoResult] = []
        for result in results:
            repo_dir = workspace.repo_path(result.name)
            if manifest.for_each:
                finalized.append(self._collect_targets(manifest, repo_dir, result))
                continue
            report = read_report(repo_dir / REPORT_FILE, manifest.report_schema)
            if report is None:
                finalized.append(result.model_copy(update={'error': f'{REPORT_FILE} was not produced'}))
                continue
            _log.info('report_collected repo=%s validation_errors=%s', result.name, len(report.validation_errors))
            finalized.append(result.model_copy(update={'report': report}))
        return finalized

    def _collect_targets(self, manifest: Manifest, repo_dir: Path, result: RepoResult) -> RepoResult:
        entries: list[ForEachResult] = []
        for target in manifest.for_each:
            filename = for_each_report_file(target.name)
            report = read_report(repo_dir / filename, manifest.report_schema)
            if report is None:
                entries.append(ForEachResult(target=target, error=f'{filename} was not produced'))
            else:
                entries.append(ForEachResult(target=target, report=report))
        missing = sum(1 for entry in entries if entry.report is None)
        _log.info('target_reports_collected repo=%s targets=%s missing=%s', result.name, len(entries), missing)
        update: dict[str, Any] = {'for_each_results': entries}
        if missing == len(entries):
            update['error'] = 'no target reports were produced'
        return result.model_copy(update=update)


def build_finalizer(manifest: Manifest, *, runner: CommandRunner, remaining: Callable[[], float]) -> Finalizer:
    if manifest.mode == 'report':
        return ReportFinalizer()
    return PullRequestFinalizer(runner=runner, remaining=remaining)
