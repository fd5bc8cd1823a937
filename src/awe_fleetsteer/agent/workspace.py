from __future__ import annotations

from pathlib import Path
import shlex
from typing import Callable

from awe_fleetsteer.agent.commands import CommandResult, CommandRunner
from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.messages import MAX_DIFF_LINES_PER_FILE, DiffEntry, GitIdentity, ManifestRepo

_log = get_logger('awe_fleetsteer.agent.workspace')

# Reads the token from the environment at push time so it never lands on disk.
_CREDENTIAL_HELPER = '!f() { echo username=x-access-token; echo "password=$GITHUB_TOKEN"; }; f'


class WorkspaceError(RuntimeError):
    def __init__(self, message: str, *, result: CommandResult | None = None):
        super().__init__(message)
        self.result = result


def parse_porcelain(output: str) -> list[str]:
    """Paths from ``git status --porcelain``; renames report the new path."""
    files: list[str] = []
    for line in output.splitlines():
        if len(line) <= 3:
            continue
        entry = line[3:].strip()
        if ' -> ' in entry:
            entry = entry.split(' -> ', 1)[1]
        if len(entry) >= 2 and entry.startswith('"') and entry.endswith('"'):
            entry = entry[1:-1]
        if entry:
            files.append(entry)
    return files


def parse_unified_diff(output: str, *, max_lines: int = MAX_DIFF_LINES_PER_FILE) -> list[DiffEntry]:
    if not output.strip():
        return []
    entries: list[DiffEntry] = []
    for chunk in output.split('diff --git ')[1:]:
        header, _, _ = chunk.partition('\n')
        fields = header.split()
        if len(fields) < 2:
            continue
        path = fields[1][2:] if fields[1].startswith('b/') else fields[1]
        status = 'modified'
        if 'new file mode' in chunk:
            status = 'added'
        elif 'deleted file mode' in chunk:
            status = 'deleted'
        additions = 0
        deletions = 0
        for line in chunk.splitlines():
            if line.startswith('+++') or line.startswith('---'):
                continue
            if line.startswith('+'):
                additions += 1
            elif line.startswith('-'):
                deletions += 1
        text = ('diff --git ' + chunk).rstrip('\n')
        lines = text.split('\n')
        if len(lines) > max_lines:
            text = '\n'.join(lines[:max_lines]) + '\n... [truncated]'
        entries.append(DiffEntry(path=path, status=status, additions=additions, deletions=deletions, diff=text))
    return entries


class Workspace:
    """Git checkouts for one group, rooted at the sandbox workspace directory.

    With a transformation repository, that checkout sits beside ``repo_subdir``,
    which holds the repositories being changed.
    """

    def __init__(
        self,
        root: Path,
        *,
        runner: CommandRunner,
        remaining: Callable[[], float],
        repo_subdir: str = '',
    ):
        self.root = Path(root)
        self.repo_root = self.root / repo_subdir if repo_subdir else self.root
        self.runner = runner
        self.remaining = remaining

    def repo_path(self, name: str) -> Path:
        return self.repo_root / name

    def _git(self, cwd: Path, *args: str) -> CommandResult:
        return self.runner.run(['git', *args], cwd=cwd, timeout_seconds=self.remaining())

    def _git_checked(self, cwd: Path, *args: str) -> CommandResult:
        result = self._git(cwd, *args)
        if not result.ok:
            raise WorkspaceError(f'git {" ".join(args)} failed: {result.stderr.strip()}', result=result)
        return result

    def _clone_into(self, repo: ManifestRepo, dest: Path, *, git: GitIdentity, github_token: bool) -> None:
        depth = git.clone_depth if git.clone_depth > 0 else 50
        branch = repo.branch or 'main'
        _log.info('clone_started repo=%s branch=%s depth=%s', repo.name, branch, depth)
        dest.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run(
            ['git', 'clone', '--branch', branch, '--depth', str(depth), repo.url, str(dest)],
            cwd=dest.parent,
            timeout_seconds=self.remaining(),
        )
        if not result.ok:
            raise WorkspaceError(f'clone {repo.name} failed: {result.stderr.strip()}', result=result)
        self._git_checked(dest, 'config', 'user.name', git.user_name)
        self._git_checked(dest, 'config', 'user.email', git.user_email)
        if github_token:
            self._git_checked(dest, 'config', 'credential.helper', _CREDENTIAL_HELPER)

    def clone(self, repo: ManifestRepo, *, git: GitIdentity, github_token: bool = False) -> None:
        self._clone_into(repo, self.repo_path(repo.name), git=git, github_token=github_token)

    def transformation_path(self, name: str) -> Path:
        return self.root / name

    def clone_transformation(self, repo: ManifestRepo, *, git: GitIdentity) -> None:
        """Check out the repository the agent runs from and make room for the targets."""
        self._clone_into(repo, self.transformation_path(repo.name), git=git, github_token=False)
        self.repo_root.mkdir(parents=True, exist_ok=True)

    def run_setup(self, repo: ManifestRepo, *, cwd: Path | None = None) -> None:
        workdir = cwd if cwd is not None else self.repo_path(repo.name)
        for command in repo.setup:
            _log.info('setup_command repo=%s command=%s', repo.name, command)
            result = self.runner.run(['sh', '-c', command], cwd=workdir, timeout_seconds=self.remaining())
            if not result.ok:
                raise WorkspaceError(
                    f'setup {repo.name} {shlex.quote(command)} failed: {result.combined_output.strip()[:500]}',
                    result=result,
                )

    def modified_files(self, repo: str) -> list[str]:
        result = self._git(self.repo_path(repo), 'status', '--porcelain')
        if not result.ok:
            _log.warning('git_status_failed repo=%s', repo)
            return []
        return parse_porcelain(result.stdout)

    def diffs(self, repo: str) -> list[DiffEntry]:
        cwd = self.repo_path(repo)
        # Intent-to-add makes untracked files show up in the diff without staging content.
        self._git(cwd, 'add', '--intent-to-add', '.')
        result = self._git(cwd, 'diff', 'HEAD')
        if not result.ok:
            _log.warning('git_diff_failed repo=%s', repo)
            return []
        return parse_unified_diff(result.stdout)
