from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import subprocess
import time

from awe_fleetsteer.observability import get_logger

_log = get_logger('awe_fleetsteer.agent.commands')


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        if not self.stderr:
            return self.stdout
        if not self.stdout:
            return self.stderr
        return f'{self.stdout}\n{self.stderr}'


class CommandRunner:
    """Run argv commands inside the sandbox, killing them when the timeout expires."""

    def __init__(self, *, base_env: dict[str, str] | None = None):
        self.base_env = dict(base_env) if base_env is not None else None

    def run(
        self,
        argv: list[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        env: dict[str, str] | None = None,
        drop_env: frozenset[str] | set[str] = frozenset(),
    ) -> CommandResult:
        display_command = ' '.join(str(part) for part in argv)
        merged = dict(self.base_env if self.base_env is not None else os.environ)
        for key in drop_env:
            merged.pop(key, None)
        if env:
            merged.update(env)
        started = time.monotonic()
        try:
            completed = subprocess.run(
                [str(part) for part in argv],
                shell=False,
                cwd=str(cwd),
                env=merged,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=max(0.05, float(timeout_seconds)),
            )
        except subprocess.TimeoutExpired as exc:
            _log.warning('command_timeout command=%s timeout=%.1fs', display_command, float(timeout_seconds))
            return CommandResult(
                ok=False,
                command=display_command,
                returncode=-9,
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr) or f'command timed out after {float(timeout_seconds):.0f}s',
                timed_out=True,
            )
        except FileNotFoundError as exc:
            return CommandResult(ok=False, command=display_command, returncode=127, stdout='', stderr=str(exc))
        elapsed = time.monotonic() - started
        _log.debug('command_finished command=%s ok=%s duration=%.2fs',
                   display_command, completed.returncode == 0, elapsed)
        return CommandResult(
            ok=completed.returncode == 0,
            command=display_command,
            returncode=completed.returncode,
            stdout=completed.stdout or '',
            stderr=completed.stderr or '',
        )


def _text(value: bytes | str | None) -> str:
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f'\n... [truncated {len(text) - limit} chars]'
