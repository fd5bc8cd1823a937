from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from awe_fleetsteer.protocol.exchange import FileStore


class SandboxPhase(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class ProvisionOptions:
    task_id: str
    group: str
    env: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 1800


@dataclass(frozen=True)
class SandboxState:
    phase: SandboxPhase
    message: str = ''


@dataclass(frozen=True)
class SandboxHandle:
    """A provisioned sandbox; ``files`` exposes its protocol directory."""

    sandbox_id: str
    provider: str
    files: FileStore


class SandboxProvider(Protocol):
    name: str

    def provision(self, options: ProvisionOptions) -> SandboxHandle:
        ...

    def attach(self, sandbox_id: str) -> SandboxHandle:
        ...

    def wait_ready(self, sandbox_id: str, timeout_seconds: float) -> SandboxState:
        ...

    def status(self, sandbox_id: str) -> SandboxState:
        ...

    def destroy(self, sandbox_id: str) -> None:
        ...
