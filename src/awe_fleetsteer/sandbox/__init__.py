from awe_fleetsteer.sandbox.local import LocalSandboxProvider
from awe_fleetsteer.sandbox.provider import (
    ProvisionOptions,
    SandboxHandle,
    SandboxPhase,
    SandboxProvider,
    SandboxState,
)

__all__ = [
    'LocalSandboxProvider',
    'ProvisionOptions',
    'SandboxHandle',
    'SandboxPhase',
    'SandboxProvider',
    'SandboxState',
]
