from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    PROVISIONING = 'provisioning'
    PIPELINE = 'pipeline'
    TIMEOUT = 'timeout'
    ITERATION_LIMIT = 'iteration_limit'
    STALENESS = 'staleness'
    HUMAN_CANCELLED = 'human_cancelled'


class GroupFailure(Exception):
    """A group-scoped failure that ends the group in the failed state.

    Raised inside the controller's per-group procedure and converted into a
    failed group outcome; it never crosses into other groups.
    """

    def __init__(self, kind: FailureKind, diagnostic: str):
        super().__init__(diagnostic)
        self.kind = kind
        self.diagnostic = diagnostic

    def __repr__(self) -> str:
        return f'GroupFailure(kind={self.kind.value!r}, diagnostic={self.diagnostic!r})'


class ProvisioningError(RuntimeError):
    pass


class IterationLimitReached(RuntimeError):
    def __init__(self, *, iteration: int, limit: int):
        super().__init__(f'steering iteration limit reached ({iteration}/{limit})')
        self.iteration = iteration
        self.limit = limit
