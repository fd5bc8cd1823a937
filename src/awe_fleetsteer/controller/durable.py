from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from awe_fleetsteer.controller.store import SignalRecord, TaskStateStore
from awe_fleetsteer.observability import get_logger

_log = get_logger('awe_fleetsteer.controller.durable')

SignalFilter = Callable[[SignalRecord], bool]


class ActivityError(RuntimeError):
    def __init__(self, name: str, attempts: int, cause: BaseException):
        super().__init__(f'activity {name} failed after {attempts} attempt(s): {cause}')
        self.name = name
        self.attempts = attempts
        self.cause = cause


class DurableContext:
    """Execution substrate for controller procedures.

    Everything a procedure needs to survive a controller restart goes through
    here: side effects run as retried activities off the event loop, timers are
    absolute timestamps from ``now()`` persisted by the caller, and signals are
    read from the persisted per-task signal log through a caller-owned cursor.
    """

    def __init__(
        self,
        store: TaskStateStore,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        activity_retries: int = 3,
        retry_initial_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        signal_poll_seconds: float = 1.0,
    ):
        self.store = store
        self.clock = clock
        self._sleep = sleep or asyncio.sleep
        self.activity_retries = max(1, int(activity_retries))
        self.retry_initial_seconds = max(0.0, float(retry_initial_seconds))
        self.retry_max_seconds = max(self.retry_initial_seconds, float(retry_max_seconds))
        self.signal_poll_seconds = max(0.001, float(signal_poll_seconds))

    def now(self) -> float:
        return float(self.clock())

    async def sleep(self, seconds: float) -> None:
        await self._sleep(max(0.0, float(seconds)))

    async def activity(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        delay = self.retry_initial_seconds
        last_error: BaseException | None = None
        for attempt in range(1, self.activity_retries + 1):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except Exception as exc:
                last_error = exc
                _log.warning(
                    'activity_failed name=%s attempt=%s/%s error=%s',
                    name,
                    attempt,
                    self.activity_retries,
                    exc,
                )
                if attempt >= self.activity_retries:
                    break
                await self.sleep(delay)
                delay = min(max(delay * 2, 0.001), self.retry_max_seconds)
        assert last_error is not None
        raise ActivityError(name, self.activity_retries, last_error) from last_error

    def poll_signals(
        self,
        task_id: str,
        cursor: int,
        accept: SignalFilter | None = None,
    ) -> tuple[list[SignalRecord], int]:
        """Return accepted signals after ``cursor`` and the highest sequence read."""
        records = self.store.signals_after(task_id, int(cursor))
        latest = max([int(cursor)] + [record.seq for record in records])
        if accept is not None:
            records = [record for record in records if accept(record)]
        return records, latest

    async def wait_for_signals(
        self,
        task_id: str,
        cursor: int,
        accept: SignalFilter | None = None,
        *,
        deadline: float | None = None,
    ) -> tuple[list[SignalRecord], int]:
        """Suspend until an accepted signal arrives or ``deadline`` passes.

        An empty list means the deadline passed. The returned cursor still
        advances over signals the filter rejected.
        """
        while True:
            records, latest = self.poll_signals(task_id, cursor, accept)
            if records:
                return records, latest
            cursor = latest
            now = self.now()
            if deadline is not None and now >= deadline:
                return [], cursor
            wait = self.signal_poll_seconds
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - now))
            await self.sleep(wait)
