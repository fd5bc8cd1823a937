from __future__ import annotations

from typing import Any, Protocol

import httpx

from awe_fleetsteer.observability import get_logger

_log = get_logger('awe_fleetsteer.controller.notify')


class Notifier(Protocol):
    def notify(self, event: str, payload: dict[str, Any]) -> None:
        ...


class LogNotifier:
    def notify(self, event: str, payload: dict[str, Any]) -> None:
        _log.info(
            'notification event=%s task_id=%s group=%s',
            event,
            payload.get('task_id'),
            payload.get('group'),
        )


class WebhookNotifier:
    """POST each notification as JSON to a single endpoint."""

    def __init__(self, url: str, *, timeout_seconds: float = 10.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self._client = client

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        body = {'event': event, **payload}
        if self._client is not None:
            response = self._client.post(self.url, json=body, timeout=self.timeout_seconds)
        else:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(self.url, json=body)
        response.raise_for_status()


class CompositeNotifier:
    def __init__(self, notifiers: list[Notifier]):
        self.notifiers = list(notifiers)

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        for notifier in self.notifiers:
            safe_notify(notifier, event, payload)


def safe_notify(notifier: Notifier | None, event: str, payload: dict[str, Any]) -> None:
    """Deliver a notification; delivery failures are logged and never propagate."""
    if notifier is None:
        return
    try:
        notifier.notify(event, dict(payload))
    except Exception as exc:
        _log.warning('notification_failed event=%s error=%s', event, exc)
