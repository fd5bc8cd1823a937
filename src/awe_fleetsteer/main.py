from __future__ import annotations

import logging

from awe_fleetsteer.api import create_app
from awe_fleetsteer.config import load_settings
from awe_fleetsteer.controller.db import Database, SqlTaskStateStore
from awe_fleetsteer.controller.notify import CompositeNotifier, LogNotifier, WebhookNotifier
from awe_fleetsteer.controller.store import InMemoryTaskStateStore
from awe_fleetsteer.observability import configure_observability
from awe_fleetsteer.sandbox.local import LocalSandboxProvider
from awe_fleetsteer.service import ControllerService

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        store = SqlTaskStateStore(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory state store')
        store = InMemoryTaskStateStore()

    notifiers = [LogNotifier()]
    if settings.notify_webhook_url:
        notifiers.append(WebhookNotifier(settings.notify_webhook_url))

    provider = LocalSandboxProvider(settings.sandbox_root, agent_command=settings.agent_command)
    service = ControllerService(
        store=store,
        provider=provider,
        settings=settings,
        notifier=CompositeNotifier(notifiers),
    )
    service.resume_incomplete_tasks()
    return create_app(service=service)


app = build_app()
