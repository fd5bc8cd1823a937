from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import sys


@dataclass(frozen=True)
class Settings:
    database_url: str
    sandbox_root: Path
    service_name: str
    otel_endpoint: str | None
    agent_command: str
    claude_command: str
    status_poll_seconds: float
    steering_poll_seconds: float
    signal_poll_seconds: float
    staleness_seconds: int
    provisioning_timeout_seconds: int
    approval_timeout_seconds: int
    activity_retries: int
    default_max_parallel: int
    default_timeout_seconds: int
    notify_webhook_url: str | None
    git_user_name: str
    git_user_email: str


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.01) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def load_settings() -> Settings:
    database_url = os.getenv('AWE_DATABASE_URL', 'sqlite:///.fleetsteer/state.db')
    sandbox_root = Path(os.getenv('AWE_SANDBOX_ROOT', '.fleetsteer/sandboxes')).resolve()
    service_name = os.getenv('AWE_SERVICE_NAME', 'awe-fleetsteer')
    otel_endpoint = os.getenv('AWE_OTEL_EXPORTER_OTLP_ENDPOINT')
    agent_command = os.getenv('AWE_AGENT_COMMAND', f'{sys.executable} -m awe_fleetsteer.agent')
    claude_command = os.getenv(
        'AWE_CLAUDE_COMMAND',
        'claude --output-format text --dangerously-skip-permissions --verbose',
    )
    # The controller polls status faster than the agent polls for instructions.
    status_poll_seconds = _env_float('AWE_STATUS_POLL_SECONDS', 0.5)
    steering_poll_seconds = _env_float('AWE_STEERING_POLL_SECONDS', 2.0)
    signal_poll_seconds = _env_float('AWE_SIGNAL_POLL_SECONDS', 1.0)
    staleness_seconds = _env_int('AWE_STALENESS_SECONDS', 300, minimum=5)
    provisioning_timeout_seconds = _env_int('AWE_PROVISIONING_TIMEOUT_SECONDS', 300, minimum=5)
    approval_timeout_seconds = _env_int('AWE_APPROVAL_TIMEOUT_SECONDS', 24 * 3600, minimum=60)
    activity_retries = _env_int('AWE_ACTIVITY_RETRIES', 3, minimum=1)
    default_max_parallel = _env_int('AWE_DEFAULT_MAX_PARALLEL', 5)
    default_timeout_seconds = _env_int('AWE_DEFAULT_TIMEOUT_SECONDS', 1800, minimum=10)
    notify_webhook_url = str(os.getenv('AWE_NOTIFY_WEBHOOK_URL', '') or '').strip() or None
    git_user_name = str(os.getenv('AWE_GIT_USER_NAME', 'fleetsteer') or 'fleetsteer').strip()
    git_user_email = str(
        os.getenv('AWE_GIT_USER_EMAIL', 'fleetsteer@localhost') or 'fleetsteer@localhost'
    ).strip()
    return Settings(
        database_url=database_url,
        sandbox_root=sandbox_root,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        agent_command=agent_command,
        claude_command=claude_command,
        status_poll_seconds=status_poll_seconds,
        steering_poll_seconds=steering_poll_seconds,
        signal_poll_seconds=signal_poll_seconds,
        staleness_seconds=staleness_seconds,
        provisioning_timeout_seconds=provisioning_timeout_seconds,
        approval_timeout_seconds=approval_timeout_seconds,
        activity_retries=activity_retries,
        default_max_parallel=default_max_parallel,
        default_timeout_seconds=default_timeout_seconds,
        notify_webhook_url=notify_webhook_url,
        git_user_name=git_user_name,
        git_user_email=git_user_email,
    )
