from __future__ import annotations

import os
from pathlib import Path
import signal
import sys

from awe_fleetsteer.agent.pipeline import AgentPipeline
from awe_fleetsteer.config import load_settings
from awe_fleetsteer.observability import configure_observability, get_logger
from awe_fleetsteer.protocol.exchange import AgentChannel, DirectoryFileStore
from awe_fleetsteer.protocol.messages import Phase

_log = get_logger('awe_fleetsteer.agent')


def main() -> int:
    settings = load_settings()
    configure_observability(service_name=f'{settings.service_name}-agent', otlp_endpoint=settings.otel_endpoint)
    workspace = Path(os.getenv('AWE_AGENT_WORKSPACE', '/workspace')).resolve()
    protocol_dir = Path(os.getenv('AWE_AGENT_PROTOCOL_DIR', str(workspace / '.fleetsteer'))).resolve()
    pipeline = AgentPipeline(
        AgentChannel(DirectoryFileStore(protocol_dir)),
        workspace_root=workspace,
        agent_command=settings.claude_command,
        manifest_poll_seconds=settings.status_poll_seconds,
        steering_poll_seconds=settings.steering_poll_seconds,
        github_token=bool(os.getenv('GITHUB_TOKEN')),
    )

    def _handle_term(signum, frame):  # noqa: ARG001
        _log.warning('agent_signal_received signal=%s', signum)
        pipeline.request_stop()

    signal.signal(signal.SIGTERM, _handle_term)
    signal.signal(signal.SIGINT, _handle_term)
    _log.info('agent_started workspace=%s', workspace)
    result = pipeline.run()
    return 0 if result.status == Phase.COMPLETE else 1


if __name__ == '__main__':
    sys.exit(main())
