from __future__ import annotations

from typing import Callable

from awe_fleetsteer.agent.commands import CommandRunner, truncate
from awe_fleetsteer.agent.workspace import Workspace
from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.messages import MAX_OUTPUT_CHARS, ManifestVerifier, VerifierOutcome

_log = get_logger('awe_fleetsteer.agent.verify')


class VerifierRunner:
    """Run every verifier in every repository and collect per-repo outcomes."""

    def __init__(self, *, runner: CommandRunner, remaining: Callable[[], float]):
        self.runner = runner
        self.remaining = remaining

    def run(
        self,
        workspace: Workspace,
        repositories: list[str],
        verifiers: list[ManifestVerifier],
    ) -> dict[str, list[VerifierOutcome]]:
        outcomes: dict[str, list[VerifierOutcome]] = {}
        for repo in repositories:
            repo_outcomes: list[VerifierOutcome] = []
            for verifier in verifiers:
                result = self.runner.run(
                    list(verifier.command),
                    cwd=workspace.repo_path(repo),
                    timeout_seconds=self.remaining(),
                )
                repo_outcomes.append(
                    VerifierOutcome(
                        name=verifier.name,
                        success=result.ok,
                        exit_code=result.returncode,
                        output=truncate(result.combined_output, MAX_OUTPUT_CHARS),
                    )
                )
                _log.info('verifier_finished repo=%s verifier=%s ok=%s', repo, verifier.name, result.ok)
                if result.timed_out:
                    outcomes[repo] = repo_outcomes
                    return outcomes
            outcomes[repo] = repo_outcomes
        return outcomes
