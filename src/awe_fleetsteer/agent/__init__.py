from awe_fleetsteer.agent.commands import CommandResult, CommandRunner
from awe_fleetsteer.agent.executors import (
    AgenticExecutor,
    ConversationTurn,
    DeterministicExecutor,
    ExecutionOutcome,
    ExecutionRequest,
    TransformationExecutor,
    build_executor,
)
from awe_fleetsteer.agent.pipeline import AgentPipeline, ManifestValidationError, validate_manifest

__all__ = [
    'AgentPipeline',
    'AgenticExecutor',
    'CommandResult',
    'CommandRunner',
    'ConversationTurn',
    'DeterministicExecutor',
    'ExecutionOutcome',
    'ExecutionRequest',
    'ManifestValidationError',
    'TransformationExecutor',
    'build_executor',
    'validate_manifest',
]
