from awe_fleetsteer.protocol.exchange import (
    AgentChannel,
    ControllerChannel,
    DirectoryFileStore,
    FileStore,
    MemoryFileStore,
    ProtocolError,
    read_message,
    write_message,
)
from awe_fleetsteer.protocol.messages import (
    AgentResult,
    AgentStatus,
    Manifest,
    Phase,
    SteeringAction,
    SteeringInstruction,
)

__all__ = [
    'AgentChannel',
    'AgentResult',
    'AgentStatus',
    'ControllerChannel',
    'DirectoryFileStore',
    'FileStore',
    'Manifest',
    'MemoryFileStore',
    'Phase',
    'ProtocolError',
    'SteeringAction',
    'SteeringInstruction',
    'read_message',
    'write_message',
]
