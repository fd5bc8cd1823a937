from __future__ import annotations

import os
from pathlib import Path
from threading import Lock
from typing import Protocol, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from awe_fleetsteer.observability import get_logger
from awe_fleetsteer.protocol.messages import (
    MANIFEST_FILE,
    RESULT_FILE,
    STATUS_FILE,
    STEERING_FILE,
    AgentResult,
    AgentStatus,
    Manifest,
    SteeringInstruction,
)

_log = get_logger('awe_fleetsteer.protocol.exchange')

M = TypeVar('M', bound=BaseModel)


class ProtocolError(RuntimeError):
    pass


class FileStore(Protocol):
    """Minimal file primitives the protocol needs from a sandbox."""

    def read_bytes(self, name: str) -> bytes | None:
        ...

    def write_bytes(self, name: str, data: bytes) -> None:
        ...

    def rename(self, src: str, dst: str) -> bool:
        ...

    def remove(self, name: str) -> None:
        ...


class DirectoryFileStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        if '/' in name or '\\' in name or name in {'', '.', '..'}:
            raise ProtocolError(f'invalid protocol file name: {name!r}')
        return self.root / name

    def read_bytes(self, name: str) -> bytes | None:
        try:
            return self._path(name).read_bytes()
        except FileNotFoundError:
            return None

    def write_bytes(self, name: str, data: bytes) -> None:
        path = self._path(name)
        with open(path, 'wb') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())

    def rename(self, src: str, dst: str) -> bool:
        try:
            os.replace(self._path(src), self._path(dst))
        except FileNotFoundError:
            return False
        return True

    def remove(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            pass


class MemoryFileStore:
    """In-process store for sandboxes that share the controller's address space."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self._lock = Lock()

    def read_bytes(self, name: str) -> bytes | None:
        with self._lock:
            return self.files.get(name)

    def write_bytes(self, name: str, data: bytes) -> None:
        with self._lock:
            self.files[name] = bytes(data)

    def rename(self, src: str, dst: str) -> bool:
        with self._lock:
            if src not in self.files:
                return False
            self.files[dst] = self.files.pop(src)
            return True

    def remove(self, name: str) -> None:
        with self._lock:
            self.files.pop(name, None)


def write_message(store: FileStore, name: str, message: BaseModel) -> None:
    """Replace ``name`` with the serialized message in one atomic step."""
    payload = message.model_dump_json().encode('utf-8')
    tmp_name = f'.{name}.{uuid4().hex}.tmp'
    try:
        store.write_bytes(tmp_name, payload)
        if not store.rename(tmp_name, name):
            raise ProtocolError(f'temporary file for {name} vanished before rename')
    except Exception:
        store.remove(tmp_name)
        raise


def read_message(store: FileStore, name: str, model: type[M]) -> M | None:
    """Return the parsed message, or None when the file has not been written yet."""
    raw = store.read_bytes(name)
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(f'invalid {name}: {exc.error_count()} validation error(s)') from exc


class ControllerChannel:
    """Controller side of the protocol for one sandbox."""

    def __init__(self, store: FileStore):
        self.store = store

    def submit_manifest(self, manifest: Manifest) -> None:
        write_message(self.store, MANIFEST_FILE, manifest)

    def read_manifest(self) -> Manifest | None:
        return read_message(self.store, MANIFEST_FILE, Manifest)

    def read_status(self) -> AgentStatus | None:
        return read_message(self.store, STATUS_FILE, AgentStatus)

    def read_result(self) -> AgentResult | None:
        return read_message(self.store, RESULT_FILE, AgentResult)

    def submit_instruction(self, instruction: SteeringInstruction) -> None:
        # A newer instruction replaces an unclaimed one; the agent only acts on the latest.
        write_message(self.store, STEERING_FILE, instruction)

    def instruction_pending(self) -> bool:
        return self.store.read_bytes(STEERING_FILE) is not None


class AgentChannel:
    """Agent side of the protocol."""

    def __init__(self, store: FileStore):
        self.store = store

    def read_manifest(self) -> Manifest | None:
        return read_message(self.store, MANIFEST_FILE, Manifest)

    def write_status(self, status: AgentStatus) -> None:
        write_message(self.store, STATUS_FILE, status)

    def write_result(self, result: AgentResult) -> None:
        write_message(self.store, RESULT_FILE, result)

    def read_result(self) -> AgentResult | None:
        return read_message(self.store, RESULT_FILE, AgentResult)

    def claim_instruction(self) -> SteeringInstruction | None:
        """Take ownership of the pending instruction, if any.

        The file is renamed away before it is parsed, then deleted. Its absence
        tells the controller the instruction was received.
        """
        processing = f'{STEERING_FILE}.processing-{uuid4().hex[:8]}'
        if not self.store.rename(STEERING_FILE, processing):
            return None
        try:
            return read_message(self.store, processing, SteeringInstruction)
        except ProtocolError:
            _log.warning('steering_instruction_discarded reason=invalid')
            return None
        finally:
            self.store.remove(processing)
