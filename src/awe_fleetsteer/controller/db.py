from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from awe_fleetsteer.controller.store import GroupState, SignalRecord, TaskRecord
from awe_fleetsteer.domain.events import normalize_event_type
from awe_fleetsteer.domain.models import SteeringState, Task, TaskResult, TaskStatus


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Base(DeclarativeBase):
    pass


class TaskEntity(Base):
    __tablename__ = 'fleet_tasks'

    task_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    definition_json: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    paused: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    paused_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    acknowledged_failures: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    signal_cursor: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    next_signal_seq: Mapped[int] = mapped_column(Integer(), nullable=False, default=1)
    next_event_seq: Mapped[int] = mapped_column(Integer(), nullable=False, default=1)
    result_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class GroupEntity(Base):
    __tablename__ = 'fleet_groups'

    task_id: Mapped[str] = mapped_column(String(128), ForeignKey('fleet_tasks.task_id'), primary_key=True)
    group_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    position: Mapped[int] = mapped_column(Integer(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    sandbox_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state_json: Mapped[str] = mapped_column(Text(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SignalEntity(Base):
    __tablename__ = 'fleet_signals'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_fleet_signals_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(128), ForeignKey('fleet_tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    group_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EventEntity(Base):
    __tablename__ = 'fleet_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_fleet_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(128), ForeignKey('fleet_tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    group_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Group coroutines and API threads share the engine.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
            database = make_url(url).database
            if database and database != ':memory:':
                Path(database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


_TASK_COLUMNS = {
    'status',
    'paused',
    'paused_reason',
    'cancel_requested',
    'acknowledged_failures',
    'signal_cursor',
    'result',
    'started_at',
    'completed_at',
}


class SqlTaskStateStore:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_task_record(row: TaskEntity) -> TaskRecord:
        result = json.loads(row.result_json) if row.result_json else None
        return TaskRecord(
            task=Task.from_dict(json.loads(row.definition_json)),
            status=TaskStatus(row.status),
            paused=bool(row.paused),
            paused_reason=row.paused_reason,
            cancel_requested=bool(row.cancel_requested),
            acknowledged_failures=int(row.acknowledged_failures or 0),
            signal_cursor=int(row.signal_cursor or 0),
            result=(TaskResult.from_dict(result) if result else None),
            created_at=_iso_utc(row.created_at),
            updated_at=_iso_utc(row.updated_at),
            started_at=_iso_utc(row.started_at),
            completed_at=_iso_utc(row.completed_at),
        )

    @staticmethod
    def _to_group_state(row: GroupEntity) -> GroupState:
        return GroupState.from_state_dict(
            task_id=row.task_id,
            group=row.group_name,
            status=row.status,
            stage=row.stage,
            sandbox_id=row.sandbox_id,
            data=json.loads(row.state_json or '{}'),
            updated_at=_iso_utc(row.updated_at),
        )

    def create_task(self, task: Task) -> TaskRecord:
        now = datetime.now(timezone.utc)
        with self.db.session() as session:
            if session.get(TaskEntity, task.task_id) is not None:
                raise ValueError(f'task already exists: {task.task_id}')
            row = TaskEntity(
                task_id=task.task_id,
                title=task.title,
                definition_json=json.dumps(task.to_dict(), ensure_ascii=True),
                status=TaskStatus.PENDING.value,
                paused=False,
                paused_reason=None,
                cancel_requested=False,
                acknowledged_failures=0,
                signal_cursor=0,
                next_signal_seq=1,
                next_event_seq=1,
                result_json=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            for position, group in enumerate(task.groups):
                initial = GroupState(
                    task_id=task.task_id,
                    group=group.name,
                    steering=SteeringState(max_iterations=task.max_steering_iterations),
                )
                session.add(
                    GroupEntity(
                        task_id=task.task_id,
                        group_name=group.name,
                        position=position,
                        status=initial.status.value,
                        stage=initial.stage,
                        sandbox_id=None,
                        state_json=json.dumps(initial.state_dict(), ensure_ascii=True),
                        updated_at=now,
                    )
                )
            session.flush()
            return self._to_task_record(row)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            return self._to_task_record(row) if row is not None else None

    def list_tasks(self, *, limit: int = 100) -> list[TaskRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(TaskEntity).order_by(TaskEntity.created_at.desc()).limit(max(1, int(limit)))
            ).all()
            return [self._to_task_record(row) for row in rows]

    def list_incomplete_tasks(self) -> list[TaskRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(TaskEntity).where(
                    TaskEntity.status.in_([TaskStatus.RUNNING.value, TaskStatus.PAUSED.value])
                )
            ).all()
            return [self._to_task_record(row) for row in rows]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        unknown = set(changes) - _TASK_COLUMNS
        if unknown:
            raise ValueError(f'unknown task fields: {sorted(unknown)}')
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise KeyError(task_id)
            for key, value in changes.items():
                if key == 'status':
                    row.status = TaskStatus(value).value
                elif key == 'result':
                    row.result_json = json.dumps(value.to_dict(), ensure_ascii=True) if value else None
                elif key in {'started_at', 'completed_at'}:
                    setattr(row, key, _parse_iso(value))
                else:
                    setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            session.flush()
            return self._to_task_record(row)

    def get_group(self, task_id: str, group: str) -> GroupState:
        with self.db.session() as session:
            row = session.get(GroupEntity, (task_id, group))
            if row is None:
                raise KeyError(f'{task_id}/{group}')
            return self._to_group_state(row)

    def list_groups(self, task_id: str) -> list[GroupState]:
        with self.db.session() as session:
            if session.get(TaskEntity, task_id) is None:
                raise KeyError(task_id)
            rows = session.scalars(
                select(GroupEntity).where(GroupEntity.task_id == task_id).order_by(GroupEntity.position.asc())
            ).all()
            return [self._to_group_state(row) for row in rows]

    def save_group(self, state: GroupState) -> GroupState:
        now = datetime.now(timezone.utc)
        with self.db.session() as session:
            row = session.get(GroupEntity, (state.task_id, state.group))
            if row is None:
                raise KeyError(f'{state.task_id}/{state.group}')
            row.status = state.status.value
            row.stage = state.stage
            row.sandbox_id = state.sandbox_id
            row.state_json = json.dumps(state.state_dict(), ensure_ascii=True, default=str)
            row.updated_at = now
            return replace(state, updated_at=_iso_utc(now))

    def append_signal(self, task_id: str, *, group: str | None, action: str, payload: dict | None = None) -> SignalRecord:
        now = datetime.now(timezone.utc)
        with self.db.session() as session:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            seq = int(task.next_signal_seq or 1)
            task.next_signal_seq = seq + 1
            row = SignalEntity(
                task_id=task_id,
                seq=seq,
                group_name=group,
                action=str(action),
                payload_json=json.dumps(dict(payload or {}), ensure_ascii=True),
                created_at=now,
            )
            session.add(row)
            return SignalRecord(
                task_id=task_id,
                seq=seq,
                group=group,
                action=str(action),
                payload=dict(payload or {}),
                created_at=_iso_utc(now),
            )

    def signals_after(self, task_id: str, cursor: int) -> list[SignalRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(SignalEntity)
                .where(SignalEntity.task_id == task_id, SignalEntity.seq > int(cursor))
                .order_by(SignalEntity.seq.asc())
            ).all()
            return [
                SignalRecord(
                    task_id=row.task_id,
                    seq=row.seq,
                    group=row.group_name,
                    action=row.action,
                    payload=json.loads(row.payload_json or '{}'),
                    created_at=_iso_utc(row.created_at),
                )
                for row in rows
            ]

    def append_event(self, task_id: str, event_type: str, *, group: str | None = None, payload: dict | None = None) -> dict:
        now = datetime.now(timezone.utc)
        normalized = normalize_event_type(event_type)
        with self.db.session() as session:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            seq = int(task.next_event_seq or 1)
            task.next_event_seq = seq + 1
            session.add(
                EventEntity(
                    task_id=task_id,
                    seq=seq,
                    event_type=normalized,
                    group_name=group,
                    payload_json=json.dumps(dict(payload or {}), ensure_ascii=True, default=str),
                    created_at=now,
                )
            )
        return {
            'seq': seq,
            'task_id': task_id,
            'type': normalized,
            'group': group,
            'payload': dict(payload or {}),
            'created_at': _iso_utc(now),
        }

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.scalars(
                select(EventEntity).where(EventEntity.task_id == task_id).order_by(EventEntity.seq.asc())
            ).all()
            return [
                {
                    'seq': row.seq,
                    'task_id': row.task_id,
                    'type': row.event_type,
                    'group': row.group_name,
                    'payload': json.loads(row.payload_json or '{}'),
                    'created_at': _iso_utc(row.created_at),
                }
                for row in rows
            ]
