"""SQLite persistence for dead-lettered jobs."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Column
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .settings import get_settings


class DeadLetterRecord(SQLModel, table=True):
    """A job that exhausted its retry budget, kept for manual inspection."""

    __tablename__ = "dead_letters"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    kind: str = Field(index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SQLITE_JSON))
    attempts: int
    error: str
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class DeadLetterConfig:
    db_path: Path

    @classmethod
    def from_env(cls) -> DeadLetterConfig:
        return cls(db_path=get_settings().storage.dead_letter_db_path)


class DeadLetterStore:
    """Facade around the dead-letter SQLite table."""

    def __init__(self, config: DeadLetterConfig | None = None) -> None:
        self.config = config or DeadLetterConfig.from_env()
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.config.db_path}",
            connect_args={"check_same_thread": False},
        )
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def record(
        self,
        *,
        job_id: str,
        kind: str,
        payload: dict[str, Any],
        attempts: int,
        error: str,
    ) -> DeadLetterRecord:
        record = DeadLetterRecord(
            job_id=job_id,
            kind=kind,
            payload=dict(payload),
            attempts=attempts,
            error=error,
        )
        with self.session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def list(self, *, kind: str | None = None, limit: int = 50) -> list[DeadLetterRecord]:
        with self.session() as session:
            statement = select(DeadLetterRecord)
            if kind:
                statement = statement.where(DeadLetterRecord.kind == kind)
            statement = statement.order_by(DeadLetterRecord.failed_at.desc())  # type: ignore[attr-defined]
            if limit > 0:
                statement = statement.limit(limit)
            return list(session.exec(statement).all())

    def get(self, record_id: int) -> DeadLetterRecord:
        with self.session() as session:
            record = session.get(DeadLetterRecord, record_id)
            if not record:
                raise KeyError(f"Dead letter {record_id} not found")
            return record

    def delete(self, record_id: int) -> None:
        with self.session() as session:
            record = session.get(DeadLetterRecord, record_id)
            if not record:
                raise KeyError(f"Dead letter {record_id} not found")
            session.delete(record)
            session.commit()

    def purge(self, *, older_than: timedelta, now: datetime | None = None) -> int:
        """Delete records that failed before ``now - older_than``; returns the count."""

        cutoff = (now or datetime.now(timezone.utc)) - older_than
        with self.session() as session:
            records = list(session.exec(select(DeadLetterRecord)).all())
            stale = [record for record in records if _as_utc(record.failed_at) < cutoff]
            for record in stale:
                session.delete(record)
            session.commit()
            return len(stale)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
