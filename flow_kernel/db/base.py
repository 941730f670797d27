"""
Module: flow_kernel.db.base
Responsibility: Declarative base and the shared column types for every
    ORM model in the engine.
Architecture position: Kernel > DB.  All model modules import from here;
    this module imports nothing from the rest of the project.

Invariants enforced:
    - Every row has a uuid4 primary key stored as a 36-character string, so
      the same schema runs on PostgreSQL and SQLite.
    - Ordered logs (events, jobs) key on an autoincrementing ``seq``
      instead and keep the uuid4 ``id`` as a unique column.
    - Python ``datetime`` annotations map to timezone-aware columns.
    - Specs, contexts, payloads and task input/output are ``JSONDocument``
      columns (JSONB on PostgreSQL, JSON text elsewhere).
    - TrackedBase rows carry ``created_at``/``updated_at``; writers set both
      from the injected Clock.
"""

from datetime import datetime
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# Autoincrementing ordering key: BIGSERIAL on PostgreSQL, a rowid alias on
# SQLite (which only autoincrements an INTEGER PRIMARY KEY).
SequenceKey = BigInteger().with_variant(Integer, "sqlite")


class UUIDString(TypeDecorator):
    """UUID bound as ``str`` and loaded back as ``uuid.UUID``."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Abstract base with row timestamps.

    The server defaults only cover rows written outside the kernel.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
