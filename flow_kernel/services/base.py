"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel layer.  Services use
    ``session.flush()`` -- never ``session.commit()``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back the outer transaction.  Unique-key races
    are contained in a SAVEPOINT (``session.begin_nested()``) so a lost
    race never discards the caller's other work.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from flow_kernel.db.base import Base
from flow_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()``.

    Non-goals:
        - Does NOT provide list/report queries -- those belong in
          ``flow_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
