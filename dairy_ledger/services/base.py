"""
BaseService -- abstract base for all ledger write services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service.  Services receive a SQLAlchemy ``Session`` and use
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Ledger > Services -- imperative shell.  ``ReceivablesService`` (or a
    test harness, or ``session_scope()``) owns commit/rollback.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back themselves, so an
      allocation, its aggregate refresh and its tracker update land
      together or not at all.

Failure modes:
    - If a subclass calls ``session.commit()`` mid-operation, a later
      validation failure can no longer undo the earlier writes.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from dairy_ledger.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all ledger services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide reporting queries -- those belong in
          ``dairy_ledger/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
