"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel layer.  Services receive a SQLAlchemy
    ``Session`` and persist with ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction (HTTP request, script, test) and never commit.  Partial
      work is confined with ``session.begin_nested()`` savepoints.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` -- the caller
          controls transaction boundaries.

    Non-goals:
        - Read-only queries belong in ``expense_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
