"""
Module: expense_kernel.db.engine
Responsibility: Engine construction, the process-wide session factory used
    by scripts, table creation and the commit/rollback scope around a unit
    of work.
Architecture position: Kernel > DB.  May import from db/base.py and, for
    table registration only, models/.  The HTTP layer builds its own
    session factory from ``build_engine``; scripts use the module-level one.

Invariants enforced:
    - ``Session.begin_nested()`` works on SQLite: pysqlite's implicit
      transactions are switched off and BEGIN is emitted by SQLAlchemy.
    - In-memory SQLite is one shared connection, so every session built
      from the same engine sees the same rows.
    - Server backends run at READ COMMITTED; approval transitions rely on
      conditional UPDATEs and the expense version, not on isolation level.
    - Services never commit; ``session_scope()`` is the commit point.

Failure modes:
    - RuntimeError from get_engine/get_session before init_engine_from_url().
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from expense_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_IN_MEMORY_URLS = ("sqlite://", "sqlite+pysqlite://")


def _is_in_memory(database_url: str) -> bool:
    return ":memory:" in database_url or database_url in _IN_MEMORY_URLS


def _enable_sqlite_savepoints(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """Create an engine for ``database_url`` without registering it globally."""
    if not database_url.startswith("sqlite"):
        pool_options.setdefault("pool_pre_ping", True)
        return create_engine(
            database_url, echo=echo, isolation_level="READ COMMITTED", **pool_options,
        )

    options: dict = {"connect_args": {"check_same_thread": False}}
    if _is_in_memory(database_url):
        options["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **options)
    _enable_sqlite_savepoints(engine)
    return engine


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Build the process-wide engine and session factory.

    A second call disposes the previous engine first.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(database_url, echo=echo, **pool_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "in_memory": _is_in_memory(database_url)},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


@contextmanager
def session_scope(commit: bool = True) -> Iterator[Session]:
    """
    One unit of work on the process-wide engine.

    On normal exit the session commits, or rolls back when ``commit`` is
    False (dry runs).  On an exception it rolls back and re-raises.
    """
    session = get_session()
    try:
        yield session
        if commit:
            session.commit()
        else:
            session.rollback()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create every mapped table that does not exist yet."""
    from expense_kernel.db.base import Base
    from expense_kernel.models import register_models

    register_models()
    Base.metadata.create_all(engine or get_engine())
