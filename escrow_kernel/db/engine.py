"""
Database connectivity for the release engine.

Two ways to get an engine:

* ``build_engine(url)`` returns a standalone Engine and leaves module state
  alone.  Tests and embedded callers use it with their own ``sessionmaker``.
* ``init_engine_from_url(url)`` installs a process-wide engine and session
  factory, used by the CLI and the scheduler process.

PostgreSQL (psycopg) is the production backend and runs at READ COMMITTED;
every release mutation is a single-row conditional UPDATE, so nothing relies
on a stronger isolation level.  SQLite serves local runs and the test suite.
Pool checkouts are bounded by ``pool_timeout`` and raise
``sqlalchemy.exc.TimeoutError`` when exceeded.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from escrow_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_NOT_INITIALIZED = "Database not initialized; call init_engine_from_url() first"

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_engine(url: URL, echo: bool, busy_timeout: float) -> Engine:
    connect_args = {"check_same_thread": False, "timeout": busy_timeout}
    if url.database in (None, "", ":memory:"):
        # One shared connection, otherwise each checkout sees an empty database.
        return create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, echo=echo, connect_args=connect_args)


def _postgres_engine(
    url: URL,
    echo: bool,
    *,
    pool_size: int,
    max_overflow: int,
    pool_timeout: int,
    pool_recycle: int,
    statement_timeout_ms: int | None,
) -> Engine:
    connect_args: dict[str, Any] = {}
    if statement_timeout_ms is not None:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    return create_engine(
        url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )


def build_engine(
    database_url: str,
    echo: bool = False,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    statement_timeout_ms: int | None = 10_000,
    sqlite_busy_timeout: float = 15.0,
) -> Engine:
    """Create an Engine for ``database_url``.

    Pool and statement-timeout settings apply to server databases only;
    SQLite takes ``sqlite_busy_timeout`` as its lock wait.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return _sqlite_engine(url, echo, sqlite_busy_timeout)
    return _postgres_engine(
        url,
        echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        statement_timeout_ms=statement_timeout_ms,
    )


def init_engine_from_url(database_url: str, echo: bool = False, **kwargs: Any) -> Engine:
    """Install the process-wide engine, replacing (and disposing) any previous one."""
    global _engine, _session_factory

    reset_engine()
    _engine = build_engine(database_url, echo, **kwargs)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "database": _engine.url.database},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory for the short, one-operation sessions the release store opens."""
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error.

    Uses the process-wide factory unless ``factory`` is given.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from escrow_kernel.db.base import Base
    from escrow_kernel.models import import_all_models

    import_all_models()
    return Base.metadata


def create_tables(engine: Engine | None = None) -> None:
    """Create every registered table that does not exist yet."""
    _metadata().create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    _metadata().drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the process-wide engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
