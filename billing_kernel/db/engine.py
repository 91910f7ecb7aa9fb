"""
Module: billing_kernel.db.engine
Responsibility: Engine construction, the process-wide session factory and
    the commit-or-rollback scope every write path runs inside.
Architecture position: Kernel > DB.  MUST NOT import from services/,
    selectors/ or outer layers (table helpers import the models package
    only to register mappings).
Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with a pre-pinged pool.
    - In-memory SQLite uses a StaticPool so every session sees the same
      database; file SQLite enforces foreign keys.
    - Kernel services flush and never commit.  session_scope() is the
      only place a billing transaction commits.
Failure modes:
    - RuntimeError when the module factory is requested before
      init_engine_from_url().
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_IN_MEMORY_SQLITE = ("sqlite://", "sqlite+pysqlite://")

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


def _sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Create an engine without touching module state.

    ``pool_options`` (pool_size, max_overflow, pool_recycle...) apply to
    server databases only.
    """
    if not database_url.startswith("sqlite"):
        options = {"pool_size": 10, "max_overflow": 5, "pool_recycle": 1800}
        options.update(pool_options)
        return create_engine(
            database_url,
            echo=echo,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
            **options,
        )

    extra: dict = {"connect_args": {"check_same_thread": False}}
    if database_url in _IN_MEMORY_SQLITE or ":memory:" in database_url:
        extra["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **extra)
    event.listen(engine, "connect", _sqlite_foreign_keys)
    return engine


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """Install the module engine and session factory, replacing any previous one."""
    global _engine, _factory
    reset_engine()
    _engine = build_engine(database_url, echo=echo, **pool_options)
    _factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name, "echo": echo})
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _factory


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    One unit of work: commit on normal exit, roll back and re-raise on error.

    Usage:
        with session_scope(factory) as session:
            PaymentService(session, ...).apply_payment(...)
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
    from billing_kernel.db.base import Base
    import billing_kernel.models  # noqa: F401  registers tables

    return Base.metadata


def _bound(engine: Engine | None) -> Engine:
    if engine is not None:
        return engine
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def create_tables(engine: Engine | None = None) -> None:
    """Create every billing table on the given (or module) engine."""
    _metadata().create_all(_bound(engine))


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every billing table. Tests and local resets only."""
    _metadata().drop_all(_bound(engine))


def reset_engine() -> None:
    """Dispose the module engine and forget the factory."""
    global _engine, _factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None
