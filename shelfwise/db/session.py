"""
Shelfwise Database Session Management.

Single entry point for engine/session initialisation plus the unit-of-work
context manager every service operation runs inside.

session_scope() is also the translation boundary between SQLAlchemy and the
Shelfwise error taxonomy:

    StaleDataError   → ConflictError(retryable=True)   (version stamp mismatch)
    IntegrityError   → ConflictError                   (unique / FK violation)
    SQLAlchemyError  → InfrastructureError             (store unavailable, timeout…)
    ShelfwiseError   → propagated unchanged

Every path rolls the transaction back, so a failed cascade never leaves a
partially rewritten subtree behind.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shelfwise.db.base import Base
from shelfwise.engine.errors import ConflictError, InfrastructureError, ShelfwiseError

logger = logging.getLogger("shelfwise.db.session")

_session_factory: Optional[sessionmaker] = None


def create_db_engine(
    db_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> Engine:
    """
    Build an Engine for db_url.

    Pool sizing only applies to server databases; SQLite gets foreign key
    enforcement switched on for every connection instead.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, echo=echo)

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )


def init_db(
    db_url: str,
    create_tables: bool = False,
    **engine_options,
) -> sessionmaker:
    """
    Initialise the store.

    Args:
        db_url:        SQLAlchemy URL (postgresql://… in production, sqlite:///… locally).
        create_tables: Run Base.metadata.create_all() — `shelfwise init` and tests.
        engine_options: Passed through to create_db_engine().

    Returns:
        A sessionmaker (also stored as the module default for get_session_factory()).
        Sessions keep attribute state after commit so services can hand
        records back to callers once the unit of work is closed.
    """
    global _session_factory

    # Models must be imported before create_all so their tables are registered
    from shelfwise.db import models  # noqa: F401

    engine = create_db_engine(db_url, **engine_options)
    if create_tables:
        Base.metadata.create_all(engine)
        logger.info(f"Created tables on {engine.url.render_as_string(hide_password=True)}")

    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


def init_db_from_config(config, create_tables: bool = False) -> sessionmaker:
    """init_db() using the database section of a ShelfwiseConfig."""
    db = config.database
    return init_db(
        db.url,
        create_tables=create_tables,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=db.pool_pre_ping,
        echo=db.echo,
    )


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@contextmanager
def session_scope(
    factory: Optional[sessionmaker] = None,
    operation: Optional[str] = None,
) -> Generator[Session, None, None]:
    """
    Unit of work: commit on success, roll back and translate on failure.

    Usage:
        with session_scope(factory, operation="move_folder") as session:
            folder = session.get(Folder, folder_id)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except ShelfwiseError:
        session.rollback()
        raise
    except StaleDataError as exc:
        session.rollback()
        logger.info(f"Concurrent modification detected during {operation}: {exc}")
        raise ConflictError(
            "The resource was modified concurrently; retry the operation",
            retryable=True,
            operation=operation,
        ) from exc
    except IntegrityError as exc:
        session.rollback()
        logger.info(f"Integrity violation during {operation}: {exc.orig}")
        raise ConflictError(
            "The change conflicts with existing data",
            operation=operation,
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Store failure during {operation}: {exc}")
        raise InfrastructureError(
            f"Store failure during {operation or 'operation'}",
            operation=operation,
        ) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
