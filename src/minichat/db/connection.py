"""
Database connection management for MiniChat.

Provides database session management, connection handling, and transaction support.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from minichat.config import settings
from minichat.exceptions import StorageFailure

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``url``.

    SQLite engines get foreign key enforcement switched on for every
    connection; other backends get a pre-pinged, recycled pool.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine: Configured engine
    """
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_engine(
        url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_pre_ping=True,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


# Create engine instance (singleton pattern)
engine = build_engine(settings.database_url, echo=settings.db_echo)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def get_session() -> Session:
    """
    Get a new database session.

    Returns:
        Session: A new SQLAlchemy session

    Example:
        >>> session = get_session()
        >>> try:
        >>>     # Use session
        >>>     session.commit()
        >>> except Exception:
        >>>     session.rollback()
        >>> finally:
        >>>     session.close()
    """
    return SessionLocal()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for read-mostly database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with db_session() as db:
        >>>     conversation = db.get(Conversation, conversation_id)
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction(
    session_factory: Optional[SessionFactory] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for one atomic unit of work.

    Commits on success. On any failure the whole transaction is rolled back,
    so no partial message or version rows survive; storage errors are
    re-raised as ``StorageFailure``, every other exception propagates as is.

    Args:
        session_factory: Session factory to use (defaults to ``SessionLocal``)

    Yields:
        Session: A SQLAlchemy session with transaction support

    Example:
        >>> with transaction() as db:
        >>>     MessageRepository(db, tokenizer).append_message(conv_id, "user", "hi")
        >>>     # Commits automatically on success
        >>>     # Rolls back on exception
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Transaction rolled back: {e}")
        raise StorageFailure(f"Storage write failed: {e}") from e
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize the database.

    Creates all tables programmatically. Production deployments should
    prefer Alembic migrations.

    Note:
        Prefer using Alembic migrations: `alembic upgrade head`
    """
    from minichat.models.db import Base

    Base.metadata.create_all(bind=bind or engine)


def check_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        with db_session() as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
