"""
Database connection and session management.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator, Optional
import logging

from jobmail.core.config import get_settings
from jobmail.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def init_db(database_url: Optional[str] = None, echo: Optional[bool] = None, create: bool = True) -> sessionmaker:
    """
    Initialize the engine and session factory. Call once at startup.

    Args:
        database_url: SQLAlchemy URL (defaults to DATABASE_URL from settings)
        echo: Log SQL statements (defaults to DATABASE_ECHO)
        create: Create missing tables

    Returns:
        The session factory

    Raises:
        ConfigurationError: If the database cannot be reached
    """
    global engine, SessionLocal

    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    kwargs = {"echo": settings.database_echo if echo is None else echo, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # One shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool

    try:
        engine = create_engine(url, **kwargs)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database initialization failed: {e}")
        raise ConfigurationError(f"Failed to connect to database: {e}") from e

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    if create:
        create_tables()

    logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else url}")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session.

    Usage:
        from jobmail.core.database import get_db

        db = next(get_db())
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """Create all tables. There are no migrations; create_all is idempotent."""
    if not engine:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables():
    """Drop all tables (development and tests only)."""
    if not engine:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.drop_all(bind=engine)
    logger.warning("Database tables dropped")
