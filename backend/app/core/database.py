from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
import redis
from typing import Generator
import logging

from .config import settings
from ..models.base import Base

logger = logging.getLogger(__name__)


def configure_sqlite_savepoints(sqlite_engine: Engine) -> None:
    """Let pysqlite emit BEGIN itself so nested transactions (SAVEPOINT) work."""

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _build_engine() -> Engine:
    if settings.DATABASE_URL.startswith("sqlite"):
        sqlite_engine = create_engine(
            settings.DATABASE_URL,
            connect_args={"check_same_thread": False},
            echo=settings.DATABASE_ECHO,
        )
        configure_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_engine(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=settings.DATABASE_ECHO,
    )


# SQLAlchemy setup
engine = _build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Redis setup
redis_client = redis.from_url(
    settings.REDIS_URL,
    max_connections=settings.REDIS_MAX_CONNECTIONS,
    decode_responses=True,
    socket_connect_timeout=5,
    socket_timeout=5,
    retry_on_timeout=True,
)


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def get_redis_client() -> redis.Redis:
    """Get Redis client."""
    return redis_client


def check_db_connection() -> bool:
    """Check database connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def check_redis_connection() -> bool:
    """Check Redis connectivity."""
    try:
        redis_client.ping()
        return True
    except redis.RedisError as e:
        logger.error(f"Redis connection check failed: {e}")
        return False


def create_tables():
    """Create all database tables."""
    from .. import models  # noqa: F401  register mappers

    Base.metadata.create_all(bind=engine)
