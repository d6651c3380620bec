from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import as_declarative, declared_attr
from datetime import datetime, timezone
from typing import Any
import uuid


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@as_declarative()
class Base:
    id: Any
    __name__: str

    # Generate __tablename__ automatically
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()


class UUIDPrimaryKeyMixin:
    """String UUID primary key, portable across PostgreSQL and SQLite."""

    id = Column(String(36), primary_key=True, default=new_uuid)


class TimestampMixin:
    """Mixin to add created_at and updated_at timestamps."""

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin to add soft delete functionality."""

    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


def ensure_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
