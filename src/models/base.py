"""Base model classes and mixins."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr

from src.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a stored timestamp to aware UTC.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """created_at / updated_at, set in Python and defaulted by the database."""

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class TenantOwnedMixin(TimestampMixin):
    """
    Mixin for every row that belongs to exactly one tenant.

    The tenant-scoped repository and the database policies both key off
    ``tenant_id``; a model without it cannot be served through the
    isolation layer.
    """

    id = Column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Primary key UUID"
    )

    @declared_attr
    def tenant_id(cls):
        return Column(
            Uuid,
            ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="Owning tenant UUID for multi-tenant isolation"
        )

    # Stamped by the tenant-scoped repository, never taken from request bodies
    created_by = Column(Uuid, nullable=True, comment="Member who created the row")
    updated_by = Column(Uuid, nullable=True, comment="Member who last changed the row")

    def to_dict(self) -> Dict[str, Any]:
        """Column values with UUIDs as strings and timestamps as UTC ISO-8601."""
        values = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = as_utc(value).isoformat()
            elif isinstance(value, uuid.UUID):
                value = str(value)
            values[column.name] = value
        return values

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id}, tenant_id={self.tenant_id})>"
