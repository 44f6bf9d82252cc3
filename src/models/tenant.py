"""Tenant model: the unit of isolation and of credit metering."""

import uuid
from sqlalchemy import Boolean, CheckConstraint, Column, Index, String, Uuid
from sqlalchemy.orm import relationship

from .base import JSONType, TimestampMixin
from src.core.database import Base

TENANT_STATUSES = ("active", "trial", "suspended", "cancelled")
PLAN_TYPES = ("free", "starter", "professional", "enterprise")


def _in_list(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Tenant(Base, TimestampMixin):
    """
    A customer business. Every tenant-owned row points at exactly one tenant,
    and free-plan tenants pay for metered actions out of their credit account.
    """

    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(63), unique=True, nullable=False, comment="URL-safe unique identifier")

    status = Column(String(20), default="active", nullable=False)
    plan_type = Column(String(50), default="free", nullable=False)
    # Kept in step with plan_type; only free-tier tenants are metered
    is_free_tier = Column(Boolean, default=True, nullable=False)

    limits = Column(JSONType, default=dict, comment="Numeric plan limits, e.g. {\"customers\": 500}")
    usage = Column(JSONType, default=dict, comment="Usage counters keyed like limits")
    features = Column(JSONType, default=dict)

    memberships = relationship(
        "TenantMembership",
        back_populates="tenant",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(_in_list("status", TENANT_STATUSES), name="valid_tenant_status"),
        CheckConstraint(_in_list("plan_type", PLAN_TYPES), name="valid_plan_type"),
        Index("idx_tenants_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trial")

    def has_feature(self, feature: str) -> bool:
        return bool((self.features or {}).get(feature, False))

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "slug": self.slug,
            "status": self.status,
            "plan_type": self.plan_type,
            "is_free_tier": self.is_free_tier,
            "limits": self.limits or {},
            "usage": self.usage or {},
            "features": self.features or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}', slug='{self.slug}')>"
