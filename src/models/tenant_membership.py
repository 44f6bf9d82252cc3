"""TenantMembership model linking user identities to tenants."""

import uuid

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Index, String,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship

from .base import TimestampMixin, utcnow
from src.core.database import Base

MEMBERSHIP_ROLES = ("owner", "admin", "member", "viewer")
MEMBERSHIP_STATUSES = ("pending", "active", "suspended", "deleted")


class TenantMembership(Base, TimestampMixin):
    """
    Links a user identity to a tenant with a role and a status.

    A user may belong to many tenants. Only ``active`` memberships grant any
    access; ``suspended`` and ``deleted`` are soft removals kept for audit.

    Roles:
    - owner: full access, may manage members and billing
    - admin: full access, may manage members
    - member: may read and create/update rows, never delete
    - viewer: read-only
    """

    __tablename__ = "tenant_memberships"

    id = Column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Primary key UUID"
    )

    tenant_id = Column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        comment="Tenant the user belongs to"
    )

    user_id = Column(
        Uuid,
        nullable=False,
        comment="User identity supplied by the identity provider"
    )

    role = Column(
        String(20),
        nullable=False,
        default="member",
        comment="Membership role: owner, admin, member, viewer"
    )

    status = Column(
        String(20),
        nullable=False,
        default="active",
        comment="Membership status: pending, active, suspended, deleted"
    )

    invited_by = Column(
        Uuid,
        nullable=True,
        comment="User who invited this member"
    )

    joined_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the membership became active"
    )

    tenant = relationship("Tenant", back_populates="memberships")

    __table_args__ = (
        CheckConstraint(
            "role IN ('owner', 'admin', 'member', 'viewer')",
            name="valid_membership_role"
        ),
        CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'deleted')",
            name="valid_membership_status"
        ),
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
        Index("idx_tenant_memberships_user_status", "user_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def activate(self) -> None:
        self.status = "active"
        if self.joined_at is None:
            self.joined_at = utcnow()

    def suspend(self) -> None:
        self.status = "suspended"

    def change_role(self, role: str) -> None:
        if role not in MEMBERSHIP_ROLES:
            raise ValueError(f"Role must be one of: {MEMBERSHIP_ROLES}")
        self.role = role

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "user_id": str(self.user_id),
            "role": self.role,
            "status": self.status,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<TenantMembership(tenant_id={self.tenant_id}, user_id={self.user_id}, "
            f"role='{self.role}', status='{self.status}')>"
        )
