"""Platform super-administrator identities and their audit trail."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Index, String, Uuid

from .base import JSONType, TimestampMixin, utcnow
from src.core.database import Base


class SuperAdmin(Base, TimestampMixin):
    """
    Platform-wide administrator.

    Stored apart from tenant memberships so that the authorization check is a
    single existence lookup on ``user_id``.
    """

    __tablename__ = "super_admins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid,
        unique=True,
        nullable=False,
        comment="User identity supplied by the identity provider"
    )
    email = Column(String(255), nullable=True)
    status = Column(
        String(20),
        nullable=False,
        default="active",
        comment="Super admin status: active, disabled"
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'disabled')", name="valid_super_admin_status"),
    )

    def __repr__(self) -> str:
        return f"<SuperAdmin(user_id={self.user_id}, status='{self.status}')>"


class SuperAdminAction(Base):
    """Append-only audit record of a super-admin action that bypassed tenant scoping."""

    __tablename__ = "super_admin_actions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    super_admin_user_id = Column(Uuid, nullable=False)
    action = Column(String(100), nullable=False, comment="e.g. customers.update, credits.adjust")
    tenant_id = Column(Uuid, nullable=True, comment="Tenant affected by the action")
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    details = Column(JSONType, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_super_admin_actions_tenant_created", "tenant_id", "created_at"),
        Index("idx_super_admin_actions_admin", "super_admin_user_id"),
    )

    def __repr__(self) -> str:
        return f"<SuperAdminAction(action='{self.action}', tenant_id={self.tenant_id})>"
