"""Customer model: the representative tenant-owned entity."""

from sqlalchemy import CheckConstraint, Column, Index, String, Text

from .base import JSONType, TenantOwnedMixin
from src.core.database import Base


class Customer(Base, TenantOwnedMixin):
    """
    A retail, wholesale or medical customer of a tenant.

    Reads and writes go through ``TenantScopedRepository``; the model itself
    carries no access logic.
    """

    __tablename__ = "customers"

    name = Column(String(255), nullable=False, comment="Customer or business name")
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    customer_type = Column(
        String(20),
        nullable=False,
        default="retail",
        comment="Customer type: retail, wholesale, medical"
    )
    status = Column(
        String(20),
        nullable=False,
        default="active",
        comment="Customer status: active, inactive, blocked"
    )
    notes = Column(Text, nullable=True)
    additional_data = Column(JSONType, default=dict)

    __table_args__ = (
        CheckConstraint(
            "customer_type IN ('retail', 'wholesale', 'medical')",
            name="valid_customer_type"
        ),
        CheckConstraint(
            "status IN ('active', 'inactive', 'blocked')",
            name="valid_customer_status"
        ),
        Index("idx_customers_tenant_name", "tenant_id", "name"),
    )
