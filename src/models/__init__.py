"""Database models for the tenant ledger service."""

from .base import JSONType, TenantOwnedMixin, TimestampMixin
from .tenant import Tenant
from .tenant_membership import TenantMembership
from .super_admin import SuperAdmin, SuperAdminAction
from .customer import Customer
from .credit import CreditAbuseEvent, CreditAccount, CreditCost, CreditTransaction

__all__ = [
    "JSONType",
    "TenantOwnedMixin",
    "TimestampMixin",
    "Tenant",
    "TenantMembership",
    "SuperAdmin",
    "SuperAdminAction",
    "Customer",
    "CreditAccount",
    "CreditTransaction",
    "CreditCost",
    "CreditAbuseEvent",
]
