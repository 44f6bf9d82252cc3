"""Pydantic schemas for request/response validation."""

from .base import *
from .credit import *
from .customer import *
from .tenant import *

__all__ = [
    # Base schemas
    "BaseSchema",
    "PaginationMeta",
    "JSONAPIResponse",
    "JSONAPICollectionResponse",
    "JSONAPIError",
    "JSONAPIErrorResponse",
    "HealthCheckResponse",
    "resource",

    # Tenant schemas
    "TenantCreateRequest",
    "TenantPlanRequest",
    "TenantStatusRequest",
    "TenantResponse",
    "TenantCollectionResponse",
    "MembershipCreateRequest",
    "MembershipUpdateRequest",
    "MembershipResponse",
    "MembershipCollectionResponse",

    # Customer schemas
    "CustomerCreateRequest",
    "CustomerPatchRequest",
    "CustomerResponse",
    "CustomerCollectionResponse",

    # Credit schemas
    "ConsumeCreditsRequest",
    "GrantFreeCreditsRequest",
    "PurchaseCreditsRequest",
    "AdjustCreditsRequest",
    "RefundUsageRequest",
    "BonusCreditsRequest",
    "LedgerResultResponse",
    "CreditBalanceResponse",
    "CreditTransactionCollectionResponse",
    "BulkJobResponse",
]
