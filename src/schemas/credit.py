"""Credit ledger Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from src.core.settings import get_settings

from .base import BaseSchema, JSONAPICollectionResponse, JSONAPIResponse


class ConsumeCreditsRequest(BaseSchema):
    """Debit the configured cost of an action."""

    action_key: str = Field(min_length=1, max_length=100, description="Action being paid for")
    reference_id: Optional[str] = Field(
        None, max_length=255, description="Idempotency key; repeats return the original result"
    )
    reference_type: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=500)


class GrantFreeCreditsRequest(BaseSchema):
    amount: Optional[int] = Field(None, gt=0, description="Defaults to the configured monthly allowance")


class PurchaseCreditsRequest(BaseSchema):
    """Webhook-driven purchase; the payment reference makes redelivery safe."""

    amount: int = Field(gt=0, description="Credits purchased")
    payment_reference: str = Field(min_length=1, max_length=255, description="Payment provider reference")
    description: Optional[str] = Field(None, max_length=500)


class AdjustCreditsRequest(BaseSchema):
    amount: int = Field(description="Signed adjustment; the balance may not end below zero")
    reason: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Adjustment amount must be non-zero")
        limit = get_settings().credits_purchase_max
        if abs(v) > limit:
            raise ValueError(f"Adjustment amount must be between -{limit} and {limit}")
        return v


class RefundUsageRequest(BaseSchema):
    transaction_id: UUID = Field(description="Usage transaction to refund")
    reason: Optional[str] = Field(None, max_length=500)


class BonusCreditsRequest(BaseSchema):
    tenant_ids: List[UUID] = Field(min_length=1, description="Tenants to credit")
    amount: int = Field(gt=0)
    grant_type: str = Field(min_length=1, max_length=100, description="e.g. promo, compensation")
    notes: Optional[str] = Field(None, max_length=1000)


class LedgerResultAttributes(BaseSchema):
    success: bool
    new_balance: Optional[int] = None
    cost: int = 0
    amount: int = 0
    reason: Optional[str] = None
    message: Optional[str] = None
    transaction_id: Optional[UUID] = None
    already_applied: bool = False
    metered: bool = True


class LedgerResultResource(BaseSchema):
    type: str = Field("credit_ledger_result", description="Resource type")
    id: UUID = Field(description="Tenant UUID")
    attributes: LedgerResultAttributes


class LedgerResultResponse(JSONAPIResponse):
    data: LedgerResultResource


class CreditBalanceAttributes(BaseSchema):
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    is_free_tier: bool
    credit_status: str = Field(description="unlimited, depleted, critical, warning or healthy")
    last_free_grant_at: Optional[datetime] = None
    next_free_grant_at: Optional[datetime] = None
    credits_used_today: int = 0
    credits_used_this_week: int = 0
    credits_used_this_month: int = 0


class CreditBalanceResource(BaseSchema):
    type: str = Field("credit_balance", description="Resource type")
    id: UUID = Field(description="Tenant UUID")
    attributes: CreditBalanceAttributes


class CreditBalanceResponse(JSONAPIResponse):
    data: CreditBalanceResource


class CreditTransactionAttributes(BaseSchema):
    tenant_id: UUID
    amount: int
    balance_after: int
    transaction_type: str
    action_type: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    description: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class CreditTransactionResource(BaseSchema):
    type: str = Field("credit_transaction", description="Resource type")
    id: UUID
    attributes: CreditTransactionAttributes


class CreditTransactionCollectionResponse(JSONAPICollectionResponse):
    data: List[CreditTransactionResource]


class BulkJobResponse(BaseSchema):
    """Outcome of a scheduled or bulk ledger job."""

    job: str
    affected: int
    details: Optional[Dict[str, Any]] = None
