"""Tenant-facing credit endpoints: balance, history and usage debits."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.common import (
    get_authorization_context,
    get_db_with_caller_context,
    get_events,
    get_pagination_params,
)
from src.schemas.base import resource
from src.schemas.credit import (
    ConsumeCreditsRequest,
    CreditBalanceResponse,
    CreditTransactionCollectionResponse,
    LedgerResultResponse,
)
from src.services.authorization import AuthorizationContext, WriteOperation, require_read, require_write
from src.services.credit_ledger import CreditLedgerService, LedgerFailureReason, LedgerResult
from src.services.events import EventPublisher

router = APIRouter()

FAILURE_STATUS = {
    LedgerFailureReason.INSUFFICIENT_CREDITS: 402,
    LedgerFailureReason.ALREADY_GRANTED_THIS_MONTH: 409,
    LedgerFailureReason.GRANT_TOO_SOON: 409,
    LedgerFailureReason.DUPLICATE_PURCHASE: 409,
    LedgerFailureReason.ALREADY_REFUNDED: 409,
    LedgerFailureReason.TRANSACTION_NOT_FOUND: 404,
    LedgerFailureReason.TENANT_NOT_FOUND: 404,
}


def get_ledger_service(
    session: AsyncSession = Depends(get_db_with_caller_context),
    events: EventPublisher = Depends(get_events),
) -> CreditLedgerService:
    return CreditLedgerService(session, events)


def ledger_response(tenant_id: UUID, result: LedgerResult) -> LedgerResultResponse:
    """Successful results become the response body; failures become HTTP errors."""
    if not result.success:
        raise HTTPException(
            status_code=FAILURE_STATUS.get(result.reason, 422),
            detail={
                "error": result.reason.value,
                "message": result.message,
                "code": result.reason.value.upper(),
                "result": result.to_dict(),
            }
        )
    return LedgerResultResponse(data=resource("credit_ledger_result", tenant_id, result.to_dict()))


@router.get("/{tenant_id}/balance", response_model=CreditBalanceResponse)
async def get_balance(
    tenant_id: UUID,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """Current balance, lifetime totals, usage counters and credit status."""
    require_read(ctx, tenant_id, "Credit account")
    summary = await ledger.get_balance_summary(tenant_id)
    return CreditBalanceResponse(data=resource("credit_balance", tenant_id, summary))


@router.get("/{tenant_id}/transactions", response_model=CreditTransactionCollectionResponse)
async def list_transactions(
    tenant_id: UUID,
    pagination=Depends(get_pagination_params),
    transaction_type: Optional[str] = Query(None, description="Filter by transaction type"),
    ctx: AuthorizationContext = Depends(get_authorization_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """Ledger history, newest first."""
    require_read(ctx, tenant_id, "Credit account")
    transactions = await ledger.list_transactions(
        tenant_id,
        transaction_type=transaction_type,
        offset=pagination["offset"],
        limit=pagination["limit"],
    )
    return CreditTransactionCollectionResponse(
        data=[resource("credit_transaction", t.id, t.to_dict()) for t in transactions],
        meta={"pagination": {"page": pagination["page"], "per_page": pagination["per_page"]}},
    )


@router.post("/{tenant_id}/consume", response_model=LedgerResultResponse)
async def consume_credits(
    tenant_id: UUID,
    request: ConsumeCreditsRequest,
    ctx: AuthorizationContext = Depends(get_authorization_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """
    Debit the cost of an action.

    Returns 402 when the balance does not cover the cost. Repeating a call with
    the same ``reference_id`` returns the original result with
    ``already_applied`` set.
    """
    require_write(ctx, tenant_id, WriteOperation.INSERT, "Credit account")
    result = await ledger.consume_credits(
        tenant_id,
        request.action_key,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        description=request.description,
    )
    return ledger_response(tenant_id, result)
