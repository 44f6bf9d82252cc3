"""Platform administration endpoints for the credit ledger.

Only super-admins can see these routes; everyone else gets 404. Every
mutation is recorded in ``super_admin_actions`` in the same transaction.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from src.api.dependencies.common import get_authorization_context
from src.api.routes.credits import get_ledger_service, ledger_response
from src.models.base import utcnow
from src.schemas.credit import (
    AdjustCreditsRequest,
    BonusCreditsRequest,
    BulkJobResponse,
    GrantFreeCreditsRequest,
    LedgerResultResponse,
    PurchaseCreditsRequest,
    RefundUsageRequest,
)
from src.services.authorization import AuthorizationContext, require_super_admin
from src.services.credit_ledger import CreditLedgerService

router = APIRouter()


def get_super_admin_context(
    ctx: AuthorizationContext = Depends(get_authorization_context),
) -> AuthorizationContext:
    require_super_admin(ctx)
    return ctx


@router.post("/{tenant_id}/grant-free", response_model=LedgerResultResponse)
async def grant_free_credits(
    tenant_id: UUID,
    request: GrantFreeCreditsRequest,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """Grant this month's free allowance to one tenant."""
    result = await ledger.grant_free_credits(tenant_id, amount=request.amount, actor=ctx)
    return ledger_response(tenant_id, result)


@router.post("/{tenant_id}/purchase", response_model=LedgerResultResponse)
async def purchase_credits(
    tenant_id: UUID,
    request: PurchaseCreditsRequest,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """Apply a confirmed payment; redelivery of the same reference returns 409."""
    result = await ledger.purchase_credits(
        tenant_id,
        request.amount,
        request.payment_reference,
        description=request.description,
        actor=ctx,
    )
    return ledger_response(tenant_id, result)


@router.post("/{tenant_id}/adjust", response_model=LedgerResultResponse)
async def adjust_credits(
    tenant_id: UUID,
    request: AdjustCreditsRequest,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    result = await ledger.adjust_credits(
        tenant_id,
        request.amount,
        request.reason,
        notes=request.notes,
        actor=ctx,
    )
    return ledger_response(tenant_id, result)


@router.post("/{tenant_id}/refund", response_model=LedgerResultResponse)
async def refund_usage(
    tenant_id: UUID,
    request: RefundUsageRequest,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    result = await ledger.refund_usage(tenant_id, request.transaction_id, reason=request.reason, actor=ctx)
    return ledger_response(tenant_id, result)


@router.post("/bonus", response_model=BulkJobResponse)
async def grant_bonus_credits(
    request: BonusCreditsRequest,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    granted = await ledger.grant_bonus_credits(
        request.tenant_ids,
        request.amount,
        request.grant_type,
        notes=request.notes,
        actor=ctx,
    )
    return BulkJobResponse(
        job="bonus",
        affected=granted,
        details={"requested": len(request.tenant_ids), "amount": request.amount},
    )


@router.get("/{tenant_id}/reconcile")
async def reconcile(
    tenant_id: UUID,
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    """Check the balance against lifetime totals and the transaction log."""
    return await ledger.reconcile(tenant_id)


@router.get("/{tenant_id}/abuse-events")
async def list_abuse_events(
    tenant_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    events = []
    if ledger.abuse_detector is not None:
        events = await ledger.abuse_detector.list_events(tenant_id, limit=limit)
    return {"data": [event.to_dict() for event in events]}


# Scheduled jobs, triggered by the platform scheduler

@router.post("/jobs/reset-daily", response_model=BulkJobResponse)
async def reset_daily_usage(
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    return BulkJobResponse(job="reset-daily", affected=await ledger.reset_daily_usage())


@router.post("/jobs/reset-weekly", response_model=BulkJobResponse)
async def reset_weekly_usage(
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    return BulkJobResponse(job="reset-weekly", affected=await ledger.reset_weekly_usage())


@router.post("/jobs/monthly-grants", response_model=BulkJobResponse)
async def grant_monthly_free_credits(
    ctx: AuthorizationContext = Depends(get_super_admin_context),
    ledger: CreditLedgerService = Depends(get_ledger_service),
):
    results = await ledger.grant_monthly_free_credits_for_all(now=utcnow())
    skipped = {
        str(tenant_id): result.reason.value
        for tenant_id, result in results.items()
        if not result.success and result.reason is not None
    }
    return BulkJobResponse(
        job="monthly-grants",
        affected=sum(1 for result in results.values() if result.success),
        details={"evaluated": len(results), "skipped": skipped},
    )
