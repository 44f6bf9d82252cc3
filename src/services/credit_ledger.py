"""Credit ledger service.

Maintains one integer balance per tenant plus an append-only transaction log.
Every mutating operation is a single unit of work:

    lock balance row -> validate -> guarded balance UPDATE -> insert transaction -> commit

The guarded UPDATE (``WHERE balance + delta >= 0``) and the storage CHECK
constraints keep the balance non-negative even if the lock were bypassed; the
partial unique indexes on ``credit_transactions`` make every referenced event
apply at most once. Application-level lookups run first so the common
duplicate is reported without relying on the constraint, and a constraint
violation is translated into the same result the lookup would have produced.

Expected outcomes (insufficient balance, duplicate events, cadence and cap
violations) are returned as ``LedgerResult`` values. Only unexpected storage
failures raise, as ``CreditLedgerError``; those leave nothing applied and are
safe to retry.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import assume_ledger_writer
from src.core.settings import Settings, get_settings
from src.models.base import as_utc, utcnow
from src.models.credit import CreditAccount, CreditTransaction
from src.models.tenant import Tenant
from src.services.abuse_detection import AbuseDetector
from src.services.authorization import AuthorizationContext, record_super_admin_action
from src.services.credit_costs import CreditCostCatalog
from src.services.events import EventPublisher, EventType

logger = logging.getLogger(__name__)


class LedgerFailureReason(str, Enum):
    """Reportable reasons a ledger operation did not apply."""
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ALREADY_GRANTED_THIS_MONTH = "already_granted_this_month"
    GRANT_TOO_SOON = "grant_too_soon"
    AMOUNT_EXCEEDS_MAXIMUM = "amount_exceeds_maximum"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_REFERENCE = "invalid_reference"
    NEGATIVE_BALANCE = "negative_balance"
    DUPLICATE_PURCHASE = "duplicate_purchase"
    ALREADY_REFUNDED = "already_refunded"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    TENANT_NOT_FOUND = "tenant_not_found"
    REJECTED = "rejected"


@dataclass
class LedgerResult:
    """Outcome of a ledger operation."""
    success: bool
    new_balance: Optional[int] = None
    cost: int = 0
    amount: int = 0
    reason: Optional[LedgerFailureReason] = None
    message: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    already_applied: bool = False
    metered: bool = True

    @classmethod
    def failure(
        cls,
        reason: LedgerFailureReason,
        message: str,
        new_balance: Optional[int] = None,
        **kwargs: Any,
    ) -> "LedgerResult":
        return cls(success=False, reason=reason, message=message, new_balance=new_balance, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "new_balance": self.new_balance,
            "cost": self.cost,
            "amount": self.amount,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "already_applied": self.already_applied,
            "metered": self.metered,
        }


class CreditLedgerError(Exception):
    """Unexpected storage failure; the operation did not complete."""
    pass


def free_grant_reference(tenant_id: uuid.UUID, when: datetime) -> str:
    """Deterministic idempotency key for a tenant's free grant in a calendar month."""
    return f"{tenant_id}:{when:%Y-%m}"


class CreditLedgerService:
    """
    Credit ledger engine.

    Args:
        db_session: Async database session; the service commits or rolls back
            one unit of work per mutating call.
        event_publisher: Optional publisher notified after each commit
        settings: Ledger limits and abuse thresholds (defaults to app settings)
        abuse_detector: Optional advisory detector run after each usage debit
    """

    def __init__(
        self,
        db_session: AsyncSession,
        event_publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        abuse_detector: Optional[AbuseDetector] = None,
    ):
        self.db = db_session
        self.events = event_publisher
        self.settings = settings or get_settings()
        self.costs = CreditCostCatalog(db_session)
        if abuse_detector is None and self.settings.abuse_detection_enabled:
            abuse_detector = AbuseDetector(db_session, self.settings, event_publisher)
        self.abuse_detector = abuse_detector

    # Public operations

    async def grant_free_credits(
        self,
        tenant_id: uuid.UUID,
        amount: Optional[int] = None,
        now: Optional[datetime] = None,
        actor: Optional[AuthorizationContext] = None,
    ) -> LedgerResult:
        """
        Grant the monthly free allowance.

        At most one grant per tenant per calendar month (keyed
        ``tenant:YYYY-MM``), and never within the minimum interval of the
        previous grant even across a month boundary.
        """
        amount = self.settings.credits_free_grant_amount if amount is None else amount
        now = as_utc(now) or utcnow()

        invalid = self._validate_amount(amount, self.settings.credits_free_grant_max)
        if invalid:
            return invalid

        reference = free_grant_reference(tenant_id, now)

        async def work() -> LedgerResult:
            account = await self._lock_account(tenant_id)
            if account is None:
                return self._tenant_missing(tenant_id)

            existing = await self._find_transaction(tenant_id, "free_grant", reference)
            if existing is not None:
                logger.warning(f"Free credits already granted to tenant {tenant_id} for {now:%Y-%m}")
                return LedgerResult.failure(
                    LedgerFailureReason.ALREADY_GRANTED_THIS_MONTH,
                    "Free credits were already granted this month",
                    new_balance=account.balance,
                    transaction_id=existing.id,
                    already_applied=True,
                )

            last_grant = as_utc(account.last_free_grant_at)
            min_interval = timedelta(days=self.settings.credits_free_grant_min_interval_days)
            if last_grant is not None and now - last_grant < min_interval:
                logger.warning(f"Free grant for tenant {tenant_id} requested too soon after {last_grant}")
                return LedgerResult.failure(
                    LedgerFailureReason.GRANT_TOO_SOON,
                    f"Too soon for another grant; next grant available after {last_grant + min_interval:%Y-%m-%d}",
                    new_balance=account.balance,
                )

            new_balance = await self._apply_delta(
                tenant_id,
                amount,
                earned=amount,
                last_free_grant_at=now,
                next_free_grant_at=now + timedelta(days=self.settings.credits_free_grant_period_days),
                credits_used_this_month=0,
            )
            transaction = await self._append(
                tenant_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type="free_grant",
                action_type="free_grant",
                reference_id=reference,
                reference_type="free_grant_period",
                description="Monthly free credit grant",
            )
            if actor:
                record_super_admin_action(
                    self.db, actor, "credits.grant_free",
                    tenant_id=tenant_id, resource_type="credit_transactions",
                    resource_id=transaction.id, details={"amount": amount},
                )
            return LedgerResult(success=True, new_balance=new_balance, amount=amount, transaction_id=transaction.id)

        async def on_conflict() -> LedgerResult:
            existing = await self._find_transaction(tenant_id, "free_grant", reference)
            return LedgerResult.failure(
                LedgerFailureReason.ALREADY_GRANTED_THIS_MONTH,
                "Free credits were already granted this month",
                new_balance=await self._peek_balance(tenant_id),
                transaction_id=existing.id if existing else None,
                already_applied=existing is not None,
            )

        result = await self._run_unit("grant_free_credits", tenant_id, work, on_conflict)
        if result.success:
            logger.info(f"Granted {amount} free credits to tenant {tenant_id}, balance {result.new_balance}")
            await self._publish(EventType.FREE_CREDITS_GRANTED, tenant_id, result)
        return result

    async def purchase_credits(
        self,
        tenant_id: uuid.UUID,
        amount: int,
        external_payment_reference: str,
        description: Optional[str] = None,
        actor: Optional[AuthorizationContext] = None,
    ) -> LedgerResult:
        """
        Credit a paid purchase exactly once per payment-provider reference.

        Redelivered webhooks for the same reference are rejected with
        ``duplicate_purchase`` and ``already_applied=True``.
        """
        invalid = self._validate_amount(amount, self.settings.credits_purchase_max)
        if invalid:
            return invalid
        reference = (external_payment_reference or "").strip()
        if not reference:
            return LedgerResult.failure(
                LedgerFailureReason.INVALID_REFERENCE,
                "A payment reference is required",
            )

        async def duplicate() -> LedgerResult:
            logger.warning(f"Duplicate purchase reference {reference} for tenant {tenant_id}")
            return LedgerResult.failure(
                LedgerFailureReason.DUPLICATE_PURCHASE,
                "This payment has already been applied",
                new_balance=await self._peek_balance(tenant_id),
                already_applied=True,
            )

        async def work() -> LedgerResult:
            if await self._find_purchase(reference) is not None:
                return await duplicate()

            account = await self._lock_account(tenant_id)
            if account is None:
                return self._tenant_missing(tenant_id)

            new_balance = await self._apply_delta(tenant_id, amount, earned=amount)
            transaction = await self._append(
                tenant_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type="purchase",
                action_type="purchase",
                reference_id=reference,
                reference_type="payment",
                description=description or f"Purchased {amount} credits",
            )
            if actor:
                record_super_admin_action(
                    self.db, actor, "credits.purchase",
                    tenant_id=tenant_id, resource_type="credit_transactions",
                    resource_id=transaction.id, details={"amount": amount, "reference": reference},
                )
            return LedgerResult(success=True, new_balance=new_balance, amount=amount, transaction_id=transaction.id)

        result = await self._run_unit("purchase_credits", tenant_id, work, duplicate)
        if result.success:
            logger.info(f"Purchased {amount} credits for tenant {tenant_id} (ref {reference})")
            await self._publish(EventType.CREDITS_PURCHASED, tenant_id, result, {"reference": reference})
        return result

    async def consume_credits(
        self,
        tenant_id: uuid.UUID,
        action_key: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Debit the configured cost of ``action_key``.

        Free actions and non-free-tier tenants succeed without touching the
        balance. With a ``reference_id`` the debit is idempotent: repeating the
        call returns the original result with ``already_applied=True``.
        """
        metered = await self._is_metered(tenant_id)
        if metered is None:
            return self._tenant_missing(tenant_id)

        cost = await self.costs.get_cost(action_key)
        if cost <= 0:
            return LedgerResult(success=True, new_balance=await self._peek_balance(tenant_id), cost=0)
        if not metered:
            logger.debug(f"Tenant {tenant_id} is not on the free tier, '{action_key}' not metered")
            return LedgerResult(
                success=True,
                new_balance=await self._peek_balance(tenant_id),
                cost=cost,
                metered=False,
            )

        async def replay() -> Optional[LedgerResult]:
            if not reference_id:
                return None
            existing = await self._find_transaction(tenant_id, action_key, reference_id)
            if existing is None:
                return None
            logger.info(f"Replayed usage '{action_key}' ref {reference_id} for tenant {tenant_id}")
            return LedgerResult(
                success=True,
                new_balance=existing.balance_after,
                cost=-existing.amount,
                amount=existing.amount,
                transaction_id=existing.id,
                already_applied=True,
            )

        async def work() -> LedgerResult:
            account = await self._lock_account(tenant_id)
            if account is None:
                return self._tenant_missing(tenant_id)

            previous = await replay()
            if previous is not None:
                return previous

            if account.balance < cost:
                logger.warning(
                    f"Insufficient credits for tenant {tenant_id}: need {cost}, have {account.balance}"
                )
                return LedgerResult.failure(
                    LedgerFailureReason.INSUFFICIENT_CREDITS,
                    f"Insufficient credits. Need {cost}, have {account.balance}",
                    new_balance=account.balance,
                    cost=cost,
                )

            new_balance = await self._apply_delta(
                tenant_id,
                -cost,
                spent=cost,
                credits_used_today=CreditAccount.credits_used_today + cost,
                credits_used_this_week=CreditAccount.credits_used_this_week + cost,
                credits_used_this_month=CreditAccount.credits_used_this_month + cost,
            )
            if new_balance is None:
                # Lost a race the lock should have prevented; nothing was written.
                return LedgerResult.failure(
                    LedgerFailureReason.INSUFFICIENT_CREDITS,
                    f"Insufficient credits. Need {cost}",
                    new_balance=await self._peek_balance(tenant_id),
                    cost=cost,
                )
            transaction = await self._append(
                tenant_id,
                amount=-cost,
                balance_after=new_balance,
                transaction_type="usage",
                action_type=action_key,
                reference_id=reference_id,
                reference_type=reference_type,
                description=description or f"Credit usage: {action_key}",
            )
            return LedgerResult(
                success=True,
                new_balance=new_balance,
                cost=cost,
                amount=-cost,
                transaction_id=transaction.id,
            )

        async def on_conflict() -> LedgerResult:
            previous = await replay()
            if previous is not None:
                return previous
            return LedgerResult.failure(
                LedgerFailureReason.REJECTED,
                "The debit was rejected by a storage constraint",
                new_balance=await self._peek_balance(tenant_id),
                cost=cost,
            )

        result = await self._run_unit("consume_credits", tenant_id, work, on_conflict)
        if result.success and not result.already_applied:
            logger.info(f"Tenant {tenant_id} consumed {cost} credits for '{action_key}', balance {result.new_balance}")
            await self._publish(EventType.CREDITS_CONSUMED, tenant_id, result, {"action_key": action_key})
            if self.abuse_detector is not None:
                await self.abuse_detector.check(tenant_id, action_key)
        return result

    async def adjust_credits(
        self,
        tenant_id: uuid.UUID,
        amount: int,
        reason: str,
        admin_user_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        actor: Optional[AuthorizationContext] = None,
    ) -> LedgerResult:
        """Administrative correction; the balance may not end below zero."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            return LedgerResult.failure(LedgerFailureReason.INVALID_AMOUNT, "Adjustment must be a non-zero integer")
        if abs(amount) > self.settings.credits_purchase_max:
            return LedgerResult.failure(
                LedgerFailureReason.AMOUNT_EXCEEDS_MAXIMUM,
                f"Adjustments are limited to {self.settings.credits_purchase_max} credits either way",
            )
        if not reason or not reason.strip():
            return LedgerResult.failure(LedgerFailureReason.INVALID_AMOUNT, "An adjustment reason is required")

        if admin_user_id is None and actor is not None:
            admin_user_id = actor.user_id

        async def work() -> LedgerResult:
            account = await self._lock_account(tenant_id)
            if account is None:
                return self._tenant_missing(tenant_id)

            previous_balance = account.balance
            if previous_balance + amount < 0:
                return LedgerResult.failure(
                    LedgerFailureReason.NEGATIVE_BALANCE,
                    f"Adjustment of {amount} would leave a negative balance ({previous_balance + amount})",
                    new_balance=previous_balance,
                    amount=amount,
                )

            new_balance = await self._apply_delta(
                tenant_id,
                amount,
                earned=max(amount, 0),
                spent=max(-amount, 0),
            )
            if new_balance is None:
                return LedgerResult.failure(
                    LedgerFailureReason.NEGATIVE_BALANCE,
                    "Adjustment would leave a negative balance",
                    new_balance=await self._peek_balance(tenant_id),
                    amount=amount,
                )
            transaction = await self._append(
                tenant_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type="adjustment",
                action_type="adjustment",
                description=reason + (f": {notes}" if notes else ""),
                details={
                    "admin_user_id": str(admin_user_id) if admin_user_id else None,
                    "reason": reason,
                    "notes": notes,
                    "previous_balance": previous_balance,
                },
            )
            if actor:
                record_super_admin_action(
                    self.db, actor, "credits.adjust",
                    tenant_id=tenant_id, resource_type="credit_transactions",
                    resource_id=transaction.id,
                    details={"amount": amount, "reason": reason, "previous_balance": previous_balance},
                )
            return LedgerResult(success=True, new_balance=new_balance, amount=amount, transaction_id=transaction.id)

        result = await self._run_unit("adjust_credits", tenant_id, work)
        if result.success:
            logger.info(f"Adjusted tenant {tenant_id} credits by {amount} ({reason}), balance {result.new_balance}")
            await self._publish(EventType.CREDITS_ADJUSTED, tenant_id, result, {"reason": reason})
        return result

    async def refund_usage(
        self,
        tenant_id: uuid.UUID,
        transaction_id: uuid.UUID,
        reason: Optional[str] = None,
        actor: Optional[AuthorizationContext] = None,
    ) -> LedgerResult:
        """Return the credits of one usage transaction, at most once."""
        reference = str(transaction_id)

        async def already_refunded() -> LedgerResult:
            existing = await self._find_transaction(tenant_id, "refund", reference)
            return LedgerResult.failure(
                LedgerFailureReason.ALREADY_REFUNDED,
                "This transaction has already been refunded",
                new_balance=await self._peek_balance(tenant_id),
                transaction_id=existing.id if existing else None,
                already_applied=existing is not None,
            )

        async def work() -> LedgerResult:
            original = await self._get_transaction(tenant_id, transaction_id)
            if original is None or original.transaction_type != "usage":
                return LedgerResult.failure(
                    LedgerFailureReason.TRANSACTION_NOT_FOUND,
                    "Usage transaction not found",
                )

            account = await self._lock_account(tenant_id)
            if account is None:
                return self._tenant_missing(tenant_id)

            if await self._find_transaction(tenant_id, "refund", reference) is not None:
                return await already_refunded()

            amount = -original.amount
            new_balance = await self._apply_delta(tenant_id, amount, earned=amount)
            transaction = await self._append(
                tenant_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type="refund",
                action_type="refund",
                reference_id=reference,
                reference_type="credit_transaction",
                description=reason or f"Refund of {original.action_type}",
                details={"refunded_action": original.action_type},
            )
            if actor:
                record_super_admin_action(
                    self.db, actor, "credits.refund",
                    tenant_id=tenant_id, resource_type="credit_transactions",
                    resource_id=transaction.id, details={"refunded_transaction_id": reference},
                )
            return LedgerResult(success=True, new_balance=new_balance, amount=amount, transaction_id=transaction.id)

        result = await self._run_unit("refund_usage", tenant_id, work, already_refunded)
        if result.success:
            logger.info(f"Refunded transaction {transaction_id} for tenant {tenant_id}, balance {result.new_balance}")
            await self._publish(EventType.CREDITS_REFUNDED, tenant_id, result, {"refunded_transaction_id": reference})
        return result

    async def grant_bonus_credits(
        self,
        tenant_ids: Iterable[uuid.UUID],
        amount: int,
        grant_type: str,
        admin_user_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        actor: Optional[AuthorizationContext] = None,
    ) -> int:
        """Grant ``amount`` bonus credits to each tenant. Returns how many were credited."""
        if self._validate_amount(amount, self.settings.credits_free_grant_max):
            return 0
        if admin_user_id is None and actor is not None:
            admin_user_id = actor.user_id

        granted = 0
        for tenant_id in dict.fromkeys(tenant_ids):
            async def work(tenant_id=tenant_id) -> LedgerResult:
                account = await self._lock_account(tenant_id)
                if account is None:
                    return self._tenant_missing(tenant_id)
                new_balance = await self._apply_delta(tenant_id, amount, earned=amount)
                transaction = await self._append(
                    tenant_id,
                    amount=amount,
                    balance_after=new_balance,
                    transaction_type="bonus",
                    action_type=grant_type,
                    description=f"Bulk grant: {grant_type}" + (f" - {notes}" if notes else ""),
                    details={"admin_user_id": str(admin_user_id) if admin_user_id else None, "grant_type": grant_type},
                )
                if actor:
                    record_super_admin_action(
                        self.db, actor, "credits.bonus",
                        tenant_id=tenant_id, resource_type="credit_transactions",
                        resource_id=transaction.id, details={"amount": amount, "grant_type": grant_type},
                    )
                return LedgerResult(success=True, new_balance=new_balance, amount=amount, transaction_id=transaction.id)

            result = await self._run_unit("grant_bonus_credits", tenant_id, work)
            if result.success:
                granted += 1
                await self._publish(EventType.BONUS_CREDITS_GRANTED, tenant_id, result, {"grant_type": grant_type})

        logger.info(f"Granted {amount} bonus credits ({grant_type}) to {granted} tenant(s)")
        return granted

    # Scheduled jobs

    async def reset_daily_usage(self, now: Optional[datetime] = None) -> int:
        """Zero every account's daily usage counter. Returns the number of accounts touched."""
        return await self._reset_counter(
            CreditAccount.credits_used_today, "credits_used_today", "last_daily_reset", now
        )

    async def reset_weekly_usage(self, now: Optional[datetime] = None) -> int:
        """Zero every account's weekly usage counter."""
        return await self._reset_counter(
            CreditAccount.credits_used_this_week, "credits_used_this_week", "last_weekly_reset", now
        )

    async def grant_monthly_free_credits_for_all(
        self,
        now: Optional[datetime] = None,
    ) -> Dict[uuid.UUID, LedgerResult]:
        """
        Grant the monthly allowance to every active free-tier tenant that is due.

        Due means no grant yet this calendar month and none within the minimum
        interval, the same rules ``grant_free_credits`` enforces. A grant late in
        one month therefore does not cost the tenant the following month.
        """
        now = as_utc(now) or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        latest_allowed = min(
            month_start - timedelta(microseconds=1),
            now - timedelta(days=self.settings.credits_free_grant_min_interval_days),
        )
        query = (
            select(Tenant.id)
            .outerjoin(CreditAccount, CreditAccount.tenant_id == Tenant.id)
            .where(
                and_(
                    Tenant.is_free_tier.is_(True),
                    Tenant.status.in_(("active", "trial")),
                    or_(
                        CreditAccount.last_free_grant_at.is_(None),
                        CreditAccount.last_free_grant_at <= latest_allowed,
                    ),
                )
            )
        )
        tenant_ids = list((await self.db.execute(query)).scalars().all())

        results = {}
        for tenant_id in tenant_ids:
            results[tenant_id] = await self.grant_free_credits(tenant_id, now=now)

        granted = sum(1 for result in results.values() if result.success)
        logger.info(f"Monthly free grant run: {granted}/{len(results)} tenant(s) credited")
        return results

    # Reads

    async def get_account(self, tenant_id: uuid.UUID) -> Optional[CreditAccount]:
        query = (
            select(CreditAccount)
            .where(CreditAccount.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(query)).scalar_one_or_none()

    async def get_balance_summary(self, tenant_id: uuid.UUID) -> Dict[str, Any]:
        account = await self.get_account(tenant_id)
        if account is None:
            metered = await self._is_metered(tenant_id)
            summary = {
                "tenant_id": str(tenant_id),
                "balance": 0,
                "lifetime_earned": 0,
                "lifetime_spent": 0,
                "is_free_tier": bool(metered) if metered is not None else True,
                "last_free_grant_at": None,
                "next_free_grant_at": None,
                "credits_used_today": 0,
                "credits_used_this_week": 0,
                "credits_used_this_month": 0,
            }
        else:
            summary = account.to_dict()
        summary["credit_status"] = self.credit_status(summary["balance"], summary["is_free_tier"])
        return summary

    def credit_status(self, balance: int, is_free_tier: bool) -> str:
        """Classify a balance: unlimited, depleted, critical, warning or healthy."""
        if not is_free_tier:
            return "unlimited"
        if balance <= 0:
            return "depleted"
        if balance <= self.settings.credits_critical_threshold:
            return "critical"
        if balance <= self.settings.credits_warning_threshold:
            return "warning"
        return "healthy"

    async def list_transactions(
        self,
        tenant_id: uuid.UUID,
        transaction_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> List[CreditTransaction]:
        query = select(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
        if transaction_type:
            query = query.where(CreditTransaction.transaction_type == transaction_type)
        query = query.order_by(CreditTransaction.created_at.desc()).offset(offset).limit(limit)
        return list((await self.db.execute(query)).scalars().all())

    async def reconcile(self, tenant_id: uuid.UUID) -> Dict[str, Any]:
        """Check ``balance == lifetime_earned - lifetime_spent`` and the log's running balance."""
        account = await self.get_account(tenant_id)
        if account is None:
            return {"tenant_id": str(tenant_id), "reconciles": True, "balance": 0, "transactions": 0}

        last = (
            await self.db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.tenant_id == tenant_id)
                .order_by(CreditTransaction.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        log_matches = last is None or last.balance_after == account.balance
        if not (account.reconciles and log_matches):
            logger.error(f"Credit account for tenant {tenant_id} does not reconcile")
        return {
            "tenant_id": str(tenant_id),
            "reconciles": account.reconciles and log_matches,
            "balance": account.balance,
            "lifetime_earned": account.lifetime_earned,
            "lifetime_spent": account.lifetime_spent,
            "last_balance_after": last.balance_after if last else None,
        }

    # Unit-of-work plumbing

    async def _run_unit(
        self,
        operation: str,
        tenant_id: uuid.UUID,
        work: Callable[[], Awaitable[LedgerResult]],
        on_conflict: Optional[Callable[[], Awaitable[LedgerResult]]] = None,
    ) -> LedgerResult:
        """Run ``work`` as one transaction: commit on success, roll back otherwise."""
        try:
            await assume_ledger_writer(self.db)
            result = await work()
            if result.success:
                await self.db.commit()
            else:
                await self.db.rollback()
            return result
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(f"{operation} for tenant {tenant_id} hit a storage constraint: {e.orig}")
            if on_conflict is None:
                return LedgerResult.failure(
                    LedgerFailureReason.REJECTED,
                    "The operation was rejected by a storage constraint",
                )
            try:
                result = await on_conflict()
                await self.db.rollback()
                return result
            except SQLAlchemyError as lookup_error:
                await self.db.rollback()
                raise CreditLedgerError(f"{operation} failed: {lookup_error}") from lookup_error
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"{operation} for tenant {tenant_id} failed: {e}")
            raise CreditLedgerError(f"{operation} failed: {e}") from e

    async def _lock_account(self, tenant_id: uuid.UUID) -> Optional[CreditAccount]:
        """
        Lock the tenant's balance row, creating it on first use.

        Returns None when the tenant does not exist. A concurrent first
        insert loses inside its SAVEPOINT and simply re-locks the winner's row.
        """
        query = (
            select(CreditAccount)
            .where(CreditAccount.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = (await self.db.execute(query)).scalar_one_or_none()
        if account is not None:
            return account

        is_free_tier = await self._tenant_free_tier_flag(tenant_id)
        if is_free_tier is None:
            return None

        try:
            async with self.db.begin_nested():
                self.db.add(
                    CreditAccount(
                        tenant_id=tenant_id,
                        balance=0,
                        lifetime_earned=0,
                        lifetime_spent=0,
                        is_free_tier=is_free_tier,
                    )
                )
            logger.info(f"Created credit account for tenant {tenant_id}")
        except IntegrityError:
            logger.debug(f"Credit account for tenant {tenant_id} created concurrently")

        return (await self.db.execute(query)).scalar_one_or_none()

    async def _apply_delta(
        self,
        tenant_id: uuid.UUID,
        delta: int,
        earned: int = 0,
        spent: int = 0,
        **values: Any,
    ) -> Optional[int]:
        """Guarded balance update. Returns the new balance, or None if it would go negative."""
        statement = (
            update(CreditAccount)
            .where(
                and_(
                    CreditAccount.tenant_id == tenant_id,
                    CreditAccount.balance + delta >= 0,
                )
            )
            .values(
                balance=CreditAccount.balance + delta,
                lifetime_earned=CreditAccount.lifetime_earned + earned,
                lifetime_spent=CreditAccount.lifetime_spent + spent,
                updated_at=utcnow(),
                **values,
            )
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        return (await self.db.execute(statement)).scalar_one_or_none()

    async def _append(self, tenant_id: uuid.UUID, **fields: Any) -> CreditTransaction:
        """Insert a ledger row; flushing surfaces unique-index conflicts inside the unit."""
        fields.setdefault("created_at", utcnow())
        transaction = CreditTransaction(tenant_id=tenant_id, **fields)
        self.db.add(transaction)
        await self.db.flush()
        return transaction

    async def _reset_counter(self, column, field_name: str, stamp_name: str, now: Optional[datetime]) -> int:
        now = as_utc(now) or utcnow()
        statement = (
            update(CreditAccount)
            .where(column > 0)
            .values({field_name: 0, stamp_name: now, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        try:
            await assume_ledger_writer(self.db)
            result = await self.db.execute(statement)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to reset {field_name}: {e}")
            raise CreditLedgerError(f"Failed to reset {field_name}: {e}") from e
        logger.info(f"Reset {field_name} for {result.rowcount} account(s)")
        return result.rowcount

    # Lookups

    async def _find_transaction(
        self,
        tenant_id: uuid.UUID,
        action_type: str,
        reference_id: str,
    ) -> Optional[CreditTransaction]:
        query = select(CreditTransaction).where(
            and_(
                CreditTransaction.tenant_id == tenant_id,
                CreditTransaction.action_type == action_type,
                CreditTransaction.reference_id == reference_id,
            )
        )
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _find_purchase(self, reference_id: str) -> Optional[CreditTransaction]:
        query = select(CreditTransaction).where(
            and_(
                CreditTransaction.transaction_type == "purchase",
                CreditTransaction.reference_id == reference_id,
            )
        )
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _get_transaction(self, tenant_id: uuid.UUID, transaction_id: uuid.UUID) -> Optional[CreditTransaction]:
        query = select(CreditTransaction).where(
            and_(CreditTransaction.id == transaction_id, CreditTransaction.tenant_id == tenant_id)
        )
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _peek_balance(self, tenant_id: uuid.UUID) -> int:
        """Current balance without taking the lock; 0 before the account exists."""
        query = select(CreditAccount.balance).where(CreditAccount.tenant_id == tenant_id)
        balance = (await self.db.execute(query)).scalar_one_or_none()
        return balance or 0

    async def _tenant_free_tier_flag(self, tenant_id: uuid.UUID) -> Optional[bool]:
        query = select(Tenant.is_free_tier).where(Tenant.id == tenant_id)
        return (await self.db.execute(query)).scalar_one_or_none()

    async def _is_metered(self, tenant_id: uuid.UUID) -> Optional[bool]:
        """Whether usage is debited for the tenant; None if the tenant does not exist."""
        query = select(CreditAccount.is_free_tier).where(CreditAccount.tenant_id == tenant_id)
        flag = (await self.db.execute(query)).scalar_one_or_none()
        if flag is not None:
            return flag
        return await self._tenant_free_tier_flag(tenant_id)

    # Helpers

    def _validate_amount(self, amount: int, maximum: int) -> Optional[LedgerResult]:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return LedgerResult.failure(LedgerFailureReason.INVALID_AMOUNT, "Amount must be a positive integer")
        if amount > maximum:
            return LedgerResult.failure(
                LedgerFailureReason.AMOUNT_EXCEEDS_MAXIMUM,
                f"Amount {amount} exceeds the maximum of {maximum} per call",
            )
        return None

    def _tenant_missing(self, tenant_id: uuid.UUID) -> LedgerResult:
        logger.warning(f"Ledger operation for unknown tenant {tenant_id}")
        return LedgerResult.failure(LedgerFailureReason.TENANT_NOT_FOUND, "Tenant not found")

    async def _publish(
        self,
        event_type: EventType,
        tenant_id: uuid.UUID,
        result: LedgerResult,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.events:
            return
        data = {"amount": result.amount, "cost": result.cost, "new_balance": result.new_balance}
        data.update(extra or {})
        await self.events.publish(
            event_type,
            tenant_id=tenant_id,
            resource_id=result.transaction_id or tenant_id,
            resource_type="credit_transaction",
            data=data,
        )
