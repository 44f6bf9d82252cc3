"""Tests for the credit ledger service."""

import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from factories import create_tenant, super_admin_context
from src.models.base import as_utc, utcnow
from src.models.credit import CreditTransaction
from src.models.super_admin import SuperAdminAction
from src.services.credit_ledger import (
    CreditLedgerError,
    CreditLedgerService,
    LedgerFailureReason,
    free_grant_reference,
)
from src.services.events import EventType

JAN_15 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(db_session, events, settings):
    return CreditLedgerService(db_session, events, settings)


@pytest_asyncio.fixture
async def tenant_id(db_session):
    """A free-tier tenant with no credit account yet."""
    return await create_tenant(db_session, "green-leaf")


async def transaction_count(session, tenant_id, **filters) -> int:
    query = select(func.count()).select_from(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
    for column, value in filters.items():
        query = query.where(getattr(CreditTransaction, column) == value)
    return int((await session.execute(query)).scalar_one())


class TestEndToEnd:
    """The documented walk-through of a tenant's first month."""

    @pytest.mark.asyncio
    async def test_free_grant_from_zero(self, ledger, tenant_id):
        result = await ledger.grant_free_credits(tenant_id, 500)

        assert result.success
        assert result.new_balance == 500
        account = await ledger.get_account(tenant_id)
        assert account.balance == 500
        assert account.lifetime_earned == 500

    @pytest.mark.asyncio
    async def test_second_grant_same_month_is_rejected(self, ledger, tenant_id, db_session):
        await ledger.grant_free_credits(tenant_id, 500)
        result = await ledger.grant_free_credits(tenant_id, 500)

        assert not result.success
        assert result.reason == LedgerFailureReason.ALREADY_GRANTED_THIS_MONTH
        assert result.already_applied
        assert result.new_balance == 500
        assert await transaction_count(db_session, tenant_id, transaction_type="free_grant") == 1

    @pytest.mark.asyncio
    async def test_consume_debits_configured_cost(self, ledger, tenant_id):
        await ledger.grant_free_credits(tenant_id, 500)

        result = await ledger.consume_credits(tenant_id, "menu_create")

        assert result.success
        assert result.cost == 100
        assert result.new_balance == 400
        account = await ledger.get_account(tenant_id)
        assert account.lifetime_spent == 100
        assert account.credits_used_today == 100

    @pytest.mark.asyncio
    async def test_consume_with_reference_is_idempotent(self, ledger, tenant_id, db_session):
        await ledger.grant_free_credits(tenant_id, 500)

        first = await ledger.consume_credits(tenant_id, "menu_create", reference_id="req-42")
        second = await ledger.consume_credits(tenant_id, "menu_create", reference_id="req-42")

        assert first.success and not first.already_applied
        assert second.success and second.already_applied
        assert second.transaction_id == first.transaction_id
        assert second.new_balance == first.new_balance == 400
        assert (await ledger.get_account(tenant_id)).balance == 400
        assert await transaction_count(db_session, tenant_id, reference_id="req-42") == 1

    @pytest.mark.asyncio
    async def test_purchase_webhook_redelivery_credits_once(self, ledger, tenant_id, db_session):
        first = await ledger.purchase_credits(tenant_id, 1000, "pay_abc")
        second = await ledger.purchase_credits(tenant_id, 1000, "pay_abc")

        assert first.success
        assert first.new_balance == 1000
        assert not second.success
        assert second.reason == LedgerFailureReason.DUPLICATE_PURCHASE
        assert second.already_applied
        assert (await ledger.get_account(tenant_id)).balance == 1000
        assert await transaction_count(db_session, tenant_id, transaction_type="purchase") == 1


class TestFreeGrants:

    @pytest.mark.asyncio
    async def test_cadence_across_month_boundary(self, ledger, tenant_id):
        january = await ledger.grant_free_credits(tenant_id, now=JAN_15)
        too_soon = await ledger.grant_free_credits(tenant_id, now=JAN_15 + timedelta(days=19))
        later = await ledger.grant_free_credits(tenant_id, now=JAN_15 + timedelta(days=26))

        assert january.success
        assert not too_soon.success
        assert too_soon.reason == LedgerFailureReason.GRANT_TOO_SOON
        assert later.success
        assert later.new_balance == 1000

    @pytest.mark.asyncio
    async def test_grant_records_period_and_schedule(self, ledger, tenant_id, db_session):
        await ledger.grant_free_credits(tenant_id, 250, now=JAN_15)

        account = await ledger.get_account(tenant_id)
        assert as_utc(account.last_free_grant_at) == JAN_15
        assert as_utc(account.next_free_grant_at) == JAN_15 + timedelta(days=30)

        transaction = (await ledger.list_transactions(tenant_id))[0]
        assert transaction.reference_id == free_grant_reference(tenant_id, JAN_15)
        assert transaction.reference_id.endswith(":2026-01")
        assert transaction.amount == 250

    @pytest.mark.asyncio
    async def test_default_amount_comes_from_settings(self, ledger, tenant_id, settings):
        result = await ledger.grant_free_credits(tenant_id)

        assert result.new_balance == settings.credits_free_grant_amount

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount, reason",
        [
            (0, LedgerFailureReason.INVALID_AMOUNT),
            (-5, LedgerFailureReason.INVALID_AMOUNT),
            (10001, LedgerFailureReason.AMOUNT_EXCEEDS_MAXIMUM),
        ],
    )
    async def test_invalid_amounts_are_rejected_before_writing(self, ledger, tenant_id, db_session, amount, reason):
        result = await ledger.grant_free_credits(tenant_id, amount)

        assert not result.success
        assert result.reason == reason
        assert await transaction_count(db_session, tenant_id) == 0

    @pytest.mark.asyncio
    async def test_grant_resets_monthly_usage(self, ledger, tenant_id):
        await ledger.grant_free_credits(tenant_id, now=JAN_15)
        await ledger.consume_credits(tenant_id, "menu_create")
        assert (await ledger.get_account(tenant_id)).credits_used_this_month == 100

        await ledger.grant_free_credits(tenant_id, now=JAN_15 + timedelta(days=30))

        assert (await ledger.get_account(tenant_id)).credits_used_this_month == 0

    @pytest.mark.asyncio
    async def test_monthly_job_grants_due_free_tenants_only(self, ledger, db_session, tenant_id):
        paid = await create_tenant(db_session, "big-distro", plan_type="enterprise")
        suspended = await create_tenant(db_session, "paused-co", status="suspended")
        await ledger.grant_free_credits(tenant_id, now=JAN_15)

        early = await ledger.grant_monthly_free_credits_for_all(now=JAN_15 + timedelta(days=10))
        due = await ledger.grant_monthly_free_credits_for_all(now=JAN_15 + timedelta(days=31))

        assert early == {}
        assert set(due) == {tenant_id}
        assert due[tenant_id].success
        assert paid not in due and suspended not in due

    @pytest.mark.asyncio
    async def test_monthly_job_after_month_end_grant(self, ledger, tenant_id):
        await ledger.grant_free_credits(tenant_id, now=datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc))

        too_soon = await ledger.grant_monthly_free_credits_for_all(
            now=datetime(2026, 2, 20, 12, 0, tzinfo=timezone.utc)
        )
        february = await ledger.grant_monthly_free_credits_for_all(
            now=datetime(2026, 2, 26, 12, 0, tzinfo=timezone.utc)
        )

        assert too_soon == {}
        assert february[tenant_id].success
        grants = await ledger.list_transactions(tenant_id, transaction_type="free_grant")
        assert grants[0].reference_id.endswith(":2026-02")
        assert (await ledger.get_account(tenant_id)).balance == 1000


class TestConsume:

    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(self, ledger, db_session):
        tenant_id = await create_tenant(db_session, "thin-margins", balance=50)

        result = await ledger.consume_credits(tenant_id, "menu_create")

        assert not result.success
        assert result.reason == LedgerFailureReason.INSUFFICIENT_CREDITS
        assert result.new_balance == 50
        assert result.cost == 100
        assert (await ledger.get_account(tenant_id)).balance == 50
        assert await transaction_count(db_session, tenant_id) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action_key", ["dashboard_view", "no_such_action"])
    async def test_free_and_unknown_actions_cost_nothing(self, ledger, tenant_id, db_session, action_key):
        result = await ledger.consume_credits(tenant_id, action_key)

        assert result.success
        assert result.cost == 0
        assert await transaction_count(db_session, tenant_id) == 0

    @pytest.mark.asyncio
    async def test_paid_plans_are_not_metered(self, ledger, db_session):
        tenant_id = await create_tenant(db_session, "big-distro", plan_type="professional", balance=0)

        result = await ledger.consume_credits(tenant_id, "wholesale_order_place")

        assert result.success
        assert not result.metered
        assert result.new_balance == 0
        assert await transaction_count(db_session, tenant_id) == 0

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, ledger):
        result = await ledger.consume_credits(uuid.uuid4(), "menu_create")

        assert not result.success
        assert result.reason == LedgerFailureReason.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_free_action_for_unknown_tenant(self, ledger):
        result = await ledger.consume_credits(uuid.uuid4(), "dashboard_view")

        assert not result.success
        assert result.reason == LedgerFailureReason.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_usage_row_is_signed_and_published(self, ledger, tenant_id, events):
        await ledger.purchase_credits(tenant_id, 200, "pay_1")

        result = await ledger.consume_credits(
            tenant_id, "send_sms", reference_id="sms-1", reference_type="message"
        )

        transaction = (await ledger.list_transactions(tenant_id, transaction_type="usage"))[0]
        assert transaction.id == result.transaction_id
        assert transaction.amount == -25
        assert transaction.balance_after == 175
        assert transaction.action_type == "send_sms"
        assert transaction.reference_type == "message"

        consumed = events.of_type(EventType.CREDITS_CONSUMED)
        assert len(consumed) == 1
        assert consumed[0].data["action_key"] == "send_sms"

    @pytest.mark.asyncio
    async def test_storage_failure_raises_and_applies_nothing(self, ledger, tenant_id, monkeypatch):
        await ledger.purchase_credits(tenant_id, 500, "pay_1")

        async def broken(*args, **kwargs):
            raise OperationalError("UPDATE credit_accounts", {}, Exception("connection lost"))

        monkeypatch.setattr(ledger, "_apply_delta", broken)
        with pytest.raises(CreditLedgerError):
            await ledger.consume_credits(tenant_id, "menu_create")

        monkeypatch.undo()
        assert (await ledger.get_account(tenant_id)).balance == 500


class TestPurchase:

    @pytest.mark.asyncio
    async def test_unique_index_backs_up_the_lookup(self, ledger, tenant_id, db_session, monkeypatch):
        other = await create_tenant(db_session, "other-shop")
        await ledger.purchase_credits(other, 300, "pay_shared")

        async def lookup_misses(reference_id):
            return None

        monkeypatch.setattr(ledger, "_find_purchase", lookup_misses)
        result = await ledger.purchase_credits(tenant_id, 300, "pay_shared")

        assert not result.success
        assert result.reason == LedgerFailureReason.DUPLICATE_PURCHASE
        assert result.already_applied
        assert await transaction_count(db_session, tenant_id) == 0
        assert (await ledger.get_balance_summary(tenant_id))["balance"] == 0

    @pytest.mark.asyncio
    async def test_requires_reference_and_positive_amount(self, ledger, tenant_id):
        assert (await ledger.purchase_credits(tenant_id, 100, "  ")).reason == LedgerFailureReason.INVALID_REFERENCE
        assert (await ledger.purchase_credits(tenant_id, 0, "pay_0")).reason == LedgerFailureReason.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, ledger):
        result = await ledger.purchase_credits(uuid.uuid4(), 100, "pay_ghost")

        assert result.reason == LedgerFailureReason.TENANT_NOT_FOUND


class TestAdjustments:

    @pytest.mark.asyncio
    async def test_positive_and_negative_adjustments(self, ledger, tenant_id):
        await ledger.adjust_credits(tenant_id, 300, "Goodwill")
        result = await ledger.adjust_credits(tenant_id, -120, "Chargeback", notes="Ticket 881")

        assert result.success
        assert result.new_balance == 180
        account = await ledger.get_account(tenant_id)
        assert account.lifetime_earned == 300
        assert account.lifetime_spent == 120

        transaction = (await ledger.list_transactions(tenant_id, transaction_type="adjustment"))[0]
        assert transaction.details["previous_balance"] == 300
        assert transaction.details["reason"] == "Chargeback"
        assert transaction.details["notes"] == "Ticket 881"

    @pytest.mark.asyncio
    async def test_cannot_drive_balance_negative(self, ledger, db_session):
        tenant_id = await create_tenant(db_session, "thin-margins", balance=40)

        result = await ledger.adjust_credits(tenant_id, -41, "Correction")

        assert not result.success
        assert result.reason == LedgerFailureReason.NEGATIVE_BALANCE
        assert (await ledger.get_account(tenant_id)).balance == 40

    @pytest.mark.asyncio
    async def test_zero_and_missing_reason_rejected(self, ledger, tenant_id):
        assert (await ledger.adjust_credits(tenant_id, 0, "Noop")).reason == LedgerFailureReason.INVALID_AMOUNT
        assert not (await ledger.adjust_credits(tenant_id, 10, " ")).success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sign", [1, -1])
    async def test_amount_beyond_limit_rejected(self, ledger, db_session, settings, sign):
        tenant_id = await create_tenant(db_session, "fat-finger", balance=settings.credits_purchase_max + 10)

        result = await ledger.adjust_credits(tenant_id, sign * (settings.credits_purchase_max + 1), "Typo")

        assert not result.success
        assert result.reason == LedgerFailureReason.AMOUNT_EXCEEDS_MAXIMUM
        assert (await ledger.get_account(tenant_id)).balance == settings.credits_purchase_max + 10
        assert await transaction_count(db_session, tenant_id) == 0

    @pytest.mark.asyncio
    async def test_super_admin_adjustment_is_audited(self, ledger, tenant_id, db_session):
        admin = super_admin_context()

        result = await ledger.adjust_credits(tenant_id, 75, "Support credit", actor=admin)

        action = (await db_session.execute(select(SuperAdminAction))).scalar_one()
        assert action.action == "credits.adjust"
        assert action.tenant_id == tenant_id
        assert action.resource_id == str(result.transaction_id)
        transaction = (await ledger.list_transactions(tenant_id))[0]
        assert transaction.details["admin_user_id"] == str(admin.user_id)


class TestRefunds:

    @pytest.mark.asyncio
    async def test_refund_restores_usage_once(self, ledger, tenant_id):
        await ledger.purchase_credits(tenant_id, 500, "pay_1")
        usage = await ledger.consume_credits(tenant_id, "menu_create")

        refund = await ledger.refund_usage(tenant_id, usage.transaction_id, reason="Menu failed to publish")
        again = await ledger.refund_usage(tenant_id, usage.transaction_id)

        assert refund.success
        assert refund.new_balance == 500
        assert not again.success
        assert again.reason == LedgerFailureReason.ALREADY_REFUNDED
        account = await ledger.get_account(tenant_id)
        assert account.balance == 500
        assert account.lifetime_earned == 600
        assert account.reconciles

    @pytest.mark.asyncio
    async def test_only_usage_of_the_same_tenant_is_refundable(self, ledger, tenant_id, db_session):
        other = await create_tenant(db_session, "other-shop")
        purchase = await ledger.purchase_credits(tenant_id, 500, "pay_1")
        await ledger.purchase_credits(other, 500, "pay_2")
        foreign_usage = await ledger.consume_credits(other, "menu_create")

        not_usage = await ledger.refund_usage(tenant_id, purchase.transaction_id)
        foreign = await ledger.refund_usage(tenant_id, foreign_usage.transaction_id)

        assert not_usage.reason == LedgerFailureReason.TRANSACTION_NOT_FOUND
        assert foreign.reason == LedgerFailureReason.TRANSACTION_NOT_FOUND


class TestBulkAndJobs:

    @pytest.mark.asyncio
    async def test_bonus_grant_counts_credited_tenants(self, ledger, db_session, tenant_id):
        other = await create_tenant(db_session, "other-shop")

        granted = await ledger.grant_bonus_credits(
            [tenant_id, other, uuid.uuid4(), tenant_id], 150, "launch_promo", notes="Spring launch"
        )

        assert granted == 2
        for tid in (tenant_id, other):
            account = await ledger.get_account(tid)
            assert account.balance == 150
            transaction = (await ledger.list_transactions(tid))[0]
            assert transaction.transaction_type == "bonus"
            assert transaction.action_type == "launch_promo"

    @pytest.mark.asyncio
    async def test_bonus_rejects_invalid_amount(self, ledger, tenant_id):
        assert await ledger.grant_bonus_credits([tenant_id], 0, "promo") == 0

    @pytest.mark.asyncio
    async def test_daily_and_weekly_resets(self, ledger, tenant_id, db_session):
        idle = await create_tenant(db_session, "idle-shop", balance=10)
        await ledger.purchase_credits(tenant_id, 500, "pay_1")
        await ledger.consume_credits(tenant_id, "menu_create")

        assert await ledger.reset_daily_usage() == 1
        account = await ledger.get_account(tenant_id)
        assert account.credits_used_today == 0
        assert account.credits_used_this_week == 100
        assert account.last_daily_reset is not None

        assert await ledger.reset_weekly_usage() == 1
        assert (await ledger.get_account(tenant_id)).credits_used_this_week == 0
        assert (await ledger.get_account(idle)).last_daily_reset is None


class TestReads:

    @pytest.mark.asyncio
    async def test_summary_before_account_exists(self, ledger, tenant_id):
        summary = await ledger.get_balance_summary(tenant_id)

        assert summary["balance"] == 0
        assert summary["is_free_tier"] is True
        assert summary["credit_status"] == "depleted"

    @pytest.mark.parametrize(
        "balance, free_tier, status",
        [
            (0, True, "depleted"),
            (15, True, "critical"),
            (50, True, "warning"),
            (51, True, "healthy"),
            (0, False, "unlimited"),
        ],
    )
    def test_credit_status(self, settings, balance, free_tier, status):
        ledger = CreditLedgerService(None, settings=settings)
        assert ledger.credit_status(balance, free_tier) == status

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_filterable(self, ledger, tenant_id):
        await ledger.grant_free_credits(tenant_id, now=JAN_15)
        await ledger.purchase_credits(tenant_id, 100, "pay_1")
        await ledger.consume_credits(tenant_id, "product_add")

        history = await ledger.list_transactions(tenant_id)
        purchases = await ledger.list_transactions(tenant_id, transaction_type="purchase")

        assert [t.transaction_type for t in history] == ["usage", "purchase", "free_grant"]
        assert [t.reference_id for t in purchases] == ["pay_1"]
        assert len(await ledger.list_transactions(tenant_id, offset=1, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_reconciles_after_grant_dated_ahead(self, ledger, tenant_id):
        await ledger.grant_free_credits(tenant_id, now=utcnow() + timedelta(hours=1))
        await ledger.consume_credits(tenant_id, "menu_create")

        report = await ledger.reconcile(tenant_id)
        history = await ledger.list_transactions(tenant_id)

        assert report["reconciles"]
        assert report["last_balance_after"] == 400
        assert history[0].transaction_type == "usage"

    @pytest.mark.asyncio
    async def test_random_operations_keep_invariants(self, ledger, tenant_id):
        rng = random.Random(7)
        await ledger.purchase_credits(tenant_id, 300, "pay_seed")

        for step in range(40):
            if rng.random() < 0.7:
                await ledger.consume_credits(tenant_id, rng.choice(["menu_view", "stock_update", "send_sms", "menu_create"]))
            else:
                await ledger.adjust_credits(tenant_id, rng.randint(-80, 80) or 1, f"step {step}")

            account = await ledger.get_account(tenant_id)
            assert account.balance >= 0
            assert account.balance == account.lifetime_earned - account.lifetime_spent

        report = await ledger.reconcile(tenant_id)
        assert report["reconciles"]
        assert report["last_balance_after"] == report["balance"]
