"""Concurrent ledger operations against one tenant.

Each task uses its own session, like two API workers handling requests at the
same time.
"""

import asyncio

import pytest
from sqlalchemy import func, select

from factories import create_tenant
from src.models.credit import CreditAccount, CreditTransaction
from src.services.credit_ledger import CreditLedgerService, LedgerFailureReason


async def consume_in_own_session(session_factory, settings, tenant_id, action_key, reference_id=None):
    async with session_factory() as session:
        ledger = CreditLedgerService(session, settings=settings)
        return await ledger.consume_credits(tenant_id, action_key, reference_id=reference_id)


async def purchase_in_own_session(session_factory, settings, tenant_id, reference):
    async with session_factory() as session:
        ledger = CreditLedgerService(session, settings=settings)
        return await ledger.purchase_credits(tenant_id, 250, reference)


async def snapshot(session_factory, tenant_id):
    async with session_factory() as session:
        balance = (
            await session.execute(select(CreditAccount.balance).where(CreditAccount.tenant_id == tenant_id))
        ).scalar_one()
        rows = (
            await session.execute(
                select(func.count()).select_from(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
            )
        ).scalar_one()
        await session.commit()
    return balance, rows


@pytest.mark.asyncio
async def test_only_one_of_two_debits_for_the_whole_balance_succeeds(db_session, session_factory, settings):
    tenant_id = await create_tenant(db_session, "race-shop", balance=100)
    await db_session.close()

    results = await asyncio.gather(
        consume_in_own_session(session_factory, settings, tenant_id, "menu_create"),
        consume_in_own_session(session_factory, settings, tenant_id, "menu_create"),
    )

    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert failed[0].reason == LedgerFailureReason.INSUFFICIENT_CREDITS
    assert await snapshot(session_factory, tenant_id) == (0, 1)


@pytest.mark.asyncio
async def test_many_small_debits_never_overdraw(db_session, session_factory, settings):
    tenant_id = await create_tenant(db_session, "busy-shop", balance=50)
    await db_session.close()

    results = await asyncio.gather(*[
        consume_in_own_session(session_factory, settings, tenant_id, "product_add") for _ in range(8)
    ])

    assert sum(1 for r in results if r.success) == 5
    assert await snapshot(session_factory, tenant_id) == (0, 5)


@pytest.mark.asyncio
async def test_concurrent_retries_with_same_reference_apply_once(db_session, session_factory, settings):
    tenant_id = await create_tenant(db_session, "retry-shop", balance=500)
    await db_session.close()

    results = await asyncio.gather(*[
        consume_in_own_session(session_factory, settings, tenant_id, "menu_create", reference_id="req-42")
        for _ in range(3)
    ])

    assert all(r.success for r in results)
    assert sum(1 for r in results if not r.already_applied) == 1
    assert len({r.transaction_id for r in results}) == 1
    assert await snapshot(session_factory, tenant_id) == (400, 1)


@pytest.mark.asyncio
async def test_concurrent_webhook_deliveries_credit_once(db_session, session_factory, settings):
    tenant_id = await create_tenant(db_session, "webhook-shop")
    await db_session.close()

    results = await asyncio.gather(*[
        purchase_in_own_session(session_factory, settings, tenant_id, "pay_abc") for _ in range(3)
    ])

    assert sum(1 for r in results if r.success) == 1
    assert all(r.reason == LedgerFailureReason.DUPLICATE_PURCHASE for r in results if not r.success)
    assert await snapshot(session_factory, tenant_id) == (250, 1)
