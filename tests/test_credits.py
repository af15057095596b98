# tests/test_credits.py
from datetime import datetime

import pytest
from sqlalchemy import select

from miragecodex.errors import InsufficientCreditsError
from miragecodex.models import CreditTransaction, GenerationModel, PendingDebit, UserApiKey, UserBilling
from miragecodex.services import credits


async def balance(session_maker, user_id):
    async with session_maker() as s:
        return (await s.get(UserBilling, user_id)).credits


@pytest.mark.asyncio
async def test_cost_falls_back_to_default(db, catalog):
    assert await credits.page_generation_cost(db, catalog.gpt_id) == 3
    assert await credits.page_generation_cost(db, catalog.claude_id) == 5
    assert await credits.page_generation_cost(db, 9999, default=4) == 4


@pytest.mark.asyncio
async def test_gate_refuses_when_balance_short(db, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 2
    await db.commit()
    model = await db.get(GenerationModel, catalog.gpt_id)

    check = await credits.check_affordability(db, catalog.user_id, model)
    assert not check.allowed and check.cost_owed == 3 and check.credits_available == 2

    with pytest.raises(InsufficientCreditsError) as exc:
        await credits.require_affordable(db, catalog.user_id, model)
    assert exc.value.to_payload()["credits_needed"] == 3
    assert exc.value.to_payload()["credits_available"] == 2


@pytest.mark.asyncio
async def test_gate_counts_pending_debits(db, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 5
    db.add(PendingDebit(user_id=catalog.user_id, amount=3, transaction_type="page_generation"))
    await db.commit()
    model = await db.get(GenerationModel, catalog.gpt_id)

    check = await credits.check_affordability(db, catalog.user_id, model)
    assert check.credits_available == 2
    assert not check.allowed


@pytest.mark.asyncio
async def test_byo_key_bypasses_gate(db, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 0
    await db.commit()
    await credits.store_api_key(db, catalog.user_id, "openai", "sk-user-own")
    model = await db.get(GenerationModel, catalog.gpt_id)

    check = await credits.check_affordability(db, catalog.user_id, model)
    assert (check.allowed, check.cost_owed, check.byo_key) == (True, 0, True)
    assert await credits.get_byo_key(db, catalog.user_id, "openai") == "sk-user-own"

    row = await db.get(UserApiKey, (catalog.user_id, "openai"))
    assert "sk-user-own" not in row.api_key_enc


@pytest.mark.asyncio
async def test_debit_is_atomic_and_recorded(db, session_maker, catalog):
    assert await credits.debit_credits(db, catalog.user_id, 3, description="Page 1 generation")
    assert await balance(session_maker, catalog.user_id) == 47

    txs = (await db.execute(select(CreditTransaction).where(CreditTransaction.user_id == catalog.user_id))).scalars().all()
    assert [t.amount for t in txs] == [-3]
    assert txs[0].transaction_type == "page_generation"


@pytest.mark.asyncio
async def test_debit_refused_leaves_no_trace(db, session_maker, catalog):
    assert not await credits.debit_credits(db, catalog.user_id, 51)
    await db.commit()
    assert await balance(session_maker, catalog.user_id) == 50
    count = (await db.execute(select(CreditTransaction))).scalars().all()
    assert count == []


@pytest.mark.asyncio
async def test_reconcile_applies_when_funds_arrive(db, session_maker, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 1
    await db.commit()
    await credits.record_pending_debit(db, catalog.user_id, 3, description="Page 2 generation")

    stats = await credits.reconcile_pending_debits(db, max_attempts=5)
    assert stats == {"resolved": 0, "retrying": 1, "abandoned": 0}

    async with session_maker() as s:
        (await s.get(UserBilling, catalog.user_id)).credits = 10
        await s.commit()

    stats = await credits.reconcile_pending_debits(db, max_attempts=5)
    assert stats["resolved"] == 1
    assert await balance(session_maker, catalog.user_id) == 7
    pending = (await db.execute(select(PendingDebit))).scalars().one()
    assert pending.resolved_at is not None
    assert pending.attempts == 1


@pytest.mark.asyncio
async def test_reconcile_abandons_after_max_attempts(db, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 0
    await db.commit()
    await credits.record_pending_debit(db, catalog.user_id, 3)

    await credits.reconcile_pending_debits(db, max_attempts=2)
    stats = await credits.reconcile_pending_debits(db, max_attempts=2)
    assert stats["abandoned"] == 1
    assert await credits.pending_debit_total(db, catalog.user_id) == 0


@pytest.mark.asyncio
async def test_monthly_reset_refills_and_advances(db, session_maker, catalog):
    billing = await db.get(UserBilling, catalog.user_id)
    billing.credits = 4
    billing.credits_used_this_month = 46
    billing.credits_reset_at = datetime(2025, 1, 31, 12, 0)
    await db.commit()

    refreshed = await credits.reset_monthly_credits(db, now=datetime(2025, 2, 1, 0, 0))
    assert refreshed >= 1

    async with session_maker() as s:
        b = await s.get(UserBilling, catalog.user_id)
        assert b.credits == 50
        assert b.credits_used_this_month == 0
        assert b.credits_reset_at == datetime(2025, 2, 28, 12, 0)


def test_add_month_clamps_to_month_end():
    assert credits.add_month(datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert credits.add_month(datetime(2024, 12, 15)) == datetime(2025, 1, 15)


@pytest.mark.asyncio
async def test_bootstrap_billing_is_idempotent(db, catalog):
    from miragecodex.models import User

    user = User(email="new@example.com", hashed_password="x", is_active=True, is_superuser=False, is_verified=True)
    db.add(user)
    await db.commit()

    first = await credits.bootstrap_billing(db, user.id)
    assert first.credits == 50
    first.credits = 12
    await db.commit()

    second = await credits.bootstrap_billing(db, user.id)
    assert second.credits == 12


@pytest.mark.asyncio
async def test_undecryptable_key_counts_as_no_key(db, catalog):
    db.add(UserApiKey(user_id=catalog.user_id, domain_code="openai", api_key_enc="not-a-fernet-token"))
    await db.commit()
    model = await db.get(GenerationModel, catalog.gpt_id)

    assert not await credits.has_byo_key(db, catalog.user_id, "openai")
    check = await credits.check_affordability(db, catalog.user_id, model)
    assert (check.byo_key, check.cost_owed) == (False, 3)
