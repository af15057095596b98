# miragecodex/services/credits.py
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import InsufficientCreditsError, InvalidRequestError, ProviderNotConfiguredError
from miragecodex.models import (
    CreditTransaction, GenerationModel, ModelDomain, PendingDebit, SubscriptionPlan, UserApiKey, UserBilling,
)
from miragecodex.settings.config import settings

logger = logging.getLogger(__name__)

PAGE_GENERATION = "page_generation"
MONTHLY_RESET = "monthly_reset"
PLAN_GRANT = "plan_grant"


def _now() -> datetime:
    # billing timestamps are stored naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_month(dt: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = dt.year + (1 if dt.month == 12 else 0)
    month = 1 if dt.month == 12 else dt.month + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


# ---------- cost ----------

async def page_generation_cost(db: AsyncSession, model_id: int, default: Optional[int] = None) -> int:
    fallback = settings.DEFAULT_PAGE_GENERATION_CREDITS if default is None else default
    model = await db.get(GenerationModel, model_id)
    if not model or not model.is_active or model.page_generation_credits is None:
        return fallback
    return int(model.page_generation_credits)


# ---------- bring-your-own keys ----------

def _fernet() -> Fernet:
    if not settings.API_KEY_ENCRYPTION_KEY:
        raise ProviderNotConfiguredError("API key storage is not configured")
    return Fernet(settings.API_KEY_ENCRYPTION_KEY.encode())


async def has_byo_key(db: AsyncSession, user_id: int, domain_code: str) -> bool:
    # a stored key we cannot decrypt is no key: the server key is used and metered
    return await get_byo_key(db, user_id, domain_code) is not None


async def get_byo_key(db: AsyncSession, user_id: int, domain_code: str) -> Optional[str]:
    row = await db.get(UserApiKey, (user_id, domain_code))
    if not row:
        return None
    try:
        return _fernet().decrypt(row.api_key_enc.encode()).decode()
    except (InvalidToken, ProviderNotConfiguredError):
        logger.error("Stored %s key for user %s cannot be decrypted", domain_code, user_id)
        return None


async def store_api_key(db: AsyncSession, user_id: int, domain_code: str, api_key: str) -> None:
    key = (api_key or "").strip()
    if not key:
        raise InvalidRequestError("API key is required")
    if not await db.get(ModelDomain, domain_code):
        raise InvalidRequestError(f"Unknown provider domain: {domain_code}")
    token = _fernet().encrypt(key.encode()).decode()

    row = await db.get(UserApiKey, (user_id, domain_code))
    if row:
        row.api_key_enc = token
    else:
        db.add(UserApiKey(user_id=user_id, domain_code=domain_code, api_key_enc=token))
    await db.commit()
    logger.info("Stored %s API key for user %s", domain_code, user_id)


async def delete_api_key(db: AsyncSession, user_id: int, domain_code: str) -> bool:
    row = await db.get(UserApiKey, (user_id, domain_code))
    if not row:
        return False
    await db.delete(row)
    await db.commit()
    logger.info("Removed %s API key for user %s", domain_code, user_id)
    return True


# ---------- gate ----------

@dataclass(frozen=True)
class CreditCheck:
    allowed: bool
    cost_owed: int
    byo_key: bool
    credits_available: int = 0


async def pending_debit_total(db: AsyncSession, user_id: int) -> int:
    total = (
        await db.execute(
            select(func.coalesce(func.sum(PendingDebit.amount), 0)).where(
                PendingDebit.user_id == user_id,
                PendingDebit.resolved_at.is_(None),
                PendingDebit.abandoned.is_(False),
            )
        )
    ).scalar_one()
    return int(total or 0)


async def available_credits(db: AsyncSession, user_id: int) -> int:
    """Balance minus debits still owed for already-saved pages."""
    balance = (
        await db.execute(select(UserBilling.credits).where(UserBilling.user_id == user_id))
    ).scalar_one_or_none()
    return int(balance or 0) - await pending_debit_total(db, user_id)


async def check_affordability(db: AsyncSession, user_id: int, model: GenerationModel) -> CreditCheck:
    """Read-only; nothing is reserved between this check and the debit at save time."""
    if await has_byo_key(db, user_id, model.domain_code):
        logger.info("Credit gate: user %s uses own %s key", user_id, model.domain_code)
        return CreditCheck(allowed=True, cost_owed=0, byo_key=True)

    cost = await page_generation_cost(db, model.id)
    available = await available_credits(db, user_id)
    allowed = available >= cost
    logger.info(
        "Credit gate: user %s needs %s, has %s -> %s",
        user_id, cost, available, "allowed" if allowed else "refused",
    )
    return CreditCheck(allowed=allowed, cost_owed=cost, byo_key=False, credits_available=available)


async def require_affordable(db: AsyncSession, user_id: int, model: GenerationModel) -> CreditCheck:
    check = await check_affordability(db, user_id, model)
    if not check.allowed:
        raise InsufficientCreditsError(check.cost_owed, max(0, check.credits_available))
    return check


# ---------- ledger ----------

async def _apply_debit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    transaction_type: str,
    description: str,
    metadata: Optional[dict],
) -> bool:
    # the balance check and the decrement are one statement
    result = await db.execute(
        update(UserBilling)
        .where(UserBilling.user_id == user_id, UserBilling.credits >= amount)
        .values(
            credits=UserBilling.credits - amount,
            credits_used_this_month=UserBilling.credits_used_this_month + amount,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=-amount,
            transaction_type=transaction_type,
            description=description,
            meta=metadata or {},
        )
    )
    return True


async def debit_credits(
    db: AsyncSession,
    user_id: int,
    amount: int,
    transaction_type: str = PAGE_GENERATION,
    description: str = "",
    metadata: Optional[dict] = None,
) -> bool:
    """Debit ``amount`` if the balance covers it. False leaves no trace."""
    if amount <= 0:
        return True
    ok = await _apply_debit(db, user_id, amount, transaction_type, description, metadata)
    if not ok:
        logger.warning("Debit of %s refused for user %s: insufficient balance", amount, user_id)
        return False
    await db.commit()
    logger.info("Debited %s credits from user %s (%s)", amount, user_id, transaction_type)
    return True


async def record_pending_debit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    transaction_type: str = PAGE_GENERATION,
    description: str = "",
    metadata: Optional[dict] = None,
    error: Optional[str] = None,
) -> PendingDebit:
    row = PendingDebit(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        meta=metadata or {},
        attempts=0,
        last_error=error,
    )
    db.add(row)
    await db.commit()
    logger.warning("Queued pending debit %s of %s credits for user %s", row.id, amount, user_id)
    return row


async def reconcile_pending_debits(db: AsyncSession, max_attempts: Optional[int] = None) -> dict:
    limit = settings.PENDING_DEBIT_MAX_ATTEMPTS if max_attempts is None else max_attempts
    ids = (
        await db.execute(
            select(PendingDebit.id)
            .where(PendingDebit.resolved_at.is_(None), PendingDebit.abandoned.is_(False))
            .order_by(PendingDebit.id.asc())
        )
    ).scalars().all()

    stats = {"resolved": 0, "retrying": 0, "abandoned": 0}
    for pid in ids:
        p = await db.get(PendingDebit, pid)
        try:
            ok = await _apply_debit(db, p.user_id, p.amount, p.transaction_type, p.description or "", p.meta)
            error = None if ok else "insufficient credits"
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception("Pending debit %s failed", pid)
            p = await db.get(PendingDebit, pid)
            ok, error = False, str(e)[:500]

        if ok:
            p.resolved_at = _now()
            stats["resolved"] += 1
        else:
            p.attempts = (p.attempts or 0) + 1
            p.last_error = error
            if p.attempts >= limit:
                p.abandoned = True
                stats["abandoned"] += 1
                logger.error("Abandoning pending debit %s for user %s after %s attempts", pid, p.user_id, p.attempts)
            else:
                stats["retrying"] += 1
        await db.commit()

    if ids:
        logger.info("Pending debit reconciliation: %s", stats)
    return stats


# ---------- plans ----------

async def _free_plan(db: AsyncSession) -> SubscriptionPlan:
    plan = (
        await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.slug == settings.FREE_PLAN_SLUG))
    ).scalars().first()
    if plan:
        return plan
    plan = SubscriptionPlan(
        slug=settings.FREE_PLAN_SLUG,
        name="Free",
        description="Monthly free credits",
        credits_per_month=settings.FREE_PLAN_MONTHLY_CREDITS,
        price_cents=0,
        is_active=True,
    )
    db.add(plan)
    await db.flush()
    return plan


async def bootstrap_billing(db: AsyncSession, user_id: int) -> UserBilling:
    """Create the free-plan billing row for a new user; an existing row is kept."""
    existing = await db.get(UserBilling, user_id)
    if existing:
        return existing

    plan = await _free_plan(db)
    now = _now()
    billing = UserBilling(
        user_id=user_id,
        plan_id=plan.id,
        credits=plan.credits_per_month,
        credits_used_this_month=0,
        credits_reset_at=add_month(now),
    )
    db.add(billing)
    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=plan.credits_per_month,
            transaction_type=PLAN_GRANT,
            description=f"{plan.name} plan credits",
            meta={"plan": plan.slug},
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # registered twice concurrently; the other row stands
        await db.rollback()
        return await db.get(UserBilling, user_id)
    logger.info("Billing created for user %s on plan %s", user_id, plan.slug)
    return billing


async def reset_monthly_credits(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or _now()
    rows = (
        await db.execute(
            select(UserBilling).where(
                (UserBilling.credits_reset_at.is_(None)) | (UserBilling.credits_reset_at <= now)
            )
            .execution_options(populate_existing=True)
        )
    ).unique().scalars().all()
    plans = dict((await db.execute(select(SubscriptionPlan.id, SubscriptionPlan.credits_per_month))).all())

    for b in rows:
        monthly = plans.get(b.plan_id, settings.FREE_PLAN_MONTHLY_CREDITS)
        delta = monthly - (b.credits or 0)
        b.credits = monthly
        b.credits_used_this_month = 0
        next_reset = b.credits_reset_at or now
        while next_reset <= now:
            next_reset = add_month(next_reset)
        b.credits_reset_at = next_reset
        db.add(
            CreditTransaction(
                user_id=b.user_id,
                amount=delta,
                transaction_type=MONTHLY_RESET,
                description="Monthly credit reset",
                meta={"credits": monthly},
            )
        )
    await db.commit()
    if rows:
        logger.info("Monthly credit reset applied to %d accounts", len(rows))
    return len(rows)


# ---------- read side ----------

async def billing_summary(db: AsyncSession, user_id: int) -> dict:
    billing = await db.get(UserBilling, user_id)
    if not billing:
        billing = await bootstrap_billing(db, user_id)
    plan = await db.get(SubscriptionPlan, billing.plan_id) if billing.plan_id else None
    pending = await pending_debit_total(db, user_id)
    return {
        "user_id": user_id,
        "plan_slug": plan.slug if plan else None,
        "plan_name": plan.name if plan else None,
        "credits_per_month": plan.credits_per_month if plan else 0,
        "credits": billing.credits,
        "credits_used_this_month": billing.credits_used_this_month,
        "credits_reset_at": billing.credits_reset_at,
        "pending_debits": pending,
    }


async def list_transactions(db: AsyncSession, user_id: int, page: int = 1, limit: int = 50) -> dict:
    limit = max(1, min(limit, 100))
    page = max(1, page)
    total = (
        await db.execute(select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id))
    ).scalar_one()
    rows = (
        await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    total_pages = (total + limit - 1) // limit
    return {
        "transactions": rows,
        "page": page,
        "limit": limit,
        "total": total,
        "has_more": page < total_pages,
    }
