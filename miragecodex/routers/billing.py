from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.database import get_db
from miragecodex.models import User
from miragecodex.schemas import ApiKeyUpdate, BillingRead, CreditCheckRead, TransactionPage
from miragecodex.services import credits
from miragecodex.services.context import load_edition
from miragecodex.utils import require_authenticated_user

router = APIRouter(prefix="/api/user", tags=["billing"])


@router.get("/billing", response_model=BillingRead)
async def get_billing(user: User = Depends(require_authenticated_user), db: AsyncSession = Depends(get_db)):
    return await credits.billing_summary(db, user.id)


@router.get("/transactions", response_model=TransactionPage)
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    return await credits.list_transactions(db, user.id, page=page, limit=limit)


@router.get("/credits/check", response_model=CreditCheckRead)
async def check_credits(
    edition_id: int = Query(..., alias="editionId"),
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    edition = await load_edition(db, edition_id)
    check = await credits.check_affordability(db, user.id, edition.model)
    return CreditCheckRead(
        allowed=check.allowed,
        credits_needed=check.cost_owed,
        credits_available=max(0, check.credits_available),
        byo_key=check.byo_key,
    )


@router.put("/api-keys/{domain_code}", status_code=204)
async def put_api_key(
    domain_code: str,
    body: ApiKeyUpdate,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await credits.store_api_key(db, user.id, domain_code, body.api_key)


@router.delete("/api-keys/{domain_code}")
async def delete_api_key(
    domain_code: str,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    removed = await credits.delete_api_key(db, user.id, domain_code)
    return {"removed": removed}
