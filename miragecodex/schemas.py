from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi_users import schemas
from pydantic import BaseModel, Field


# =========================
# USER SCHEMAS
# =========================
class UserRead(schemas.BaseUser[int]):
    display_name: Optional[str] = None


class UserCreate(schemas.BaseUserCreate):
    display_name: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    display_name: Optional[str] = None


# =========================
# PAGE SCHEMAS
# =========================
class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class GeneratePageRequest(BaseModel):
    edition_id: int = Field(alias="editionId")
    messages: List[ChatMessage] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class PageStatus(BaseModel):
    exists: bool
    content: Optional[str] = None


class SavePageRequest(BaseModel):
    edition_id: int = Field(alias="editionId")
    content: str

    class Config:
        populate_by_name = True


class SavePageResponse(BaseModel):
    success: bool
    already_saved: bool = Field(alias="alreadySaved")
    credits_charged: int = Field(0, alias="creditsCharged")
    debit_pending: bool = Field(False, alias="debitPending")

    class Config:
        populate_by_name = True


class PageLikeRequest(BaseModel):
    edition_id: int = Field(alias="editionId")

    class Config:
        populate_by_name = True


class LikeResult(BaseModel):
    liked: bool
    likes_count: int = Field(alias="likesCount")

    class Config:
        populate_by_name = True


class ViewRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=128)

    class Config:
        populate_by_name = True


class PageViewRequest(ViewRequest):
    edition_id: int = Field(alias="editionId")


class ViewResult(BaseModel):
    success: bool = True
    counted: bool
    views_count: int = Field(alias="viewsCount")

    class Config:
        populate_by_name = True


# =========================
# EDITION SCHEMAS
# =========================
class EditionCreate(BaseModel):
    language_id: int = Field(alias="languageId")
    model_id: int = Field(alias="modelId")

    class Config:
        populate_by_name = True


class EditionRead(BaseModel):
    id: int
    book_id: int
    language_id: int
    language_code: Optional[str] = None
    language_label: Optional[str] = None
    model_id: int
    model_name: Optional[str] = None
    model_domain: Optional[str] = None
    pages_saved: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# BILLING SCHEMAS
# =========================
class BillingRead(BaseModel):
    user_id: int
    plan_slug: Optional[str] = None
    plan_name: Optional[str] = None
    credits_per_month: int = 0
    credits: int
    credits_used_this_month: int
    credits_reset_at: Optional[datetime] = None
    pending_debits: int = 0


class TransactionRead(BaseModel):
    id: int
    amount: int
    transaction_type: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="meta")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionPage(BaseModel):
    transactions: List[TransactionRead]
    page: int
    limit: int
    total: int
    has_more: bool


class CreditCheckRead(BaseModel):
    allowed: bool
    credits_needed: int
    credits_available: int
    byo_key: bool


class ApiKeyUpdate(BaseModel):
    api_key: str = Field(alias="apiKey", min_length=1)

    class Config:
        populate_by_name = True
