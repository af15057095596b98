from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.database import get_db
from miragecodex.llm_client import LLMClient, get_llm_client
from miragecodex.models import User
from miragecodex.project_config import ProjectConfig, get_project_config
from miragecodex.schemas import (
    GeneratePageRequest, LikeResult, PageLikeRequest, PageStatus, PageViewRequest, SavePageRequest, SavePageResponse,
    ViewResult,
)
from miragecodex.services.pages import generation_messages, get_book_page, prepare_generation, save_page
from miragecodex.services.reactions import record_page_view, toggle_page_like
from miragecodex.utils import client_ip, get_current_user, require_authenticated_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/book/{book_id}/page/{page_number}", tags=["pages"])


async def current_config(db: AsyncSession = Depends(get_db)) -> ProjectConfig:
    return await get_project_config(db)


@router.get("", response_model=PageStatus)
async def page_status(
    book_id: int,
    page_number: int,
    edition_id: int = Query(..., alias="editionId"),
    db: AsyncSession = Depends(get_db),
):
    page = await get_book_page(db, book_id, edition_id, page_number)
    logger.info("Page %s of edition %s: %s", page_number, edition_id, "hit" if page else "miss")
    if not page:
        return PageStatus(exists=False)
    return PageStatus(exists=True, content=page.content)


@router.post("")
async def generate_page(
    book_id: int,
    page_number: int,
    body: GeneratePageRequest,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
    config: ProjectConfig = Depends(current_config),
    llm: LLMClient = Depends(get_llm_client),
):
    plan = await prepare_generation(db, config, user.id, body.edition_id, page_number, book_id=book_id)
    messages = generation_messages(plan.prompt, [m.model_dump() for m in body.messages], page_number)
    tokens = await llm.stream_page(
        plan.domain_code,
        plan.model_name,
        messages,
        temperature=plan.temperature,
        max_tokens=plan.max_tokens,
        api_key=plan.api_key,
        deadline_seconds=plan.deadline_seconds,
    )
    return StreamingResponse(tokens, media_type="text/plain; charset=utf-8")


@router.post("/save", response_model=SavePageResponse)
async def save_generated_page(
    book_id: int,
    page_number: int,
    body: SavePageRequest,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    user_id = user.id
    result = await save_page(db, user_id, body.edition_id, page_number, body.content, book_id=book_id)
    return SavePageResponse(
        success=True,
        already_saved=result.already_saved,
        credits_charged=result.credits_charged,
        debit_pending=result.debit_pending,
    )


@router.post("/like", response_model=LikeResult)
async def like_page(
    book_id: int,
    page_number: int,
    body: PageLikeRequest,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    result = await toggle_page_like(db, user.id, book_id, body.edition_id, page_number)
    return LikeResult(liked=result["liked"], likes_count=result["likes_count"])


@router.post("/view", response_model=ViewResult)
async def view_page(
    book_id: int,
    page_number: int,
    body: PageViewRequest,
    request: Request,
    user: Optional[User] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await record_page_view(
        db,
        book_id,
        body.edition_id,
        page_number,
        user_id=user.id if user else None,
        session_id=None if user else body.session_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ViewResult(counted=result["counted"], views_count=result["views_count"])
