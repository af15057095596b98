from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.database import get_db
from miragecodex.models import User
from miragecodex.schemas import EditionCreate, EditionRead, LikeResult, ViewRequest, ViewResult
from miragecodex.services.editions import create_edition, list_editions
from miragecodex.services.reactions import record_book_view, toggle_book_like
from miragecodex.utils import client_ip, get_current_user, require_authenticated_user

router = APIRouter(prefix="/api/book/{book_id}", tags=["books"])


@router.get("/editions", response_model=List[EditionRead])
async def get_editions(book_id: int, db: AsyncSession = Depends(get_db)):
    return await list_editions(db, book_id)


@router.post("/editions", status_code=201)
async def post_edition(
    book_id: int,
    body: EditionCreate,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    edition = await create_edition(db, book_id, body.language_id, body.model_id)
    return {
        "success": True,
        "edition": {
            "id": edition.id,
            "book_id": edition.book_id,
            "language_id": edition.language_id,
            "model_id": edition.model_id,
        },
    }


@router.post("/like", response_model=LikeResult)
async def like_book(
    book_id: int,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    result = await toggle_book_like(db, user.id, book_id)
    return LikeResult(liked=result["liked"], likes_count=result["likes_count"])


@router.post("/view", response_model=ViewResult)
async def view_book(
    book_id: int,
    request: Request,
    body: Optional[ViewRequest] = None,
    user: Optional[User] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await record_book_view(
        db,
        book_id,
        user_id=user.id if user else None,
        session_id=None if user or body is None else body.session_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ViewResult(counted=result["counted"], views_count=result["views_count"])
