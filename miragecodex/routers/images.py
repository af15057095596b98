from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.database import get_db
from miragecodex.image_client import ImageClient, get_image_client
from miragecodex.models import User
from miragecodex.services.covers import ensure_book_cover
from miragecodex.services.page_images import ensure_page_image
from miragecodex.storage import ObjectStore, get_object_store
from miragecodex.utils import get_current_user, require_authenticated_user

router = APIRouter(prefix="/api/book/{book_id}", tags=["images"])


@router.get("/page/{page_number}/image")
async def page_image(
    book_id: int,
    page_number: int,
    edition_id: int = Query(..., alias="edition"),
    prompt: str = Query(..., min_length=1),
    user: Optional[User] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    images: ImageClient = Depends(get_image_client),
):
    result = await ensure_page_image(
        db, store, images, user.id if user else None, book_id, edition_id, page_number, prompt
    )
    return RedirectResponse(result.url, status_code=307)


@router.get("/cover")
async def book_cover(
    book_id: int,
    user: Optional[User] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    images: ImageClient = Depends(get_image_client),
):
    result = await ensure_book_cover(db, store, images, user.id if user else None, book_id)
    return RedirectResponse(result.url, status_code=307)


@router.post("/cover")
async def regenerate_cover(
    book_id: int,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    images: ImageClient = Depends(get_image_client),
):
    result = await ensure_book_cover(db, store, images, user.id, book_id, regenerate=True)
    return {"success": True, "coverUrl": result.url}
