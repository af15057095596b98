# miragecodex/services/page_images.py
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import InvalidRequestError, NotFoundError, StorageError, UnauthenticatedError
from miragecodex.image_client import ImageClient
from miragecodex.models import BookPageImage, Edition
from miragecodex.settings.config import settings
from miragecodex.storage import PAGE_IMAGES_BUCKET, ObjectStore

logger = logging.getLogger(__name__)

PAGE_IMAGE_WIDTH = 768
PAGE_IMAGE_HEIGHT = 512
PAGE_IMAGE_STEPS = 4
PROMPT_SUFFIX = ", high quality, detailed, artistic, book illustration style"


@dataclass(frozen=True)
class ImageResult:
    reference: str
    url: str
    created: bool


def page_image_hash(book_id: int, edition_id: int, page_number: int, prompt_text: str) -> str:
    raw = f"{book_id}:{edition_id}:{page_number}:{prompt_text}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def page_image_filename(book_id: int, edition_id: int, page_number: int, digest: str) -> str:
    return f"{book_id}_{edition_id}_page{page_number}_{digest[:8]}.jpg"


async def find_page_image(db: AsyncSession, digest: str) -> Optional[BookPageImage]:
    return (await db.execute(select(BookPageImage).where(BookPageImage.hash == digest))).scalars().first()


async def _insert_record(db: AsyncSession, values: dict, attempts: int) -> tuple[Optional[BookPageImage], bool]:
    """Insert the image row; on a hash collision the existing row wins."""
    for attempt in range(1, attempts + 1):
        row = BookPageImage(**values)
        db.add(row)
        try:
            await db.commit()
            return row, True
        except IntegrityError:
            await db.rollback()
            existing = await find_page_image(db, values["hash"])
            if existing:
                logger.info("Page image %s was stored concurrently; using it", values["hash"][:8])
                return existing, False
            logger.exception("Page image record rejected")
            raise StorageError("Failed to save page image record")
        except SQLAlchemyError:
            await db.rollback()
            logger.warning("Page image insert attempt %d/%d failed", attempt, attempts, exc_info=True)
            await asyncio.sleep(0.05 * attempt)
    return None, False


async def ensure_page_image(
    db: AsyncSession,
    store: ObjectStore,
    images: ImageClient,
    user_id: Optional[int],
    book_id: int,
    edition_id: int,
    page_number: int,
    prompt_text: str,
) -> ImageResult:
    prompt_text = (prompt_text or "").strip()
    if not prompt_text:
        raise InvalidRequestError("Image prompt is required")

    digest = page_image_hash(book_id, edition_id, page_number, prompt_text)
    hit = await find_page_image(db, digest)
    if hit and hit.image_url:
        logger.info("Page image cache hit %s", digest[:8])
        return ImageResult(reference=hit.image_url, url=store.public_url(PAGE_IMAGES_BUCKET, hit.image_url), created=False)

    if user_id is None:
        raise UnauthenticatedError("Authentication required to generate images")

    edition = await db.get(Edition, edition_id)
    if not edition or edition.book_id != book_id:
        raise NotFoundError("Edition not found for this book")

    logger.info("Page image cache miss %s; generating", digest[:8])
    enhanced = f"{prompt_text}{PROMPT_SUFFIX}"
    generated = await images.generate(
        enhanced,
        endpoint=settings.PAGE_IMAGE_ENDPOINT,
        width=PAGE_IMAGE_WIDTH,
        height=PAGE_IMAGE_HEIGHT,
        steps=PAGE_IMAGE_STEPS,
    )

    filename = page_image_filename(book_id, edition_id, page_number, digest)
    await store.upload_image(PAGE_IMAGES_BUCKET, filename, generated.data)

    row, created = await _insert_record(
        db,
        {
            "hash": digest,
            "edition_id": edition_id,
            "page_number": page_number,
            "prompt_text": prompt_text,
            "image_url": filename,
            "data": {
                "original_prompt": prompt_text,
                "enhanced_prompt": enhanced,
                "generation_params": generated.params,
            },
        },
        settings.IMAGE_RECORD_INSERT_ATTEMPTS,
    )
    if row is None:
        # the file is stored and servable; the next request regenerates the record
        logger.error("Giving up on page image record %s; serving the stored file", digest[:8])
        return ImageResult(reference=filename, url=store.public_url(PAGE_IMAGES_BUCKET, filename), created=True)

    reference = row.image_url or filename
    return ImageResult(reference=reference, url=store.public_url(PAGE_IMAGES_BUCKET, reference), created=created)
