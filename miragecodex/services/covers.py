# miragecodex/services/covers.py
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import InvalidRequestError, NotFoundError, StorageError, UnauthenticatedError
from miragecodex.image_client import ImageClient
from miragecodex.models import Book
from miragecodex.services.page_images import ImageResult
from miragecodex.settings.config import settings
from miragecodex.storage import BOOK_COVERS_BUCKET, ObjectStore

logger = logging.getLogger(__name__)

COVER_SIZE = 512
COVER_STEPS = 8


def cover_filename(book_id: int) -> str:
    return f"{book_id}.jpg"


async def ensure_book_cover(
    db: AsyncSession,
    store: ObjectStore,
    images: ImageClient,
    user_id: Optional[int],
    book_id: int,
    *,
    regenerate: bool = False,
) -> ImageResult:
    """Existing cover, or generate one from the book's cover prompt.

    ``regenerate`` skips the existing-cover check and overwrites the file.
    """
    book = await db.get(Book, book_id)
    if not book:
        raise NotFoundError("Book not found")

    if book.cover_url and not regenerate:
        logger.info("Cover cache hit for book %s", book_id)
        return ImageResult(reference=book.cover_url, url=store.public_url(BOOK_COVERS_BUCKET, book.cover_url), created=False)

    if user_id is None:
        raise UnauthenticatedError("Authentication required to generate covers")
    prompt = (book.book_cover_prompt or "").strip()
    if not prompt:
        raise InvalidRequestError("Book has no cover prompt")

    logger.info("Generating cover for book %s (regenerate=%s)", book_id, regenerate)
    generated = await images.generate(
        prompt,
        endpoint=settings.COVER_IMAGE_ENDPOINT,
        width=COVER_SIZE,
        height=COVER_SIZE,
        steps=COVER_STEPS,
    )
    filename = cover_filename(book_id)
    await store.upload_image(BOOK_COVERS_BUCKET, filename, generated.data)

    book.cover_url = filename
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Could not record cover for book %s", book_id)
        raise StorageError("Failed to update book cover") from e

    return ImageResult(reference=filename, url=store.public_url(BOOK_COVERS_BUCKET, filename), created=True)
