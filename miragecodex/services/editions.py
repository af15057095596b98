# miragecodex/services/editions.py
import logging
from typing import List

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import ConflictError, InvalidRequestError, NotFoundError
from miragecodex.models import Book, BookPage, Edition, GenerationModel, Language

logger = logging.getLogger(__name__)


async def _existing_edition(db: AsyncSession, book_id: int, language_id: int, model_id: int):
    return (
        await db.execute(
            select(Edition).where(
                Edition.book_id == book_id,
                Edition.language_id == language_id,
                Edition.model_id == model_id,
            )
        )
    ).scalars().first()


def _conflict(existing_id: int) -> ConflictError:
    return ConflictError(
        "An edition with this language and model combination already exists",
        existing_edition_id=existing_id,
    )


async def create_edition(db: AsyncSession, book_id: int, language_id: int, model_id: int) -> Edition:
    if not await db.get(Book, book_id):
        raise NotFoundError("Book not found")

    existing = await _existing_edition(db, book_id, language_id, model_id)
    if existing:
        raise _conflict(existing.id)

    if not await db.get(Language, language_id):
        raise InvalidRequestError("Invalid language ID")
    model = await db.get(GenerationModel, model_id)
    if not model or not model.is_active:
        raise InvalidRequestError("Invalid model ID")

    edition = Edition(book_id=book_id, language_id=language_id, model_id=model_id)
    db.add(edition)
    try:
        await db.commit()
    except IntegrityError:
        # lost a race against an identical create
        await db.rollback()
        winner = await _existing_edition(db, book_id, language_id, model_id)
        raise _conflict(winner.id if winner else None)

    logger.info("Created edition %s for book %s (language=%s model=%s)", edition.id, book_id, language_id, model_id)
    return await db.get(Edition, edition.id, populate_existing=True)


async def list_editions(db: AsyncSession, book_id: int) -> List[dict]:
    if not await db.get(Book, book_id):
        raise NotFoundError("Book not found")
    counts = (
        select(BookPage.edition_id, func.count(BookPage.id).label("pages_saved"))
        .group_by(BookPage.edition_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(Edition, func.coalesce(counts.c.pages_saved, 0))
            .outerjoin(counts, counts.c.edition_id == Edition.id)
            .where(Edition.book_id == book_id)
            .order_by(Edition.created_at.asc(), Edition.id.asc())
        )
    ).unique().all()
    return [
        {
            "id": e.id,
            "book_id": e.book_id,
            "language_id": e.language_id,
            "language_code": e.language.code if e.language else None,
            "language_label": e.language.label if e.language else None,
            "model_id": e.model_id,
            "model_name": e.model.name if e.model else None,
            "model_domain": e.model.domain_code if e.model else None,
            "pages_saved": int(pages or 0),
            "created_at": e.created_at,
        }
        for e, pages in rows
    ]
