# miragecodex/services/pages.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import InvalidRequestError, NotFoundError, StorageError
from miragecodex.models import BookPage, Edition
from miragecodex.project_config import ProjectConfig
from miragecodex.services import credits
from miragecodex.services.context import assemble_context, load_edition
from miragecodex.services.prompt_builder import build_page_prompt, generation_temperature, metadata_from_edition

logger = logging.getLogger(__name__)

GENERATION_MAX_TOKENS = 2000
CHAT_ROLES = ("user", "assistant")


@dataclass(frozen=True)
class GenerationPlan:
    edition_id: int
    book_id: int
    page_number: int
    domain_code: str
    model_name: str
    prompt: str
    temperature: float
    max_tokens: int
    deadline_seconds: int
    cost: int
    api_key: Optional[str] = None


@dataclass(frozen=True)
class SaveResult:
    saved: bool
    already_saved: bool
    credits_charged: int = 0
    debit_pending: bool = False


async def get_saved_page(db: AsyncSession, edition_id: int, page_number: int) -> Optional[BookPage]:
    return (
        await db.execute(
            select(BookPage).where(BookPage.edition_id == edition_id, BookPage.page_number == page_number)
        )
    ).scalars().first()


async def get_book_page(db: AsyncSession, book_id: int, edition_id: int, page_number: int) -> Optional[BookPage]:
    """Saved page, after checking the edition belongs to ``book_id``."""
    edition = await db.get(Edition, edition_id)
    if not edition or edition.book_id != book_id:
        raise NotFoundError("Edition not found for this book")
    return await get_saved_page(db, edition_id, page_number)


async def _edition_for_page(
    db: AsyncSession, edition_id: int, page_number: int, book_id: Optional[int]
) -> Edition:
    edition = await load_edition(db, edition_id)
    if book_id is not None and edition.book_id != book_id:
        raise NotFoundError("Edition not found for this book")
    if page_number < 1 or page_number > edition.book.page_count:
        raise InvalidRequestError(f"Page number must be between 1 and {edition.book.page_count}")
    return edition


async def prepare_generation(
    db: AsyncSession,
    config: ProjectConfig,
    user_id: int,
    edition_id: int,
    page_number: int,
    book_id: Optional[int] = None,
) -> GenerationPlan:
    """Everything short of calling the provider; raises before any generation on failure."""
    edition = await _edition_for_page(db, edition_id, page_number, book_id)
    model = edition.model

    check = await credits.require_affordable(db, user_id, model)
    api_key = await credits.get_byo_key(db, user_id, model.domain_code) if check.byo_key else None

    gen = config.page_generation
    context = await assemble_context(db, edition, page_number, gen.context_pages_count)
    book, author, genre, language_label = metadata_from_edition(edition)
    prompt = build_page_prompt(
        context,
        book,
        author,
        genre,
        page_number,
        book.page_count,
        language_label=language_label,
        images_enabled=config.feature_flags.book_page_images,
        default_tokens_per_page=config.ai_settings.default_tokens_per_page,
    )
    logger.info(
        "Generating page %s of edition %s with %s/%s (cost %s, byo=%s)",
        page_number, edition.id, model.domain_code, model.name, check.cost_owed, check.byo_key,
    )
    return GenerationPlan(
        edition_id=edition.id,
        book_id=edition.book_id,
        page_number=page_number,
        domain_code=model.domain_code,
        model_name=model.name,
        prompt=prompt,
        temperature=generation_temperature(genre, gen),
        max_tokens=GENERATION_MAX_TOKENS,
        deadline_seconds=gen.max_duration,
        cost=check.cost_owed,
        api_key=api_key,
    )


def generation_messages(prompt: str, prior_messages: Sequence[dict], page_number: int) -> List[dict]:
    """System prompt first, then the client's turns; never an empty conversation."""
    turns = [
        {"role": m.get("role"), "content": m.get("content")}
        for m in prior_messages or []
        if m.get("role") in CHAT_ROLES and (m.get("content") or "").strip()
    ]
    if not any(t["role"] == "user" for t in turns):
        turns.append({"role": "user", "content": f"Write page {page_number}."})
    return [{"role": "system", "content": prompt}, *turns]


async def save_page(
    db: AsyncSession,
    user_id: int,
    edition_id: int,
    page_number: int,
    content: str,
    book_id: Optional[int] = None,
) -> SaveResult:
    if not (content or "").strip():
        raise InvalidRequestError("Page content is required")
    edition = await _edition_for_page(db, edition_id, page_number, book_id)
    model_id = edition.model_id
    domain_code = edition.model.domain_code
    resolved_book_id = edition.book_id

    db.add(BookPage(edition_id=edition_id, page_number=page_number, content=content))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Page %s of edition %s already saved; no charge", page_number, edition_id)
        return SaveResult(saved=False, already_saved=True)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Saving page %s of edition %s failed", page_number, edition_id)
        raise StorageError("Failed to save page") from e

    if await credits.has_byo_key(db, user_id, domain_code):
        return SaveResult(saved=True, already_saved=False)

    cost = await credits.page_generation_cost(db, model_id)
    description = f"Page {page_number} generation"
    meta = {"book_id": resolved_book_id, "edition_id": edition_id, "page_number": page_number, "model_id": model_id}
    error = "insufficient credits"
    try:
        if await credits.debit_credits(db, user_id, cost, credits.PAGE_GENERATION, description, meta):
            return SaveResult(saved=True, already_saved=False, credits_charged=cost)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Debit after saving page %s of edition %s failed", page_number, edition_id)
        error = str(e)[:500]

    # the page stays saved; the charge is retried by the reconciliation job
    try:
        await credits.record_pending_debit(db, user_id, cost, credits.PAGE_GENERATION, description, meta, error)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Could not queue %s credit debit for user %s", cost, user_id)
        return SaveResult(saved=True, already_saved=False)
    return SaveResult(saved=True, already_saved=False, debit_pending=True)
