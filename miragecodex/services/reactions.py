# miragecodex/services/reactions.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from miragecodex.errors import NotFoundError
from miragecodex.models import (
    Book, BookPage, BookReaction, BookStats, BookViewEvent, Edition, PageReaction, PageStats, PageViewEvent,
)

logger = logging.getLogger(__name__)

# repeat views by the same reader inside these windows are not counted
BOOK_VIEW_WINDOW = timedelta(seconds=60)
PAGE_VIEW_WINDOW = timedelta(seconds=30)


async def _locked_stats(db: AsyncSession, model, key_col, key: int):
    """Stats row for ``key`` locked for this transaction, created at zero if missing."""
    stats = (await db.execute(select(model).where(key_col == key).with_for_update())).scalars().first()
    if stats is None:
        stats = model(**{key_col.key: key, "likes_cnt": 0, "views_cnt": 0})
        db.add(stats)
        await db.flush()
    return stats


async def _toggle(db: AsyncSession, reaction_model, stats_model, fk_name: str, user_id: int, key: int) -> dict:
    fk_col = getattr(reaction_model, fk_name)
    stats_key = getattr(stats_model, fk_name)
    try:
        stats = await _locked_stats(db, stats_model, stats_key, key)
        reaction = (
            await db.execute(
                select(reaction_model).where(reaction_model.user_id == user_id, fk_col == key)
            )
        ).scalars().first()
        if reaction:
            await db.delete(reaction)
            stats.likes_cnt = max(0, (stats.likes_cnt or 0) - 1)
            liked = False
        else:
            db.add(reaction_model(user_id=user_id, **{fk_name: key}))
            stats.likes_cnt = (stats.likes_cnt or 0) + 1
            liked = True
        await db.commit()
    except IntegrityError:
        # a concurrent toggle got there first; report the state it left
        await db.rollback()
        exists = (
            await db.execute(select(reaction_model.id).where(reaction_model.user_id == user_id, fk_col == key))
        ).first()
        stats = (await db.execute(select(stats_model).where(stats_key == key))).scalars().first()
        return {"liked": exists is not None, "likes_count": stats.likes_cnt if stats else 0}

    return {"liked": liked, "likes_count": stats.likes_cnt}


async def toggle_book_like(db: AsyncSession, user_id: int, book_id: int) -> dict:
    if not await db.get(Book, book_id):
        raise NotFoundError("Book not found")
    result = await _toggle(db, BookReaction, BookStats, "book_id", user_id, book_id)
    logger.info("User %s %s book %s", user_id, "liked" if result["liked"] else "unliked", book_id)
    return result


async def find_page(db: AsyncSession, book_id: int, edition_id: int, page_number: int) -> Optional[BookPage]:
    return (
        await db.execute(
            select(BookPage)
            .join(Edition, Edition.id == BookPage.edition_id)
            .where(
                Edition.book_id == book_id,
                BookPage.edition_id == edition_id,
                BookPage.page_number == page_number,
            )
        )
    ).scalars().first()


async def toggle_page_like(db: AsyncSession, user_id: int, book_id: int, edition_id: int, page_number: int) -> dict:
    page = await find_page(db, book_id, edition_id, page_number)
    if not page:
        raise NotFoundError("Page not found")
    result = await _toggle(db, PageReaction, PageStats, "page_id", user_id, page.id)
    logger.info("User %s %s page %s", user_id, "liked" if result["liked"] else "unliked", page.id)
    return result


async def _record_view(
    db: AsyncSession,
    event_model,
    stats_model,
    fk_name: str,
    key: int,
    window: timedelta,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    fk_col = getattr(event_model, fk_name)
    stats_key = getattr(stats_model, fk_name)
    now = datetime.now(timezone.utc)

    # signed-in readers dedupe on the account, anonymous ones on ip then session
    if user_id is not None:
        same_reader = event_model.user_id == user_id
    elif ip_address:
        same_reader = event_model.ip_address == ip_address
    elif session_id:
        same_reader = event_model.session_id == session_id
    else:
        same_reader = None

    try:
        stats = await _locked_stats(db, stats_model, stats_key, key)
        if same_reader is not None:
            recent = (
                await db.execute(
                    select(event_model.id).where(fk_col == key, same_reader, event_model.created_at >= now - window)
                )
            ).first()
            if recent:
                count = stats.views_cnt or 0
                await db.rollback()
                return {"counted": False, "views_count": count}

        db.add(event_model(
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            **{fk_name: key},
        ))
        stats.views_cnt = (stats.views_cnt or 0) + 1
        count = stats.views_cnt
        await db.commit()
    except IntegrityError:
        # the stats row was created concurrently; the event is dropped
        await db.rollback()
        stats = (await db.execute(select(stats_model).where(stats_key == key))).scalars().first()
        return {"counted": False, "views_count": stats.views_cnt if stats else 0}

    return {"counted": True, "views_count": count}


async def record_book_view(
    db: AsyncSession,
    book_id: int,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    if not await db.get(Book, book_id):
        raise NotFoundError("Book not found")
    result = await _record_view(
        db, BookViewEvent, BookStats, "book_id", book_id, BOOK_VIEW_WINDOW,
        user_id=user_id, session_id=session_id, ip_address=ip_address, user_agent=user_agent,
    )
    if result["counted"]:
        logger.debug("View of book %s by %s", book_id, user_id or session_id or ip_address)
    return result


async def record_page_view(
    db: AsyncSession,
    book_id: int,
    edition_id: int,
    page_number: int,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> dict:
    page = await find_page(db, book_id, edition_id, page_number)
    if not page:
        raise NotFoundError("Page not found")
    page_id = page.id
    result = await _record_view(
        db, PageViewEvent, PageStats, "page_id", page_id, PAGE_VIEW_WINDOW,
        user_id=user_id, session_id=session_id, ip_address=ip_address, user_agent=user_agent,
    )
    if result["counted"]:
        logger.debug("View of page %s by %s", page_id, user_id or session_id or ip_address)
    return result
