# tests/test_views.py
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from miragecodex.errors import NotFoundError
from miragecodex.models import BookPage, BookStats, BookViewEvent, PageStats, PageViewEvent
from miragecodex.services.reactions import BOOK_VIEW_WINDOW, record_book_view, record_page_view


async def event_count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_book_view_counted_once_per_window(db, catalog):
    first = await record_book_view(db, catalog.book_id, user_id=catalog.user_id, ip_address="10.0.0.1")
    assert first == {"counted": True, "views_count": 1}

    again = await record_book_view(db, catalog.book_id, user_id=catalog.user_id, ip_address="10.0.0.9")
    assert again == {"counted": False, "views_count": 1}

    other = await record_book_view(db, catalog.book_id, user_id=catalog.admin_id, ip_address="10.0.0.1")
    assert other == {"counted": True, "views_count": 2}

    assert await event_count(db, BookViewEvent) == 2
    stats = (await db.execute(select(BookStats).where(BookStats.book_id == catalog.book_id))).scalars().one()
    assert stats.views_cnt == 2
    assert stats.likes_cnt == 0


@pytest.mark.asyncio
async def test_anonymous_views_dedupe_on_ip_and_keep_session(db, catalog):
    first = await record_book_view(
        db, catalog.book_id, session_id="sess-a", ip_address="203.0.113.5", user_agent="pytest-reader"
    )
    assert first["counted"] is True
    repeat = await record_book_view(db, catalog.book_id, session_id="sess-b", ip_address="203.0.113.5")
    assert repeat["counted"] is False
    elsewhere = await record_book_view(db, catalog.book_id, session_id="sess-a", ip_address="198.51.100.7")
    assert elsewhere["counted"] is True

    event = (await db.execute(select(BookViewEvent).order_by(BookViewEvent.id))).scalars().first()
    assert event.user_id is None
    assert (event.session_id, event.ip_address, event.user_agent) == ("sess-a", "203.0.113.5", "pytest-reader")


@pytest.mark.asyncio
async def test_view_outside_window_counts_again(db, catalog):
    db.add(BookViewEvent(
        book_id=catalog.book_id,
        user_id=catalog.user_id,
        created_at=datetime.now(timezone.utc) - BOOK_VIEW_WINDOW - timedelta(seconds=5),
    ))
    await db.commit()

    result = await record_book_view(db, catalog.book_id, user_id=catalog.user_id)
    assert result == {"counted": True, "views_count": 1}
    assert await event_count(db, BookViewEvent) == 2


@pytest.mark.asyncio
async def test_page_view_requires_saved_page(db, catalog):
    with pytest.raises(NotFoundError):
        await record_page_view(db, catalog.book_id, catalog.edition_id, 1, user_id=catalog.user_id)
    with pytest.raises(NotFoundError):
        await record_book_view(db, 9999, user_id=catalog.user_id)

    db.add(BookPage(edition_id=catalog.edition_id, page_number=1, content="One."))
    await db.commit()

    first = await record_page_view(db, catalog.book_id, catalog.edition_id, 1, session_id="s1", ip_address="10.1.1.1")
    assert first == {"counted": True, "views_count": 1}
    repeat = await record_page_view(db, catalog.book_id, catalog.edition_id, 1, session_id="s1", ip_address="10.1.1.1")
    assert repeat == {"counted": False, "views_count": 1}

    with pytest.raises(NotFoundError):
        await record_page_view(db, catalog.book_id + 1, catalog.edition_id, 1, user_id=catalog.user_id)

    assert await event_count(db, PageViewEvent) == 1
    assert (await db.execute(select(PageStats.views_cnt))).scalar_one() == 1
