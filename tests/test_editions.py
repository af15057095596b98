# tests/test_editions.py
import pytest

from miragecodex.errors import ConflictError, InvalidRequestError, NotFoundError
from miragecodex.models import BookPage
from miragecodex.services.editions import create_edition, list_editions
from miragecodex.services.reactions import toggle_book_like, toggle_page_like


@pytest.mark.asyncio
async def test_create_edition_and_list(db, catalog):
    edition = await create_edition(db, catalog.book_id, catalog.french_id, catalog.claude_id)
    assert edition.book_id == catalog.book_id
    assert edition.language.code == "fr"
    assert edition.model.name == "claude-3-5-haiku"

    db.add(BookPage(edition_id=catalog.edition_id, page_number=1, content="One."))
    await db.commit()

    rows = await list_editions(db, catalog.book_id)
    by_id = {r["id"]: r for r in rows}
    assert by_id[catalog.edition_id]["pages_saved"] == 1
    assert by_id[edition.id]["pages_saved"] == 0
    assert by_id[edition.id]["model_domain"] == "anthropic"


@pytest.mark.asyncio
async def test_duplicate_edition_reports_existing_id(db, catalog):
    with pytest.raises(ConflictError) as exc:
        await create_edition(db, catalog.book_id, catalog.english_id, catalog.gpt_id)
    payload = exc.value.to_payload()
    assert payload["error"] == "conflict"
    assert payload["existing_edition_id"] == catalog.edition_id


@pytest.mark.asyncio
async def test_create_edition_validation(db, catalog):
    with pytest.raises(NotFoundError):
        await create_edition(db, 9999, catalog.english_id, catalog.gpt_id)
    with pytest.raises(InvalidRequestError):
        await create_edition(db, catalog.book_id, 9999, catalog.gpt_id)
    with pytest.raises(InvalidRequestError):
        await create_edition(db, catalog.book_id, catalog.french_id, 9999)


@pytest.mark.asyncio
async def test_book_like_toggles(db, catalog):
    on = await toggle_book_like(db, catalog.user_id, catalog.book_id)
    assert on == {"liked": True, "likes_count": 1}
    other = await toggle_book_like(db, catalog.admin_id, catalog.book_id)
    assert other == {"liked": True, "likes_count": 2}
    off = await toggle_book_like(db, catalog.user_id, catalog.book_id)
    assert off == {"liked": False, "likes_count": 1}

    with pytest.raises(NotFoundError):
        await toggle_book_like(db, catalog.user_id, 9999)


@pytest.mark.asyncio
async def test_page_like_requires_saved_page(db, catalog):
    with pytest.raises(NotFoundError):
        await toggle_page_like(db, catalog.user_id, catalog.book_id, catalog.edition_id, 1)

    db.add(BookPage(edition_id=catalog.edition_id, page_number=1, content="One."))
    await db.commit()

    on = await toggle_page_like(db, catalog.user_id, catalog.book_id, catalog.edition_id, 1)
    assert on == {"liked": True, "likes_count": 1}
    off = await toggle_page_like(db, catalog.user_id, catalog.book_id, catalog.edition_id, 1)
    assert off == {"liked": False, "likes_count": 0}

    with pytest.raises(NotFoundError):
        await toggle_page_like(db, catalog.user_id, catalog.book_id + 1, catalog.edition_id, 1)
