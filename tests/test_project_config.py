# tests/test_project_config.py
import pytest

from miragecodex.project_config import CONFIG_CACHE, build_config, get_project_config, set_project_config


def test_defaults_come_from_settings():
    config = build_config({})
    assert config.page_generation.context_pages_count == 3
    assert config.page_generation.default_temperature == 0.8
    assert config.ai_settings.default_tokens_per_page == 500
    assert config.feature_flags.book_page_images is False


def test_stored_values_override_and_bad_values_are_ignored():
    config = build_config({
        "page_generation": {"context_pages_count": "5", "default_temperature": "warm"},
        "feature_flags": {"book_page_images": True},
    })
    assert config.page_generation.context_pages_count == 5
    assert config.page_generation.default_temperature == 0.8
    assert config.feature_flags.book_page_images is True


def test_negative_window_clamps_to_zero():
    assert build_config({"page_generation": {"context_pages_count": -2}}).page_generation.context_pages_count == 0


@pytest.mark.asyncio
async def test_write_invalidates_cache(db):
    first = await get_project_config(db)
    assert first.feature_flags.book_page_images is False
    assert await get_project_config(db) is first

    await set_project_config(db, "feature_flags", {"book_page_images": True})
    second = await get_project_config(db)
    assert second.feature_flags.book_page_images is True


@pytest.mark.asyncio
async def test_unknown_key_rejected(db):
    with pytest.raises(ValueError):
        await set_project_config(db, "colour_scheme", {})
    assert CONFIG_CACHE._value is None
