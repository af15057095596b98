"""Project configuration: feature flags and page-generation tunables.

Values live in the ``project_config`` table as one JSON object per key and
fall back to process settings for anything missing. The loaded structure is
immutable and handed to the pipeline explicitly; this module only caches it
for ``PROJECT_CONFIG_TTL_SECONDS``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ProjectConfigEntry
from .settings.config import settings

logger = logging.getLogger(__name__)

CONFIG_KEYS = ("feature_flags", "page_generation", "ai_settings")


@dataclass(frozen=True)
class FeatureFlags:
    book_page_images: bool = False


@dataclass(frozen=True)
class PageGenerationConfig:
    context_pages_count: int = 3
    default_temperature: float = 0.8
    max_duration: int = 60


@dataclass(frozen=True)
class AISettings:
    default_tokens_per_page: int = 500


@dataclass(frozen=True)
class ProjectConfig:
    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)
    page_generation: PageGenerationConfig = field(default_factory=PageGenerationConfig)
    ai_settings: AISettings = field(default_factory=AISettings)


def _pick(raw: dict, key: str, default: Any, cast) -> Any:
    value = raw.get(key)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid project config value %s=%r", key, value)
        return default


def build_config(rows: dict[str, dict]) -> ProjectConfig:
    """Merge stored JSON values over the process-level defaults."""
    flags = rows.get("feature_flags") or {}
    gen = rows.get("page_generation") or {}
    ai = rows.get("ai_settings") or {}
    return ProjectConfig(
        feature_flags=FeatureFlags(
            book_page_images=_pick(flags, "book_page_images", settings.FEATURE_BOOK_PAGE_IMAGES, bool),
        ),
        page_generation=PageGenerationConfig(
            context_pages_count=max(0, _pick(gen, "context_pages_count", settings.CONTEXT_PAGES_COUNT, int)),
            default_temperature=_pick(gen, "default_temperature", settings.DEFAULT_TEMPERATURE, float),
            max_duration=_pick(gen, "max_duration", settings.MAX_GENERATION_SECONDS, int),
        ),
        ai_settings=AISettings(
            default_tokens_per_page=_pick(ai, "default_tokens_per_page", settings.DEFAULT_TOKENS_PER_PAGE, int),
        ),
    )


class ProjectConfigCache:
    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._value: Optional[ProjectConfig] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._value = None

    async def get(self, db: AsyncSession) -> ProjectConfig:
        now = time.monotonic()
        if self._value is not None and now - self._loaded_at < self.ttl_seconds:
            return self._value
        rows = (await db.execute(select(ProjectConfigEntry))).scalars().all()
        stored = {r.key: (r.value if isinstance(r.value, dict) else {}) for r in rows}
        self._value = build_config(stored)
        self._loaded_at = now
        logger.debug("Project config refreshed: %s", self._value)
        return self._value


CONFIG_CACHE = ProjectConfigCache(ttl_seconds=settings.PROJECT_CONFIG_TTL_SECONDS)


async def get_project_config(db: AsyncSession) -> ProjectConfig:
    return await CONFIG_CACHE.get(db)


async def get_config_value(db: AsyncSession, key: str) -> dict:
    row = await db.get(ProjectConfigEntry, key)
    return dict(row.value or {}) if row else {}


async def set_project_config(db: AsyncSession, key: str, value: dict) -> dict:
    """Admin write; replaces the stored object for ``key`` and drops the cache."""
    if key not in CONFIG_KEYS:
        raise ValueError(f"Unknown config key: {key}")
    row = await db.get(ProjectConfigEntry, key)
    if row:
        row.value = dict(value)
    else:
        db.add(ProjectConfigEntry(key=key, value=dict(value)))
    await db.commit()
    CONFIG_CACHE.invalidate()
    logger.info("Project config %s updated", key)
    return dict(value)
