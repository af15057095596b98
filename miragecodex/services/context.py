# miragecodex/services/context.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from miragecodex.errors import NotFoundError
from miragecodex.models import (
    Book, BookPage, BookSection, Edition, GenerationModel, SearchBook, SearchParams, Tag,
)

logger = logging.getLogger(__name__)


# ---------- types ----------

@dataclass(frozen=True)
class SectionView:
    title: str
    from_page: int
    to_page: int
    summary: str = ""
    order_index: int = 0

    @property
    def length(self) -> int:
        return self.to_page - self.from_page + 1


@dataclass(frozen=True)
class SectionClassification:
    past: List[SectionView] = field(default_factory=list)
    current: Optional[SectionView] = None
    future: List[SectionView] = field(default_factory=list)
    # sections that also contain the page but lost the tie-break
    overlapping: List[SectionView] = field(default_factory=list)


@dataclass(frozen=True)
class SectionProgress:
    page_in_section: int
    section_length: int
    percent: int

    @property
    def label(self) -> str:
        return f"page {self.page_in_section} of {self.section_length} in this section ({self.percent}%)"


@dataclass(frozen=True)
class ContextBundle:
    prior_pages_text: str = ""
    past_sections: List[SectionView] = field(default_factory=list)
    current_section: Optional[SectionView] = None
    future_sections: List[SectionView] = field(default_factory=list)
    section_progress: Optional[SectionProgress] = None
    original_query: str = ""
    search_tags: List[str] = field(default_factory=list)

    @property
    def section_progress_label(self) -> str:
        return self.section_progress.label if self.section_progress else ""

    @property
    def is_initial_page(self) -> bool:
        return not self.prior_pages_text


# ---------- edition lookup ----------

async def load_edition(db: AsyncSession, edition_id: int) -> Edition:
    """Edition with book/author/genre, language and model+domain, or NotFoundError."""
    edition = (
        await db.execute(
            select(Edition)
            .options(
                joinedload(Edition.book).joinedload(Book.author),
                joinedload(Edition.book).joinedload(Book.genre),
                joinedload(Edition.model).joinedload(GenerationModel.domain),
                joinedload(Edition.language),
            )
            .where(Edition.id == edition_id)
        )
    ).unique().scalars().first()
    if not edition or not edition.book:
        raise NotFoundError("Edition not found")
    return edition


# ---------- sections ----------

def classify_sections(sections: Iterable[SectionView], page_number: int) -> SectionClassification:
    """Split sections into past/current/future relative to ``page_number``.

    When several sections contain the page the lowest ``order_index`` wins;
    the losers are reported in ``overlapping`` and in neither list.
    """
    ordered = sorted(sections, key=lambda s: (s.order_index, s.from_page))
    past: List[SectionView] = []
    future: List[SectionView] = []
    containing: List[SectionView] = []
    for s in ordered:
        if s.from_page <= page_number <= s.to_page:
            containing.append(s)
        elif s.to_page < page_number:
            past.append(s)
        else:
            future.append(s)

    current = containing[0] if containing else None
    overlapping = containing[1:]
    if overlapping:
        logger.warning(
            "Page %s falls in %d overlapping sections; using %r (order_index=%s)",
            page_number, len(containing), current.title, current.order_index,
        )
    return SectionClassification(past=past, current=current, future=future, overlapping=overlapping)


def section_progress(section: SectionView, page_number: int) -> SectionProgress:
    page_in_section = page_number - section.from_page + 1
    length = section.length
    # round half up, like the reader UI does
    percent = int(math.floor(100 * page_in_section / length + 0.5))
    return SectionProgress(page_in_section=page_in_section, section_length=length, percent=percent)


async def fetch_sections(db: AsyncSession, book_id: int) -> List[SectionView]:
    rows = (
        await db.execute(
            select(BookSection)
            .where(BookSection.book_id == book_id)
            .order_by(BookSection.order_index.asc())
        )
    ).scalars().all()
    return [
        SectionView(
            title=r.title,
            from_page=r.from_page,
            to_page=r.to_page,
            summary=r.summary or "",
            order_index=r.order_index,
        )
        for r in rows
    ]


# ---------- prior pages ----------

def prior_page_range(page_number: int, window_size: int) -> Optional[tuple[int, int]]:
    """Inclusive [first, last] page numbers to read, or None on the initial page."""
    if page_number <= 1 or window_size <= 0:
        return None
    return max(1, page_number - window_size), page_number - 1


def format_prior_pages(pages: Sequence[tuple[int, str]]) -> str:
    blocks = [f"--- Page {n} ---\n{(content or '').strip()}" for n, content in pages]
    return "\n\n".join(blocks)


async def fetch_prior_pages_text(db: AsyncSession, edition_id: int, page_number: int, window_size: int) -> str:
    bounds = prior_page_range(page_number, window_size)
    if not bounds:
        return ""
    first, last = bounds
    rows = (
        await db.execute(
            select(BookPage.page_number, BookPage.content)
            .where(
                BookPage.edition_id == edition_id,
                BookPage.page_number >= first,
                BookPage.page_number <= last,
            )
            .order_by(BookPage.page_number.asc())
        )
    ).all()
    if len(rows) < last - first + 1:
        logger.info(
            "Edition %s has %d of %d context pages before page %s",
            edition_id, len(rows), last - first + 1, page_number,
        )
    return format_prior_pages([(r.page_number, r.content) for r in rows])


# ---------- search context ----------

async def fetch_search_context(db: AsyncSession, book_id: int) -> tuple[str, List[str]]:
    """(free-text query, tag labels) of the search that produced the book."""
    params = (
        await db.execute(
            select(SearchParams)
            .join(SearchBook, SearchBook.search_id == SearchParams.search_id)
            .where(SearchBook.book_id == book_id)
            .order_by(SearchBook.id.asc())
            .limit(1)
        )
    ).scalars().first()
    if not params:
        return "", []

    query = (params.free_text or "").strip()
    tag_ids = [t for t in (params.tag_ids or []) if t is not None]
    if not tag_ids:
        return query, []

    rows = (await db.execute(select(Tag.id, Tag.label).where(Tag.id.in_(tag_ids)))).all()
    by_id = {r.id: r.label for r in rows}
    labels = [by_id[t] for t in tag_ids if t in by_id]
    return query, labels


# ---------- assembler ----------

async def assemble_context(db: AsyncSession, edition: Edition, page_number: int, window_size: int) -> ContextBundle:
    prior = await fetch_prior_pages_text(db, edition.id, page_number, window_size)
    sections = await fetch_sections(db, edition.book_id)
    split = classify_sections(sections, page_number)
    progress = section_progress(split.current, page_number) if split.current else None
    query, tags = await fetch_search_context(db, edition.book_id)

    return ContextBundle(
        prior_pages_text=prior,
        past_sections=split.past,
        current_section=split.current,
        future_sections=split.future,
        section_progress=progress,
        original_query=query,
        search_tags=tags,
    )
