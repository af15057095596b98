# miragecodex/services/prompt_builder.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from miragecodex.models import Edition
from miragecodex.project_config import PageGenerationConfig
from miragecodex.services.context import ContextBundle, SectionView

DEFAULT_AUTHOR_STYLE = "Write in an engaging, narrative style."
# rough English ratio used to turn a token budget into a word target
WORDS_PER_TOKEN = 0.75


@dataclass(frozen=True)
class BookMeta:
    title: str
    summary: str
    page_count: int


@dataclass(frozen=True)
class AuthorMeta:
    pen_name: str
    bio: str = ""
    style_prompt: str = ""


@dataclass(frozen=True)
class GenreMeta:
    label: str = ""
    book_format_prompt: Optional[str] = None
    tokens_per_page: Optional[int] = None
    model_temperature: Optional[float] = None


def metadata_from_edition(edition: Edition) -> tuple[BookMeta, AuthorMeta, GenreMeta, str]:
    book = edition.book
    author = book.author
    genre = book.genre
    language_label = edition.language.label if edition.language else "English"
    return (
        BookMeta(
            title=book.title,
            summary=book.summary or "",
            page_count=book.page_count,
        ),
        AuthorMeta(
            pen_name=author.pen_name if author else "Unknown",
            bio=(author.bio or "") if author else "",
            style_prompt=(author.style_prompt or "") if author else "",
        ),
        GenreMeta(
            label=genre.label if genre else "",
            book_format_prompt=genre.book_format_prompt if genre else None,
            tokens_per_page=genre.tokens_per_page if genre else None,
            model_temperature=genre.model_temperature if genre else None,
        ),
        language_label,
    )


# ---------- formatting rules ----------

def format_instructions_for(title: str, genre: GenreMeta) -> str:
    """Genre-configured format prompt, else a guess from the title."""
    if genre.book_format_prompt and genre.book_format_prompt.strip():
        return genre.book_format_prompt.strip()

    lower = (title or "").lower()
    if "cookbook" in lower or "recipe" in lower:
        return (
            "Format as a cookbook page with recipes, ingredients, and cooking instructions. Use markdown:\n"
            "- **Recipe Name**\n"
            "- *Ingredients:*\n"
            "- *Instructions:*"
        )
    if "poetry" in lower or "poem" in lower:
        return "Format as poetry with proper line breaks and stanza separation. Use markdown for emphasis."
    if "manual" in lower or "guide" in lower or "academic" in lower:
        return (
            "Format as an academic/manual page with:\n"
            "- Clear headings using ## and ###\n"
            "- Bullet points for lists\n"
            "- **Bold** for key terms\n"
            "- Code blocks for examples if relevant"
        )
    return (
        "Format as a narrative page with:\n"
        "- Natural paragraph breaks\n"
        "- *Italics* for emphasis or thoughts\n"
        "- **Bold** for important moments\n"
        "- Proper dialogue formatting"
    )


def target_word_count(genre: GenreMeta, default_tokens_per_page: int) -> int:
    tokens = genre.tokens_per_page or default_tokens_per_page
    return max(1, int(round(tokens * WORDS_PER_TOKEN)))


def generation_temperature(genre: GenreMeta, config: PageGenerationConfig) -> float:
    if genre.model_temperature is not None:
        return float(genre.model_temperature)
    return float(config.default_temperature)


ILLUSTRATION_INSTRUCTIONS = (
    "ILLUSTRATIONS:\n"
    "Where a scene would benefit from a picture, insert an illustration tag on its own line in exactly this form:\n"
    "[p=<lowercase, no special characters, one-sentence scene description>]\n"
    "Write the description inside the tag in English, whatever language the page is written in. "
    "Use at most one tag per page."
)


def _section_line(s: SectionView) -> str:
    line = f'- "{s.title}" (pages {s.from_page}-{s.to_page})'
    if s.summary:
        line += f": {s.summary}"
    return line


def _section_block(context: ContextBundle) -> Optional[str]:
    if not (context.past_sections or context.current_section or context.future_sections):
        return None
    parts: List[str] = ["BOOK STRUCTURE:"]
    if context.past_sections:
        parts.append("Completed sections:")
        parts.extend(_section_line(s) for s in context.past_sections)
    if context.current_section:
        cur = context.current_section
        parts.append("Current section:")
        parts.append(_section_line(cur))
        if context.section_progress_label:
            parts.append(f"  You are writing {context.section_progress_label}.")
        if context.section_progress and context.section_progress.page_in_section == 1:
            parts.append("  This is the first page of the section; open it appropriately.")
        elif context.section_progress and context.section_progress.page_in_section == context.section_progress.section_length:
            parts.append("  This is the last page of the section; bring it to a natural close.")
    if context.future_sections:
        parts.append("Upcoming sections (do not start them yet):")
        parts.extend(_section_line(s) for s in context.future_sections)
    return "\n".join(parts)


# ---------- builder ----------

def build_page_prompt(
    context: ContextBundle,
    book: BookMeta,
    author: AuthorMeta,
    genre: GenreMeta,
    page_number: int,
    total_pages: int,
    *,
    language_label: str = "English",
    images_enabled: bool = False,
    default_tokens_per_page: int = 500,
) -> str:
    """Render the system instruction for one page. Same inputs, same string."""
    blocks: List[str] = []

    blocks.append(
        f'You are {author.pen_name}, writing page {page_number} of {total_pages} of the book "{book.title}". '
        "You write the page text only, as it would appear printed in the book."
    )

    voice = [f"AUTHOR VOICE ({author.pen_name}):"]
    if author.bio:
        voice.append(f"Biography: {author.bio}")
    voice.append(f"Style: {author.style_prompt or DEFAULT_AUTHOR_STYLE}")
    blocks.append("\n".join(voice))

    meta = [
        "BOOK:",
        f"Title: {book.title}",
    ]
    if genre.label:
        meta.append(f"Genre: {genre.label}")
    meta += [
        f"Total pages: {total_pages}",
        f"Current page: {page_number}",
        f"Language: write in {language_label}",
        f"Summary: {book.summary}",
    ]
    blocks.append("\n".join(meta))

    if context.original_query or context.search_tags:
        intent = ["ORIGINAL CREATIVE INTENT (what the reader asked for when this book was discovered):"]
        if context.original_query:
            intent.append(f'Request: "{context.original_query}"')
        if context.search_tags:
            intent.append(f"Themes: {', '.join(context.search_tags)}")
        blocks.append("\n".join(intent))

    structure = _section_block(context)
    if structure:
        blocks.append(structure)

    if context.prior_pages_text:
        blocks.append(
            "PREVIOUS PAGES (continue seamlessly from where the last one ends):\n"
            f"{context.prior_pages_text}"
        )

    rules = [
        "FORMATTING RULES:",
        "- Do not include page numbers.",
        "- Do not include the author's name.",
        "- Do not include the book title.",
        "- Do not include the section title as a heading.",
        "- Do not repeat sentences or passages from the previous pages verbatim.",
        format_instructions_for(book.title, genre),
    ]
    blocks.append("\n".join(rules))

    words = target_word_count(genre, default_tokens_per_page)
    blocks.append(f"LENGTH: aim for about {words} words on this page.")

    if images_enabled:
        blocks.append(ILLUSTRATION_INSTRUCTIONS)

    closing = f"Now write page {page_number} of {total_pages}."
    if context.current_section and context.section_progress_label:
        closing += f' Remember you are on {context.section_progress_label} of "{context.current_section.title}".'
    elif page_number == 1:
        closing += " This is the opening page of the book."
    blocks.append(closing)

    return "\n\n".join(blocks)
