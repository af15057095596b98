from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, Float, func,
    UniqueConstraint, Index, JSON, CheckConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTable
from .database import Base

# JSONB on Postgres, plain JSON elsewhere (tests run on sqlite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------
# USER MODEL
# ---------------------------
class User(SQLAlchemyBaseUserTable[int], Base):
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    display_name = Column(String(128), nullable=True)

    billing = relationship("UserBilling", back_populates="user", uselist=False, cascade="all, delete-orphan")
    api_keys = relationship("UserApiKey", back_populates="user", cascade="all, delete-orphan")


class UserApiKey(Base):
    """Bring-your-own provider key; exempts the owner from metering for that domain."""
    __tablename__ = "user_api_keys"

    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), primary_key=True)
    domain_code = Column(String(32), ForeignKey("model_domains.code"), primary_key=True)
    api_key_enc = Column(Text, nullable=False)  # Fernet token
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="api_keys")


# ---------------------------
# REFERENCE TABLES
# ---------------------------
class Language(Base):
    __tablename__ = "languages"

    id = Column(Integer, primary_key=True)
    code = Column(String(16), unique=True, nullable=False)
    label = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ModelDomain(Base):
    __tablename__ = "model_domains"

    code = Column(String(32), primary_key=True)  # openai|anthropic|google|local
    label = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class GenerationModel(Base):
    __tablename__ = "models"

    id = Column(Integer, primary_key=True)
    name = Column(String(128), nullable=False)
    domain_code = Column(String(32), ForeignKey("model_domains.code"), nullable=False)
    context_len = Column(Integer, nullable=False, default=8192)
    page_generation_credits = Column(Integer, nullable=True)  # NULL -> configured default
    search_credits = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    domain = relationship("ModelDomain", lazy="joined")

    __table_args__ = (UniqueConstraint("name", "domain_code", name="uq_model_name_domain"),)


# ---------------------------
# GENRES & TAGS
# ---------------------------
class Genre(Base):
    __tablename__ = "genres"

    id = Column(Integer, primary_key=True)
    slug = Column(String(64), unique=True, nullable=False)
    label = Column(String(128), nullable=False)
    prompt_boost = Column(Text, nullable=True)
    book_format_prompt = Column(Text, nullable=True)   # overrides the title heuristic
    tokens_per_page = Column(Integer, nullable=True)
    model_temperature = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True)
    order_index = Column(Integer, nullable=False, default=0)


class TagCategory(Base):
    __tablename__ = "tag_categories"

    id = Column(Integer, primary_key=True)
    slug = Column(String(64), unique=True, nullable=False)
    label = Column(String(128), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    category_id = Column(Integer, ForeignKey("tag_categories.id"), nullable=True)
    slug = Column(String(64), unique=True, nullable=False)
    label = Column(String(128), nullable=False)
    prompt_boost = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)

    def __repr__(self):
        return f"<Tag {self.slug}>"


# ---------------------------
# AUTHORS & BOOKS
# ---------------------------
class Author(Base):
    __tablename__ = "authors"

    id = Column(Integer, primary_key=True)
    pen_name = Column(String(128), unique=True, nullable=False)
    style_prompt = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True)
    title = Column(String(256), nullable=False)
    summary = Column(Text, nullable=False)
    page_count = Column(Integer, nullable=False)
    cover_url = Column(String(256), nullable=True)          # relative to the book-covers bucket
    book_cover_prompt = Column(Text, nullable=True)
    author_id = Column(Integer, ForeignKey("authors.id"), nullable=False, index=True)
    genre_id = Column(Integer, ForeignKey("genres.id"), nullable=True)
    primary_language_id = Column(Integer, ForeignKey("languages.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    author = relationship("Author", lazy="joined")
    genre = relationship("Genre", lazy="joined")
    sections = relationship(
        "BookSection",
        order_by="BookSection.order_index.asc()",
        cascade="all, delete-orphan",
        back_populates="book",
    )

    __table_args__ = (CheckConstraint("page_count > 0", name="ck_book_page_count_positive"),)


class BookSection(Base):
    __tablename__ = "book_sections"

    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(256), nullable=False)
    from_page = Column(Integer, nullable=False)
    to_page = Column(Integer, nullable=False)
    summary = Column(Text, nullable=False, default="")
    order_index = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    book = relationship("Book", back_populates="sections")

    __table_args__ = (
        UniqueConstraint("book_id", "order_index", name="uq_book_section_order"),
        CheckConstraint("from_page >= 1", name="ck_section_from_page"),
        CheckConstraint("to_page >= from_page", name="ck_section_page_range"),
        Index("ix_book_sections_book_order", "book_id", "order_index"),
    )


# ---------------------------
# EDITIONS & PAGES
# ---------------------------
class Edition(Base):
    __tablename__ = "editions"

    id = Column(Integer, primary_key=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("models.id"), nullable=False)
    language_id = Column(Integer, ForeignKey("languages.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    book = relationship("Book", lazy="joined")
    model = relationship("GenerationModel", lazy="joined")
    language = relationship("Language", lazy="joined")

    # one edition per (book, language, model)
    __table_args__ = (UniqueConstraint("book_id", "model_id", "language_id", name="uq_edition_book_model_language"),)


class BookPage(Base):
    __tablename__ = "book_pages"

    id = Column(Integer, primary_key=True)
    edition_id = Column(Integer, ForeignKey("editions.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # first writer wins
    __table_args__ = (
        UniqueConstraint("edition_id", "page_number", name="uq_book_page_edition_number"),
        CheckConstraint("page_number > 0", name="ck_book_page_number_positive"),
    )


class BookPageImage(Base):
    __tablename__ = "book_page_images"

    id = Column(Integer, primary_key=True)
    hash = Column(String(64), unique=True, nullable=False, index=True)  # sha256 hex, idempotency key
    edition_id = Column(Integer, ForeignKey("editions.id", ondelete="CASCADE"), nullable=False)
    page_number = Column(Integer, nullable=False)
    prompt_text = Column(Text, nullable=False)
    image_url = Column(String(256), nullable=True)   # relative to the page-images bucket
    data = Column(JSONType, nullable=True)           # {"original_prompt", "enhanced_prompt", "generation_params"}
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ---------------------------
# SEARCH CONTEXT
# ---------------------------
class Search(Base):
    __tablename__ = "searches"

    id = Column(Integer, primary_key=True)
    hash = Column(String(64), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True, index=True)
    language_id = Column(Integer, ForeignKey("languages.id"), nullable=True)
    genre_id = Column(Integer, ForeignKey("genres.id"), nullable=True)
    model_id = Column(Integer, ForeignKey("models.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    params = relationship("SearchParams", uselist=False, lazy="joined", cascade="all, delete-orphan")


class SearchParams(Base):
    __tablename__ = "search_params"

    search_id = Column(Integer, ForeignKey("searches.id", ondelete="CASCADE"), primary_key=True)
    free_text = Column(Text, nullable=True)
    tag_ids = Column(JSONType, nullable=True)     # list[int]
    extra_json = Column(JSONType, nullable=True)


class SearchBook(Base):
    __tablename__ = "search_books"

    id = Column(Integer, primary_key=True)
    search_id = Column(Integer, ForeignKey("searches.id", ondelete="CASCADE"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    rank = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("search_id", "page_number", "rank", name="uq_search_book_slot"),)


# ---------------------------
# BILLING
# ---------------------------
class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True)
    slug = Column(String(32), unique=True, nullable=False)   # free|standard
    name = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    credits_per_month = Column(Integer, nullable=False, default=0)
    price_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)


class UserBilling(Base):
    __tablename__ = "user_billing"

    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), primary_key=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    credits_used_this_month = Column(Integer, nullable=False, default=0)
    credits_reset_at = Column(DateTime, nullable=True)   # naive UTC
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    user = relationship("User", back_populates="billing")
    plan = relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_user_billing_credits_non_negative"),)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)                  # negative = debit
    transaction_type = Column(String(32), nullable=False)    # page_generation|monthly_reset|...
    description = Column(Text, nullable=True)
    meta = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PendingDebit(Base):
    """A debit owed for a saved page that could not be applied at save time."""
    __tablename__ = "pending_debits"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String(32), nullable=False, default="page_generation")
    description = Column(Text, nullable=True)
    meta = Column("metadata", JSONType, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    abandoned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ---------------------------
# REACTIONS
# ---------------------------
class BookReaction(Base):
    __tablename__ = "book_reactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("user_id", "book_id", name="uq_book_reaction_once"),)


class PageReaction(Base):
    __tablename__ = "page_reactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    page_id = Column(Integer, ForeignKey("book_pages.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("user_id", "page_id", name="uq_page_reaction_once"),)


class BookStats(Base):
    __tablename__ = "book_stats"

    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    likes_cnt = Column(Integer, nullable=False, default=0)
    views_cnt = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())


class PageStats(Base):
    __tablename__ = "page_stats"

    page_id = Column(Integer, ForeignKey("book_pages.id", ondelete="CASCADE"), primary_key=True)
    likes_cnt = Column(Integer, nullable=False, default=0)
    views_cnt = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())


# views may be anonymous; a session id or client address stands in for the user
class BookViewEvent(Base):
    __tablename__ = "book_view_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_book_view_events_book_created", "book_id", "created_at"),)


class PageViewEvent(Base):
    __tablename__ = "page_view_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True, index=True)
    page_id = Column(Integer, ForeignKey("book_pages.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_page_view_events_page_created", "page_id", "created_at"),)


# ---------------------------
# PROJECT CONFIG
# ---------------------------
class ProjectConfigEntry(Base):
    __tablename__ = "project_config"

    key = Column(String(64), primary_key=True)   # feature_flags|page_generation|ai_settings
    value = Column(JSONType, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
