# tests/conftest.py
import io
import os
import tempfile

from cryptography.fernet import Fernet

# Settings are read at import time; pin a test environment before importing the package
os.environ.setdefault("SECRET", "test-secret-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("API_KEY_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("STATIC_ROOT", tempfile.mkdtemp(prefix="miragecodex-static-"))
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SEGMIND_API_KEY", "test-segmind-key")

from pathlib import Path

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from miragecodex.database import Base
from miragecodex.image_client import GeneratedImage
from miragecodex.models import (
    Author, Book, BookSection, Edition, GenerationModel, Genre, Language, ModelDomain,
    SubscriptionPlan, User, UserBilling,
)
from miragecodex.project_config import CONFIG_CACHE
from miragecodex.storage import ObjectStore


# ---------- database ----------

@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    CONFIG_CACHE.invalidate()
    yield
    CONFIG_CACHE.invalidate()


# ---------- catalog ----------

class Catalog:
    """Ids of the seeded rows."""

    def __init__(self, **ids):
        self.__dict__.update(ids)


async def make_user(db, email: str, credits: int = 50, superuser: bool = False, plan_id=None) -> User:
    user = User(
        email=email,
        hashed_password="not-a-real-hash",
        is_active=True,
        is_superuser=superuser,
        is_verified=True,
    )
    db.add(user)
    await db.flush()
    db.add(UserBilling(user_id=user.id, plan_id=plan_id, credits=credits, credits_used_this_month=0))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def catalog(db):
    english = Language(code="en", label="English")
    french = Language(code="fr", label="French")
    db.add_all([
        english,
        french,
        ModelDomain(code="openai", label="OpenAI"),
        ModelDomain(code="anthropic", label="Anthropic"),
        ModelDomain(code="local", label="Local"),
    ])
    await db.flush()

    gpt = GenerationModel(name="gpt-4o-mini", domain_code="openai", context_len=128000)
    claude = GenerationModel(
        name="claude-3-5-haiku", domain_code="anthropic", context_len=200000, page_generation_credits=5
    )
    plan = SubscriptionPlan(slug="free", name="Free", credits_per_month=50, price_cents=0)
    author = Author(pen_name="Iris Vane", style_prompt="Lyrical, melancholic prose.", bio="A lighthouse keeper.")
    genre = Genre(slug="fantasy", label="Fantasy", tokens_per_page=400, order_index=1)
    db.add_all([gpt, claude, plan, author, genre])
    await db.flush()

    book = Book(
        title="The Salt Archive",
        summary="A cartographer maps a city that rearranges itself at night.",
        page_count=10,
        author_id=author.id,
        genre_id=genre.id,
        primary_language_id=english.id,
        book_cover_prompt="an ink map of a shifting city, moonlit",
    )
    db.add(book)
    await db.flush()
    db.add_all([
        BookSection(book_id=book.id, title="Arrival", from_page=1, to_page=3, summary="She reaches the city.", order_index=0),
        BookSection(book_id=book.id, title="The Night Streets", from_page=4, to_page=8, summary="The map lies.", order_index=1),
        BookSection(book_id=book.id, title="Departure", from_page=9, to_page=10, summary="", order_index=2),
    ])
    edition = Edition(book_id=book.id, model_id=gpt.id, language_id=english.id)
    db.add(edition)
    await db.commit()

    reader = await make_user(db, "reader@example.com", credits=50, plan_id=plan.id)
    admin = await make_user(db, "admin@example.com", credits=50, superuser=True, plan_id=plan.id)

    return Catalog(
        english_id=english.id,
        french_id=french.id,
        gpt_id=gpt.id,
        claude_id=claude.id,
        plan_id=plan.id,
        author_id=author.id,
        genre_id=genre.id,
        book_id=book.id,
        edition_id=edition.id,
        user_id=reader.id,
        admin_id=admin.id,
    )


# ---------- fake providers ----------

def jpeg_bytes(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (120, 80, 40)).save(buf, format="JPEG")
    return buf.getvalue()


class FakeImageClient:
    def __init__(self):
        self.calls = []

    async def generate(self, prompt, *, endpoint, width, height, steps, seed=None):
        self.calls.append({"prompt": prompt, "endpoint": endpoint, "width": width, "height": height, "steps": steps})
        return GeneratedImage(
            data=jpeg_bytes(width, height),
            params={"width": width, "height": height, "steps": steps, "seed": 7, "cfg_scale": 7},
        )


class FakeLLMClient:
    def __init__(self, tokens=("Once ", "upon ", "a time.")):
        self.tokens = list(tokens)
        self.calls = []

    async def stream_page(self, domain_code, model_name, messages, *, temperature, max_tokens,
                          api_key=None, deadline_seconds=60):
        self.calls.append({
            "domain_code": domain_code,
            "model_name": model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "api_key": api_key,
        })

        async def gen():
            for t in self.tokens:
                yield t

        return gen()


@pytest.fixture
def fake_images():
    return FakeImageClient()


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def store(tmp_path: Path):
    return ObjectStore(tmp_path / "static", "/static")
