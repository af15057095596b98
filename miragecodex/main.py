import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi_users.password import PasswordHelper
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import async_session_maker, init_db
from .errors import MirageError
from .models import ModelDomain, User
from .routers import admin_config, billing, books, images, pages
from .schemas import UserCreate, UserRead, UserUpdate
from .services.credits import bootstrap_billing
from .services.scheduler import start_scheduler, stop_scheduler
from .settings.config import settings
from .users import auth_backend, bearer_backend, fastapi_users

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="MirageCodex")

# Static file serving (generated page images and covers live under uploads/)
static_root = Path(settings.STATIC_ROOT)
static_root.mkdir(parents=True, exist_ok=True)
app.mount(settings.STATIC_URL_PREFIX, StaticFiles(directory=str(static_root)), name="static")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MirageError)
async def _mirage_error_handler(request: Request, exc: MirageError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

# ----------------------
# Route Includes
# ----------------------
app.include_router(pages.router)
app.include_router(images.router)
app.include_router(books.router)
app.include_router(billing.router)
app.include_router(admin_config.router)

# Authentication Routes
app.include_router(
    fastapi_users.get_auth_router(auth_backend),
    prefix="/auth/jwt",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_auth_router(bearer_backend),
    prefix="/auth/bearer",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"]
)

# ----------------------
# Startup seeding
# ----------------------
DEFAULT_DOMAINS = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google AI",
    "local": "Local (Ollama)",
}


async def _seed_model_domains(db: AsyncSession) -> int:
    existing = set((await db.execute(select(ModelDomain.code))).scalars().all())
    added = 0
    for code, label in DEFAULT_DOMAINS.items():
        if code not in existing:
            db.add(ModelDomain(code=code, label=label))
            added += 1
    await db.commit()
    return added


async def create_admin_user():
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        logger.info("ADMIN_EMAIL or ADMIN_PASSWORD not set; skipping admin creation.")
        return

    async with async_session_maker() as session:
        existing = (await session.execute(select(User).where(User.email == settings.ADMIN_EMAIL))).scalars().first()
        if existing:
            logger.info("Admin user already exists: %s", settings.ADMIN_EMAIL)
            return
        user = User(
            email=settings.ADMIN_EMAIL,
            hashed_password=PasswordHelper().hash(settings.ADMIN_PASSWORD),
            is_superuser=True,
            is_active=True,
            is_verified=True,
        )
        session.add(user)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return
        await bootstrap_billing(session, user.id)
        logger.info("Admin user created: %s", settings.ADMIN_EMAIL)


@app.on_event("startup")
async def on_startup():
    await init_db()
    try:
        async with async_session_maker() as db:
            added = await _seed_model_domains(db)
            if added:
                logger.info("Seeded %d model domains", added)
    except Exception:
        logger.exception("Model domain seed failed")
    await create_admin_user()
    start_scheduler()


@app.on_event("shutdown")
async def on_shutdown():
    stop_scheduler()
