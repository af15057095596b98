# miragecodex/settings/config.py  (Pydantic v2)
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # ---------- Core ----------
    SECRET: str = Field(default="")
    DATABASE_URL: str = Field(default="")
    LOG_LEVEL: str = Field(default="INFO")

    # ---------- Text generation providers ----------
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_BASE_URL: str = Field(default="https://api.anthropic.com/v1")
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    GOOGLE_AI_BASE_URL: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    OLLAMA_BASE_URL: str = Field(default="http://host.docker.internal:11434")

    # ---------- Image generation ----------
    SEGMIND_API_KEY: Optional[str] = Field(default=None)
    SEGMIND_BASE_URL: str = Field(default="https://api.segmind.com/v1")
    PAGE_IMAGE_ENDPOINT: str = Field(default="fast-flux-schnell")
    COVER_IMAGE_ENDPOINT: str = Field(default="juggernaut-lightning-flux")
    IMAGE_TIMEOUT_SECONDS: float = Field(default=60.0)
    IMAGE_RECORD_INSERT_ATTEMPTS: int = Field(default=3)

    # ---------- Bring-your-own provider keys ----------
    # Fernet key; BYO key registration is refused while unset.
    API_KEY_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # ---------- Object store ----------
    STATIC_ROOT: str = Field(default="static")
    STATIC_URL_PREFIX: str = Field(default="/static")

    # ---------- Project configuration fallbacks ----------
    CONTEXT_PAGES_COUNT: int = Field(default=3)
    DEFAULT_TEMPERATURE: float = Field(default=0.8)
    MAX_GENERATION_SECONDS: int = Field(default=60)
    DEFAULT_TOKENS_PER_PAGE: int = Field(default=500)
    FEATURE_BOOK_PAGE_IMAGES: bool = Field(default=False)
    PROJECT_CONFIG_TTL_SECONDS: int = Field(default=300)

    # ---------- Billing ----------
    DEFAULT_PAGE_GENERATION_CREDITS: int = Field(default=3)
    FREE_PLAN_SLUG: str = Field(default="free")
    FREE_PLAN_MONTHLY_CREDITS: int = Field(default=50)
    PENDING_DEBIT_MAX_ATTEMPTS: int = Field(default=10)

    # ---------- Scheduler ----------
    SCHEDULER_ENABLED: bool = Field(default=True)
    APP_TZ: str = Field(default="UTC")
    CREDIT_RESET_CRON: str = Field(default="")
    DEBIT_RECONCILE_CRON: str = Field(default="")

    # ---------- Auth ----------
    COOKIE_SECURE: bool = Field(default=False)
    ADMIN_EMAIL: Optional[str] = Field(default=None)
    ADMIN_PASSWORD: Optional[str] = Field(default=None)
    AUTH_LIFETIME_SECONDS: int = Field(default=3600 * 24)

    # ---------- CORS ----------
    CORS_ORIGINS: str = Field(default="*")

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )


settings = Settings()
