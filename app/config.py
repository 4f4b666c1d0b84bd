"""
Campus Whisper – Application configuration.
Reads environment variables from a .env file via pydantic-settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ── App ──
    APP_NAME: str = "Campus Whisper"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # ── Database ──
    DATABASE_URL: str = "sqlite+aiosqlite:///./campus_whisper.db"

    # ── JWT ──
    SECRET_KEY: str = "change-me-to-a-random-secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ── Chat request lifecycle ──
    REQUEST_TTL_HOURS: int = 48
    ROOM_TTL_HOURS: int = 24

    # ── Content bounds ──
    REQUEST_MESSAGE_MAX_LENGTH: int = 200
    MESSAGE_MAX_LENGTH: int = 1000
    REACTION_MAX_LENGTH: int = 10

    # ── Listing ──
    REQUEST_LIST_LIMIT: int = 20
    MESSAGE_PAGE_LIMIT: int = 100
    MESSAGE_PAGE_MAX: int = 200

    # ── Real-time channel ──
    PUBLISH_SEND_TIMEOUT_SECONDS: float = 5.0

    # ── Expiry sweeper (0 disables the background loop) ──
    SWEEP_INTERVAL_SECONDS: int = 300


settings = Settings()
