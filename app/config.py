"""
Environment-driven settings for the ChillChat server.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _csv(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    DEBUG: bool = _flag("DEBUG")
    APP_NAME: str = os.getenv("APP_NAME", "ChillChat")

    # Persistence
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", str(BASE_DIR / "data" / "chillchat.db")))
    STORAGE_PATH: Path = Path(os.getenv("STORAGE_PATH", str(BASE_DIR / "storage")))
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

    # HTTP
    ALLOWED_ORIGINS: list = _csv("ALLOWED_ORIGINS", "http://localhost:8080")
    ALLOWED_HOSTS: list = _csv("ALLOWED_HOSTS", "*")

    # File shares
    SHARE_WINDOW_MINUTES: int = int(os.getenv("SHARE_WINDOW_MINUTES", "5"))
    DEFAULT_MAX_DOWNLOADS: int = int(os.getenv("DEFAULT_MAX_DOWNLOADS", "1"))
    MAX_DOWNLOADS_LIMIT: int = int(os.getenv("MAX_DOWNLOADS_LIMIT", "10"))
    MAX_UPLOAD_SIZE: int = int(os.getenv("MAX_UPLOAD_SIZE", str(100 * 1024 * 1024)))
    CODE_MAX_ATTEMPTS: int = int(os.getenv("CODE_MAX_ATTEMPTS", "10"))
    CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
    # A download redirect can be followed once, within this many seconds
    FETCH_TICKET_TTL_SECONDS: int = int(os.getenv("FETCH_TICKET_TTL_SECONDS", "60"))

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = _flag("RATE_LIMIT_ENABLED", "true")
    UPLOAD_RATE_LIMIT: str = os.getenv("UPLOAD_RATE_LIMIT", "10/minute")
    DOWNLOAD_RATE_LIMIT: str = os.getenv("DOWNLOAD_RATE_LIMIT", "30/minute")
    WS_MESSAGE_BURST: int = int(os.getenv("WS_MESSAGE_BURST", "5"))
    WS_MESSAGE_WINDOW_SECONDS: float = float(os.getenv("WS_MESSAGE_WINDOW_SECONDS", "2"))

    # Chat
    MESSAGE_MAX_LENGTH: int = int(os.getenv("MESSAGE_MAX_LENGTH", "5000"))
    HISTORY_PAGE_SIZE: int = int(os.getenv("HISTORY_PAGE_SIZE", "50"))


settings = Settings()
