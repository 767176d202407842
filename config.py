"""
Runtime configuration for the Campus Quest API.

Values come from environment variables (optionally loaded from a .env file).
Settings are built once at process start and handed to whatever needs them.
"""

from dataclasses import dataclass, field
import os
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file (if present)
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    fallback_database_name: str = "campus_quest"
    firebase_service_account: Optional[str] = None  # base64-encoded JSON
    firebase_storage_bucket: Optional[str] = None
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    max_upload_bytes: int = 5 * 1024 * 1024
    creator_bonus: bool = True
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            fallback_database_name=os.getenv("FALLBACK_DATABASE_NAME", "campus_quest"),
            firebase_service_account=os.getenv("FIREBASE_SERVICE_ACCOUNT"),
            firebase_storage_bucket=os.getenv("FIREBASE_STORAGE_BUCKET"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024)),
            creator_bonus=_env_bool("CREATOR_BONUS", True),
            port=int(os.getenv("PORT", 8000)),
        )

    @property
    def uses_mongo(self) -> bool:
        return bool(self.database_url and self.database_name)
