import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Project base directory (repo root)
BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_MONGO_URI = "mongodb://localhost:27017/openchat"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Directory (general) database
    GENERAL_MONGO_URI: str = os.getenv("GENERAL_MONGO_URI", DEFAULT_MONGO_URI)
    GENERAL_DB_NAME: str = os.getenv("GENERAL_DB_NAME", "openchat")

    # Template for new personal databases; the database path is replaced per user
    PERSONAL_MONGO_URI: Optional[str] = os.getenv("MONGO_URI") or None

    # Canonical public location written back to the directory after a link
    DATABASE_PUBLIC_URL: Optional[str] = os.getenv("DATABASE_PUBLIC_URL") or None

    # Driver options
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = 30000
    MONGO_CONNECT_TIMEOUT_MS: int = 30000
    MONGO_SOCKET_TIMEOUT_MS: int = 45000
    MONGO_MAX_POOL_SIZE: int = 5
    MONGO_MAX_IDLE_TIME_MS: int = 30000
    MONGO_TLS: bool = False
    MONGO_TLS_ALLOW_INVALID: bool = False

    # Connection registry
    MAX_CONCURRENT_OPS: int = 10
    ADMISSION_POLL_INTERVAL: float = 0.1
    IDLE_TIMEOUT_SECONDS: float = 60.0
    REAPER_INTERVAL_SECONDS: float = 60.0

    # Directory connection retries
    DIRECTORY_MAX_RETRIES: int = 5
    DIRECTORY_RETRY_CAP_SECONDS: float = 30.0

    # Group replication backpressure
    GROUP_FANOUT_BATCH_SIZE: int = 3
    GROUP_FANOUT_BATCH_DELAY: float = 0.1

    # Accounts
    MIN_PASSWORD_LENGTH: int = 6
    SESSION_TTL_SECONDS: float = 24 * 60 * 60

    # API Settings
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "3000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_PATH: Optional[str] = os.getenv("LOG_PATH") or None

    @field_validator("DATABASE_PUBLIC_URL", "PERSONAL_MONGO_URI")
    @classmethod
    def _drop_template_values(cls, value: Optional[str]) -> Optional[str]:
        # Unrendered deploy templates such as ${{Mongo.PUBLIC_URL}}
        if value and ("${{" in value or "}}" in value):
            return None
        return value or None

    @property
    def personal_uri_template(self) -> str:
        return self.PERSONAL_MONGO_URI or self.GENERAL_MONGO_URI

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
