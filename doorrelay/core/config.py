"""Application configuration using Pydantic settings"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 3000
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./doorrelay.db"

    # API Configuration
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Door Relay Server"
    CORS_ORIGINS: List[str] = ["*"]

    # Web interface (served at / when present)
    STATIC_DIR: str = "./public"

    # Device identity
    DEVICE_ID_PREFIX: str = "ESP32_"
    UNASSIGNED_ROOM: str = "unassigned"
    ALLOW_UNASSIGNED_DEVICE_TRIGGER: bool = False

    # Actuation
    DEFAULT_DURATION_MS: int = 3000
    MAX_DURATION_MS: int = 30000

    # Liveness
    SWEEP_INTERVAL_SECONDS: float = 60.0
    STALE_THRESHOLD_SECONDS: float = 300.0

    # Socket.IO keep-alive (transport level, independent of the sweep)
    PING_INTERVAL_SECONDS: int = 25
    PING_TIMEOUT_SECONDS: int = 60
    MAX_HTTP_BUFFER_SIZE: int = 1000000

    # Audit
    LOG_PAGE_SIZE: int = 50
    AUDIT_JOURNAL_SIZE: int = 500

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
