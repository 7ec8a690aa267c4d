from pydantic_settings import BaseSettings
from pathlib import Path
from typing import List

class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "Dispatch Engine API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = BASE_DIR / "data"

    # Server
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 4001
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{DATA_DIR}/dispatch.db"
    DATABASE_ECHO: bool = False

    # Security (tokens are issued by the identity layer, we only verify them)
    SECRET_KEY: str = "your-secret-key-here"
    JWT_ALGORITHM: str = "HS256"

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    # Orders
    ORDER_CONTENT_MAX_LENGTH: int = 500
    ORDER_PAGE_SIZE_MAX: int = 100

    # Dispatch
    DISPATCH_CANDIDATE_COUNT: int = 5
    DISPATCH_SEARCH_RADIUS_KM: float = 10.0
    DISPATCH_OFFER_TIMEOUT_SECONDS: float = 20.0
    DISPATCH_REQUERY_INITIAL_SECONDS: float = 5.0
    DISPATCH_REQUERY_MAX_SECONDS: float = 60.0

    # Presence
    PRESENCE_FRESHNESS_SECONDS: float = 120.0

    # Transient failure retries
    RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY_SECONDS: float = 0.2
    RETRY_MAX_DELAY_SECONDS: float = 5.0

    # Realtime
    REALTIME_SEND_TIMEOUT_SECONDS: float = 5.0

    # Conversation
    HISTORY_PAGE_SIZE: int = 200
    MESSAGE_CONTENT_MAX_LENGTH: int = 4000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

# Module-level settings instance
settings = Settings()
