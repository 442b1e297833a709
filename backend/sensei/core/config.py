# backend/sensei/core/config.py
import os
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "sensei"

    # development | production
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    JWT_SECRET_KEY: str = "super-secret-key"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 1 day

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]

    # list / search paging
    DEFAULT_RES_LIMIT: int = 20
    DEFAULT_RES_OFFSET: int = 0
    SEARCH_DEFAULT_LIMIT: int = 50
    MAX_RES_LIMIT: int = 1000

    # session-expiration sweep
    SESSION_SWEEP_ENABLED: bool = True
    SESSION_TIMEOUT_MINUTES: int = 75
    SESSION_SWEEP_INTERVAL_MINUTES: int = 5

    # report export
    PDF_RENDER_TIMEOUT_SECONDS: float = 30.0
    BROWSER_EXECUTABLE_PATH: Optional[str] = None
    REPORT_TIMEZONE: str = "UTC"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def browser_executable_path(self) -> Optional[str]:
        """
        Explicit browser binary for PDF rendering.
        Falls back to the environment variables used by existing deployments.
        """
        return (
            self.BROWSER_EXECUTABLE_PATH
            or os.getenv("PUPPETEER_EXECUTABLE_PATH")
            or os.getenv("CHROME_EXECUTABLE_PATH")
        )


settings = Settings()
