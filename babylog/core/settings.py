"""App settings: loaded from environment variables with defaults."""

import os
from typing import List, Optional
from dotenv import load_dotenv
from babylog.core.constants import RECOMMENDED_DAILY_SLEEP_HOURS as _DEFAULT_RECOMMENDED_SLEEP

load_dotenv()


# Used by: Settings.ALLOWED_USERS
def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings:
    # Unset -> in-memory store (dev/test only, nothing survives a restart)
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None
    DB_STATEMENT_TIMEOUT_MS: int = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000"))

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]
    CORS_EXTRA_ORIGINS: str = os.getenv("CORS_EXTRA_ORIGINS", "")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Day boundaries for analytics are computed in the household's zone, not the server's
    HOME_TIMEZONE: str = os.getenv("BABY_HOME_TIMEZONE", "Asia/Hong_Kong")

    ALLOWED_USERS: List[str] = _split_csv(
        os.getenv("BABY_ALLOWED_USERS", "Charie,Angie,Tim,Mengyu")
    )

    RECOMMENDED_DAILY_SLEEP_HOURS: float = float(
        os.getenv("RECOMMENDED_DAILY_SLEEP_HOURS", str(_DEFAULT_RECOMMENDED_SLEEP))
    )


settings = Settings()
