import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env from the project root, whatever the working directory is
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _delays(raw: str) -> tuple:
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Settings:
    PROJECT_NAME: str = os.getenv("BILLING_PROJECT_NAME", "Billing Payment Service")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./billing.db")
    JWT_SECRET: str = os.getenv("JWT_SECRET", "")
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Retry policy for recoverable plugin failures; one delay per retry
    PAYMENT_RETRY_MAX_ATTEMPTS: int = int(os.getenv("PAYMENT_RETRY_MAX_ATTEMPTS", "3"))
    PAYMENT_RETRY_DELAYS_SECONDS: tuple = _delays(
        os.getenv("PAYMENT_RETRY_DELAYS_SECONDS", "28800,28800,28800")
    )
    PAYMENT_PLUGIN_TIMEOUT_SECONDS: float = float(
        os.getenv("PAYMENT_PLUGIN_TIMEOUT_SECONDS", "30")
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
