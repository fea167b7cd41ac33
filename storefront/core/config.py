from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

# Load .env into environment variables first; real env vars win.
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",   # ignore unknown keys in .env
        case_sensitive=False,
    )

    DATABASE_URL: str
    DB_CREATE_ALL: bool = False
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30

    JWT_SECRET: str
    JWT_ALG: str = "HS256"

    PAYMENT_CALLBACK_SECRET: str = "change-me"

    # Reservation engine
    RESERVATION_TTL_SECONDS: int = 300
    RESERVATION_CLAIM_ATTEMPTS: int = 3

    # Aggregates
    INFINITE_STOCK: int = 999999
    AGGREGATE_QUERY_BATCH_SIZE: int = 50
    AGGREGATE_UPDATE_BATCH_SIZE: int = 8

    # Background expiry sweep, 0 disables
    SWEEP_INTERVAL_SECONDS: int = 60

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True


settings = Settings()
