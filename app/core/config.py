from pydantic_settings import BaseSettings
from typing import Dict, List
from decimal import Decimal
from functools import lru_cache


class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "Affiliate Commission API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_ECHO: bool = False
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Affiliate program
    AFFILIATE_PLATFORM_FEE_PERCENT: Decimal = Decimal("5")
    AFFILIATE_CURRENCY: str = "thb"
    COMMISSION_RATE_CACHE_TTL_SECONDS: int = 300
    AFFILIATE_DEFAULT_RATES: Dict[str, Decimal] = {
        "signup": Decimal("0"),
        "booking": Decimal("10"),
        "product_purchase": Decimal("5"),
        "event_ticket_purchase": Decimal("10"),
        "subscription": Decimal("15"),
        "referral": Decimal("0"),
    }

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CONVERSION_TASK_MAX_RETRIES: int = 5

    # Pagination
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
