from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    BILLING_CURRENCY: str = "USD"
    BILLING_SETUP_FEE: Decimal = Decimal("50.00")
    BILLING_CLAIM_LEASE_MINUTES: int = 60
    BILLING_SCHEDULE_CRON: str = "0 9 * * *"  # 09:00 every day
    BILLING_SCHEDULE_TIMEZONE: str = "America/Los_Angeles"

    PROCESSOR_TIMEOUT_SECONDS: float = 20.0
    PROCESSOR_PROBE_TIMEOUT_SECONDS: float = 5.0
    PAYMENT_FALLBACK_PROCESSOR: str = "pyre"
    PAYMENT_PREFERRED_PROCESSORS: str = ""  # comma separated, empty = environment default
    PAYMENT_TEST_CONNECTIONS: Optional[bool] = None  # None = only in production

    SETTLEMENT_DB_PATH: str = "settlement.db"
    SLACK_BILLING_WEBHOOK: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def preferred_processors(self) -> List[str]:
        return [name.strip() for name in self.PAYMENT_PREFERRED_PROCESSORS.split(",") if name.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once from the environment / .env file."""
    return Settings()
