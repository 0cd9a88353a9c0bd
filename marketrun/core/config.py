"""Application configuration."""

from decimal import Decimal
from os import getenv

from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime settings for the application."""

    app_name: str = "marketrun API"
    app_env: str = getenv("APP_ENV", "dev")
    debug: bool = getenv("DEBUG", "0") == "1"
    database_url: str = getenv("DATABASE_URL", "sqlite:///./marketrun.db")
    jwt_secret_key: str = getenv("JWT_SECRET_KEY", "dev-only-change-me-to-a-long-random-secret")
    jwt_algorithm: str = getenv("JWT_ALGORITHM", "HS256")
    jwt_expire_minutes: int = int(getenv("JWT_EXPIRE_MINUTES", "60"))
    handover_code_length: int = int(getenv("HANDOVER_CODE_LENGTH", "6"))
    handover_code_ttl_minutes: int = int(getenv("HANDOVER_CODE_TTL_MINUTES", "10"))
    handover_max_attempts: int = int(getenv("HANDOVER_MAX_ATTEMPTS", "5"))
    platform_fee_rate: Decimal = Decimal(getenv("PLATFORM_FEE_RATE", "0.05"))
    default_runner_fee: Decimal = Decimal(getenv("DEFAULT_RUNNER_FEE", "5.00"))
    default_delivery_fee: Decimal = Decimal(getenv("DEFAULT_DELIVERY_FEE", "10.00"))
    event_queue_size: int = int(getenv("EVENT_QUEUE_SIZE", "100"))


settings: Settings = Settings()
