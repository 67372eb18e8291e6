import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    secret_key: str = "dev-secret"
    token_ttl_hours: int = Field(24 * 7, ge=1)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    imgbb_api_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    payment_currency: str = "usd"
    log_level: str = "INFO"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Admin User"
    rate_limit_enabled: bool = True
    port: int = 8000


def get_settings() -> Settings:
    """Read settings from the environment (and a local .env file if present)."""
    load_dotenv()
    origins = os.getenv("CLIENT_URL", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        secret_key=os.getenv("SECRET_KEY", "dev-secret"),
        token_ttl_hours=int(os.getenv("TOKEN_TTL_HOURS", 24 * 7)),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        imgbb_api_key=os.getenv("IMGBB_API_KEY"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        payment_currency=os.getenv("PAYMENT_CURRENCY", "usd"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        admin_email=os.getenv("ADMIN_EMAIL"),
        admin_password=os.getenv("ADMIN_PASSWORD"),
        admin_name=os.getenv("ADMIN_NAME", "Admin User"),
        rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no"),
        port=int(os.getenv("PORT", 8000)),
    )
