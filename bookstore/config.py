import os
import logging
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv
from fastapi import Request

logger = logging.getLogger(__name__)

DEBUG_ENVIRONMENTS = {"development", "test"}
# Only ever used when APP_ENV is development/test
_DEV_JWT_SECRET = "dev-only-jwt-secret"


@dataclass
class Settings:
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/bookstore_db"
    environment: str = "production"
    log_level: str = "INFO"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    payhere_merchant_id: str = ""
    payhere_merchant_secret: str = ""
    payhere_app_id: str = ""
    payhere_app_secret: str = ""
    payhere_sandbox: bool = True
    verify_notify_signature: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    checkout_currency: str = "LKR"
    checkout_exchange_rate: int = 300
    echo_sql: bool = False

    @property
    def debug(self) -> bool:
        return self.environment in DEBUG_ENVIRONMENTS

    @property
    def payhere_base_url(self) -> str:
        if self.payhere_sandbox:
            return "https://sandbox.payhere.lk"
        return "https://www.payhere.lk"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build settings from the environment (and a local .env when present)."""
    load_dotenv()

    environment = os.getenv("APP_ENV", "production").strip().lower()
    jwt_secret = os.getenv("JWT_SECRET", "")
    if not jwt_secret:
        if environment not in DEBUG_ENVIRONMENTS:
            raise RuntimeError("JWT_SECRET must be set when APP_ENV=%s" % environment)
        logger.warning("JWT_SECRET not set, using development signing key")
        jwt_secret = _DEV_JWT_SECRET

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        environment=environment,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7))),
        payhere_merchant_id=os.getenv("PAYHERE_MERCHANT_ID", ""),
        payhere_merchant_secret=os.getenv("PAYHERE_MERCHANT_SECRET", ""),
        payhere_app_id=os.getenv("PAYHERE_APP_ID", ""),
        payhere_app_secret=os.getenv("PAYHERE_APP_SECRET", ""),
        payhere_sandbox=_env_bool("PAYHERE_SANDBOX", True),
        verify_notify_signature=_env_bool("PAYHERE_VERIFY_NOTIFY_SIGNATURE", True),
        cors_origins=origins or ["*"],
        checkout_currency=os.getenv("CHECKOUT_CURRENCY", "LKR").upper(),
        checkout_exchange_rate=int(os.getenv("CHECKOUT_EXCHANGE_RATE", "300")),
        echo_sql=_env_bool("SQL_ECHO", False),
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
