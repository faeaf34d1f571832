import logging
import os
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .pricing import COINGECKO_SIMPLE_PRICE_URL
from .referrals import DEFAULT_BONUS_RATE

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    jwt_secret: str = ""
    jwt_expire_minutes: int = 60 * 24
    database_url: str = ""
    price_api_url: str = COINGECKO_SIMPLE_PRICE_URL
    price_api_timeout: float = 5.0
    referral_bonus_rate: Decimal = DEFAULT_BONUS_RATE
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            if os.environ.get("APP_ENV") != "production":
                load_dotenv()
            environ = os.environ

        app_env = environ.get("APP_ENV", "development")
        jwt_secret = environ.get("JWT_SECRET", "")
        if not jwt_secret:
            if app_env == "production":
                raise ConfigurationError("JWT_SECRET must be set in production")
            logger.warning("JWT_SECRET is not set; using a random per-process secret (admin tokens will not survive restarts)")
            jwt_secret = secrets.token_urlsafe(32)

        origins = tuple(o.strip() for o in environ.get("CORS_ORIGINS", "*").split(",") if o.strip())

        try:
            return cls(
                app_env=app_env,
                jwt_secret=jwt_secret,
                jwt_expire_minutes=int(environ.get("JWT_EXPIRE_MINUTES", 60 * 24)),
                database_url=environ.get("DATABASE_URL", ""),
                price_api_url=environ.get("PRICE_API_URL", COINGECKO_SIMPLE_PRICE_URL),
                price_api_timeout=float(environ.get("PRICE_API_TIMEOUT", "5")),
                referral_bonus_rate=Decimal(environ.get("REFERRAL_BONUS_RATE", str(DEFAULT_BONUS_RATE))),
                log_level=environ.get("LOG_LEVEL", "INFO").upper(),
                cors_origins=origins or ("*",),
                admin_email=environ.get("ADMIN_EMAIL") or None,
                admin_password=environ.get("ADMIN_PASSWORD") or None,
            )
        except (ArithmeticError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
