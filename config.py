import os
import logging
from dataclasses import dataclass
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEV_JWT_SECRET = "dev-only-secret-change-me"

log = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: str = "ecommerce"
    jwt_secret: str = DEV_JWT_SECRET
    jwt_expires_minutes: int = 24 * 60
    order_timeout_seconds: float = 10.0
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_username: str = "admin"
    auth_rate_limit: int = 50
    auth_rate_window_seconds: int = 15 * 60
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from environment variables; keyword overrides win."""
        values = dict(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "ecommerce"),
            jwt_secret=os.getenv("JWT_SECRET", DEV_JWT_SECRET),
            jwt_expires_minutes=int(os.getenv("JWT_EXPIRES_MINUTES", 24 * 60)),
            order_timeout_seconds=float(os.getenv("ORDER_TIMEOUT_SECONDS", 10)),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            admin_username=os.getenv("ADMIN_USERNAME", "admin"),
            auth_rate_limit=int(os.getenv("AUTH_RATE_LIMIT", 50)),
            auth_rate_window_seconds=int(os.getenv("AUTH_RATE_WINDOW_SECONDS", 15 * 60)),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", 8000)),
        )
        values.update(overrides)
        settings = cls(**values)
        if settings.jwt_secret == DEV_JWT_SECRET:
            log.warning("JWT_SECRET not set, using the development placeholder")
        return settings

    @property
    def use_memory_store(self) -> bool:
        return not self.database_url
