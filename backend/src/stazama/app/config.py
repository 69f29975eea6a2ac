"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./stazama.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Rate limits per client IP (slowapi / limits notation)
    login_rate_limit: str = "5/15 minutes"
    tracking_rate_limit: str = "100/minute"

    # Service tier fees (MWK)
    inspection_fee: float = 7000
    inspection_payment_fee: float = 10000
    full_service_fee: float = 10000

    # Request submission
    submission_timeout_seconds: float = 10.0

    # Cache
    cache_default_ttl_ms: int = 5 * 60 * 1000
    cache_max_size: int = 500
    cache_sweep_interval_seconds: float = 60.0

    # Monitoring
    monitoring_endpoint: str = ""
    monitoring_flush_interval_seconds: float = 30.0
    monitoring_max_metrics: int = 1000
    monitoring_max_errors: int = 100

    # Email (receipts)
    sendgrid_api_key: str = ""
    receipt_from_email: str = "receipts@stazama.com"

    # CORS / Frontend
    cors_origins: str = "http://localhost:5173"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def service_fees(self) -> dict[str, float]:
        """Fee charged at creation for each service tier."""
        return {
            "inspection": self.inspection_fee,
            "inspection-payment": self.inspection_payment_fee,
            "full-service": self.full_service_fee,
        }


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
