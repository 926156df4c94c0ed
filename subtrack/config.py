"""
subtrack Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the subtrack backend.
    All settings can be overridden via environment variables (SUBTRACK_ prefix).

NOTES:
    existing_user_cutover is a one-time migration date: accounts created
    before it were grandfathered into lifetime access when trials launched.
    It is a constant, not a tunable policy.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_EXCHANGE_RATE_API_URL = "https://v6.exchangerate-api.com/v6"


class Settings(BaseSettings):
    """Runtime settings for the subscription tracker."""

    app_name: str = "subtrack"
    debug: bool = False
    data_directory: str = "/data"

    # Exchange rates (v6.exchangerate-api.com compatible)
    exchange_rate_api_url: str = _DEFAULT_EXCHANGE_RATE_API_URL
    exchange_rate_api_key: Optional[str] = None
    exchange_rate_ttl_seconds: int = 3600          # canonical freshness window: 1 hour
    exchange_rate_fallback_ttl_seconds: int = 300  # retry the real API after 5 min
    exchange_rate_timeout_s: float = 10.0

    # Access provisioning
    existing_user_cutover: datetime = datetime(2024, 2, 1, tzinfo=timezone.utc)
    trial_length_days: int = 7
    provisioning_max_attempts: int = 3
    provisioning_retry_delay_s: float = 1.0   # linear: attempt n waits n * delay
    provisioning_verify_attempts: int = 3
    provisioning_verify_delay_s: float = 0.5

    # Payment webhook (standard-webhooks signing)
    payment_webhook_secret: Optional[str] = None
    payment_webhook_tolerance_s: int = 300

    # Hosted auth platform
    auth_url: Optional[str] = None
    auth_api_key: Optional[str] = None
    auth_enabled: bool = True
    auth_cache_ttl: int = 300  # 5 minutes in seconds

    default_display_currency: str = "USD"

    # CORS
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "SUBTRACK_"


settings = Settings()

if not settings.exchange_rate_api_key:
    logger.warning(
        "SUBTRACK_EXCHANGE_RATE_API_KEY not set; currency conversion will use "
        "approximate fallback rates."
    )
