"""
Health check endpoint. No authentication required.
"""

import logging

from fastapi import APIRouter
from sqlalchemy import text

from subtrack.core.database import get_engine
from subtrack.core.structured_logging import APP_VERSION, get_uptime_s
from subtrack.services.currency_service import get_currency_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", summary="Health check")
def health():
    database = "ok"
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "database": database,
        "cached_rate_tables": len(get_currency_service().cache),
    }
