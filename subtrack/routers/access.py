"""
Access Router
=============

- GET  /api/access            entitlement snapshot for the caller
- POST /api/access/provision  create the access record on first sign-in
                              (idempotent; 503 STK-ACC-001/002 on failure)
- GET  /api/analytics         premium analytics; 403 STK-ACC-003 when locked

The frontend calls /access/provision right after sign-in and must not
continue the session if it fails.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.async_utils import run_sync
from subtrack.core.database import get_session_context
from subtrack.core.errors import AnalyticsLocked
from subtrack.services.access_provisioning import get_access_provisioner
from subtrack.services.currency_service import get_currency_service
from subtrack.services.entitlement_service import (
    EntitlementSnapshot,
    get_entitlement_monitor,
    has_analytics_access,
)
from subtrack.services.spend_aggregator import SpendAggregator
from subtrack.services.subscription_service import SubscriptionService, renewal_timeline
from subtrack.routers.spend import load_spend_lines, resolve_display_currency

logger = logging.getLogger(__name__)

router = APIRouter()


class AccessResponse(BaseModel):
    user_id: Optional[str] = None
    access_level: str
    has_analytics_access: bool
    shows_pricing: bool
    is_in_trial: bool
    trial_days_left: int
    user_type: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_end_date: Optional[datetime] = None


class TimelineMonthResponse(BaseModel):
    month: str
    payments: List[Dict[str, Any]]
    total_by_currency: Dict[str, float]


class AnalyticsResponse(BaseModel):
    currency: str
    monthly_total: float
    by_category: Dict[str, float]
    by_billing_cycle: Dict[str, float]
    unconverted: List[str]
    timeline: List[TimelineMonthResponse]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_response(snapshot: EntitlementSnapshot) -> AccessResponse:
    return AccessResponse(
        user_id=snapshot.user_id,
        access_level=snapshot.access_level.value,
        has_analytics_access=snapshot.has_analytics_access,
        shows_pricing=snapshot.shows_pricing,
        is_in_trial=snapshot.is_in_trial,
        trial_days_left=snapshot.trial_days_left,
        user_type=snapshot.user_type,
        subscription_status=snapshot.subscription_status,
        subscription_end_date=snapshot.subscription_end_date,
    )


def load_analytics_inputs(user_id: str, currency: Optional[str], start: date, months: int):
    """Blocking read of spend lines, display currency and the renewal timeline. Run via run_sync."""
    with get_session_context() as db:
        display = resolve_display_currency(db, user_id, currency)
        lines = load_spend_lines(db, user_id)
        timeline = renewal_timeline(
            SubscriptionService(db).list_subscriptions(user_id), start=start, months=months,
        )
    return lines, display, timeline


@router.get("/access", response_model=AccessResponse, summary="Entitlement snapshot")
async def get_access(user: AuthenticatedUser = Depends(get_current_user)):
    access = await get_entitlement_monitor().lookup(user.user_id)
    return _to_response(EntitlementSnapshot.build(access, _now()))


@router.post("/access/provision", response_model=AccessResponse, summary="Ensure the access record exists")
async def provision_access(user: AuthenticatedUser = Depends(get_current_user)):
    access = await get_access_provisioner().ensure_access_record(user)
    return _to_response(EntitlementSnapshot.build(access, _now()))


@router.get("/analytics", response_model=AnalyticsResponse, summary="Premium spend analytics")
async def get_analytics(
    currency: Optional[str] = Query(None),
    months: int = Query(6, ge=1, le=24),
    user: AuthenticatedUser = Depends(get_current_user),
):
    now = _now()
    access = await get_entitlement_monitor().lookup(user.user_id)
    if not has_analytics_access(access, now):
        snapshot = EntitlementSnapshot.build(access, now)
        raise AnalyticsLocked(user.user_id, snapshot.access_level.value)

    lines, display, timeline = await run_sync(
        load_analytics_inputs, user.user_id, currency, now.date(), months,
    )
    summary = await SpendAggregator(get_currency_service()).summarize(lines, display)
    return AnalyticsResponse(
        currency=summary.currency,
        monthly_total=round(summary.total, 2),
        by_category={k: round(v, 2) for k, v in summary.by_category.items()},
        by_billing_cycle={k: round(v, 2) for k, v in summary.by_billing_cycle.items()},
        unconverted=summary.unconverted,
        timeline=[
            TimelineMonthResponse(
                month=m.month, payments=m.payments, total_by_currency=m.total_by_currency,
            )
            for m in timeline
        ],
    )
