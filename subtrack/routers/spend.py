"""
Spend Router

GET /api/spend?currency=EUR&group_by=category

Monthly spend across the caller's subscriptions in the display currency
(query param, else the saved preference). Subscriptions whose amount
could not be converted are listed under "unconverted" and left out of
the totals.
"""

import logging
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.async_utils import run_sync
from subtrack.core.database import get_session_context
from subtrack.core.errors import ValidationFailed
from subtrack.models.currency import CurrencyCode, parse_currency
from subtrack.services.currency_service import format_amount, get_currency_service
from subtrack.services.preferences_service import PreferencesService
from subtrack.services.spend_aggregator import GroupBy, SpendAggregator, SpendLine
from subtrack.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter()


class SpendResponse(BaseModel):
    currency: str
    total: float
    formatted_total: str
    subscription_count: int
    by_category: Dict[str, float]
    by_billing_cycle: Dict[str, float]
    groups: Optional[Dict[str, float]] = None
    unconverted: List[str]


def load_spend_lines(db: Session, user_id: str) -> List[SpendLine]:
    service = SubscriptionService(db)
    names = service.category_names(user_id)
    return [SpendLine.from_subscription(sub, names) for sub in service.list_subscriptions(user_id)]


def resolve_display_currency(db: Session, user_id: str, currency: Optional[str]) -> CurrencyCode:
    if currency:
        return parse_currency(currency)
    return PreferencesService(db).display_currency(user_id)


def load_spend_inputs(user_id: str, currency: Optional[str] = None) -> Tuple[List[SpendLine], CurrencyCode]:
    """Blocking read of the caller's spend lines and display currency. Run via run_sync."""
    with get_session_context() as db:
        display = resolve_display_currency(db, user_id, currency)
        return load_spend_lines(db, user_id), display


@router.get("", response_model=SpendResponse, summary="Monthly spend in the display currency")
async def get_spend(
    currency: Optional[str] = Query(None, description="Display currency; defaults to the saved preference"),
    group_by: Optional[str] = Query(None, description="category | billing_cycle"),
    user: AuthenticatedUser = Depends(get_current_user),
):
    if group_by is not None and group_by not in {g.value for g in GroupBy}:
        raise ValidationFailed("group_by", "group_by must be 'category' or 'billing_cycle'")

    lines, display = await run_sync(load_spend_inputs, user.user_id, currency)
    summary = await SpendAggregator(get_currency_service()).summarize(lines, display)

    groups = None
    if group_by == GroupBy.CATEGORY.value:
        groups = summary.by_category
    elif group_by == GroupBy.BILLING_CYCLE.value:
        groups = summary.by_billing_cycle

    return SpendResponse(
        currency=summary.currency,
        total=round(summary.total, 2),
        formatted_total=format_amount(summary.total, summary.currency),
        subscription_count=summary.subscription_count,
        by_category={k: round(v, 2) for k, v in summary.by_category.items()},
        by_billing_cycle={k: round(v, 2) for k, v in summary.by_billing_cycle.items()},
        groups={k: round(v, 2) for k, v in groups.items()} if groups is not None else None,
        unconverted=summary.unconverted,
    )
