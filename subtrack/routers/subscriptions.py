"""
Subscriptions Router
====================

- GET    /api/subscriptions            list (dashboard filters as query params)
- POST   /api/subscriptions            create
- GET    /api/subscriptions/{id}
- PUT    /api/subscriptions/{id}       partial update
- DELETE /api/subscriptions/{id}
"""

import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlmodel import Session

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user
from subtrack.core.database import get_session
from subtrack.models.subscription import Subscription
from subtrack.services.billing_cycle import monthly_equivalent
from subtrack.services.subscription_service import (
    SubscriptionService,
    days_until,
    filter_subscriptions,
    is_expired,
    is_renewing_soon,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class SubscriptionCreate(BaseModel):
    name: str = Field(..., max_length=200)
    price: float
    currency: str = "USD"
    billing_cycle: str = "Monthly"
    start_date: date
    next_billing_date: date
    category_id: Optional[str] = None


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    price: Optional[float] = None
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    start_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    category_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    name: str
    price: float
    currency: str
    billing_cycle: str
    start_date: date
    next_billing_date: date
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    monthly_price: float
    days_until_renewal: int
    is_expired: bool
    is_renewing_soon: bool


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _to_response(sub: Subscription, names: dict, today: date) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=sub.id,
        name=sub.name,
        price=sub.price,
        currency=sub.currency,
        billing_cycle=sub.billing_cycle,
        start_date=sub.start_date,
        next_billing_date=sub.next_billing_date,
        category_id=sub.category_id,
        category_name=names.get(sub.category_id) if sub.category_id else None,
        monthly_price=round(monthly_equivalent(sub.price, sub.billing_cycle), 2),
        days_until_renewal=days_until(sub.next_billing_date, today),
        is_expired=is_expired(sub.next_billing_date, today),
        is_renewing_soon=is_renewing_soon(sub.next_billing_date, today),
    )


@router.get("", response_model=List[SubscriptionResponse], summary="List subscriptions")
def list_subscriptions(
    category_id: Optional[str] = Query(None),
    billing_cycle: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Matches name or category name"),
    renewing_soon: bool = Query(False),
    expired: bool = Query(False),
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    service = SubscriptionService(db)
    names = service.category_names(user.user_id)
    today = _today()
    subs = filter_subscriptions(
        service.list_subscriptions(user.user_id),
        today,
        category_id=category_id,
        billing_cycle=billing_cycle,
        search=search,
        renewing_soon=renewing_soon,
        expired=expired,
        category_names=names,
    )
    return [_to_response(sub, names, today) for sub in subs]


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription",
)
def create_subscription(
    body: SubscriptionCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    service = SubscriptionService(db)
    sub = service.create_subscription(user.user_id, **body.model_dump())
    return _to_response(sub, service.category_names(user.user_id), _today())


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    service = SubscriptionService(db)
    sub = service.get_subscription(user.user_id, subscription_id)
    return _to_response(sub, service.category_names(user.user_id), _today())


@router.put("/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    service = SubscriptionService(db)
    sub = service.update_subscription(
        user.user_id, subscription_id, **body.model_dump(exclude_unset=True)
    )
    return _to_response(sub, service.category_names(user.user_id), _today())


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(
    subscription_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_session),
):
    SubscriptionService(db).delete_subscription(user.user_id, subscription_id)
