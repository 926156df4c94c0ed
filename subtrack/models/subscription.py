"""
Subscription Models
===================

SQLModel tables for the subscriptions a user tracks and the categories
they are filed under.

- Subscription: one recurring charge (price, currency, cycle, dates).
- Category: system defaults (user_id NULL, read-only) or user-owned.

billing_cycle and currency are stored as plain strings; API input is
validated against BillingCycle / CurrencyCode before it gets here.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BillingCycle(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    YEARLY = "Yearly"


class Category(SQLModel, table=True):
    """A subscription category. Defaults are shared and immutable."""

    __tablename__ = "subscription_categories"

    id: str = Field(default_factory=_uuid, primary_key=True, max_length=36)
    user_id: Optional[str] = Field(default=None, index=True, nullable=True, max_length=128)
    name: str = Field(max_length=100)
    is_default: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Subscription(SQLModel, table=True):
    """A recurring charge owned by one user."""

    __tablename__ = "subscriptions"

    id: str = Field(default_factory=_uuid, primary_key=True, max_length=36)
    user_id: str = Field(index=True, max_length=128)
    name: str = Field(max_length=200)
    price: float
    currency: str = Field(default="USD", max_length=3)
    billing_cycle: str = Field(default=BillingCycle.MONTHLY.value, max_length=16)
    start_date: date
    next_billing_date: date
    category_id: Optional[str] = Field(
        default=None,
        foreign_key="subscription_categories.id",
        index=True,
        nullable=True,
        max_length=36,
    )
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
