"""
Access Models
=============

- UserAccess: one entitlement record per user, written once by access
  provisioning and afterwards only by the payment webhook.
- PaymentWebhookEvent: append-only audit log of verified payment events.
- UserPreferences: per-user display currency.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserType(str, Enum):
    EXISTING = "existing"
    NEW = "new"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    PREMIUM = "premium"


class UserAccess(SQLModel, table=True):
    """Entitlement record for a user."""

    __tablename__ = "user_access"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(unique=True, index=True, max_length=128)
    user_type: str = Field(default=UserType.NEW.value, max_length=16)
    has_lifetime_access: bool = Field(default=False)
    subscription_status: str = Field(default=SubscriptionStatus.FREE.value, max_length=16)
    trial_start_date: Optional[datetime] = Field(default=None, nullable=True)
    trial_end_date: Optional[datetime] = Field(default=None, nullable=True)
    subscription_start_date: Optional[datetime] = Field(default=None, nullable=True)
    subscription_end_date: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PaymentWebhookEvent(SQLModel, table=True):
    """Raw payment event, stored after signature verification."""

    __tablename__ = "payment_webhook_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, max_length=255)
    event_type: str = Field(max_length=128)
    payment_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    user_id: Optional[str] = Field(default=None, index=True, nullable=True, max_length=128)
    raw_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_now)


class UserPreferences(SQLModel, table=True):
    """Display preferences for a user."""

    __tablename__ = "user_preferences"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True, max_length=128)
    currency: str = Field(default="USD", max_length=3)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
