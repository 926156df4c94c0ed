"""
Subscription Service
====================

CRUD for the recurring charges a user tracks, plus the date helpers the
dashboard and analytics views are built on.

Validation happens here, before anything is written: a rejected
create/update leaves the store untouched.

    name               non-empty after trimming
    price              > 0
    currency           one of CurrencyCode
    billing_cycle      one of BillingCycle (exact, case-insensitive)
    next_billing_date  >= start_date
    category_id        NULL, a default, or one of the owner's categories
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dateutil.relativedelta import relativedelta
from sqlmodel import Session, or_, select

from subtrack.core.errors import CategoryNotFound, SubscriptionNotFound, ValidationFailed
from subtrack.models.currency import parse_currency
from subtrack.models.subscription import BillingCycle, Category, Subscription
from subtrack.services.billing_cycle import next_billing_after
from subtrack.services.change_feed import ChangeFeed, ChangeKind, change_feed

logger = logging.getLogger(__name__)

TABLE = "subscriptions"
RENEWING_SOON_DAYS = 7
MAX_NAME_LENGTH = 200

_EDITABLE = ("name", "price", "currency", "billing_cycle", "start_date", "next_billing_date", "category_id")


# =============================================================================
# Date helpers
# =============================================================================

def days_until(next_billing: date, today: date) -> int:
    return (next_billing - today).days


def is_expired(next_billing: date, today: date) -> bool:
    return next_billing < today


def is_renewing_soon(next_billing: date, today: date) -> bool:
    return 0 <= days_until(next_billing, today) <= RENEWING_SOON_DAYS


def filter_subscriptions(
    subscriptions: Iterable[Subscription],
    today: date,
    category_id: Optional[str] = None,
    billing_cycle: Optional[str] = None,
    search: Optional[str] = None,
    renewing_soon: bool = False,
    expired: bool = False,
    category_names: Optional[Mapping[str, str]] = None,
) -> List[Subscription]:
    """Dashboard filters. With both status flags set, either status matches."""
    names = category_names or {}
    needle = (search or "").strip().lower()
    result = []
    for sub in subscriptions:
        if category_id and sub.category_id != category_id:
            continue
        if billing_cycle and sub.billing_cycle != billing_cycle:
            continue
        if needle:
            category_name = names.get(sub.category_id, "") if sub.category_id else ""
            if needle not in sub.name.lower() and needle not in category_name.lower():
                continue
        if renewing_soon or expired:
            soon = renewing_soon and is_renewing_soon(sub.next_billing_date, today)
            gone = expired and is_expired(sub.next_billing_date, today)
            if not (soon or gone):
                continue
        result.append(sub)
    return result


@dataclass
class TimelineMonth:
    month: str
    payments: List[Dict[str, Any]] = field(default_factory=list)
    total_by_currency: Dict[str, float] = field(default_factory=dict)


def renewal_timeline(
    subscriptions: Iterable[Subscription],
    start: date,
    months: int = 6,
) -> List[TimelineMonth]:
    """Upcoming renewals from *start* through the next *months* months, by month.

    Renewal dates in the past are rolled forward cycle by cycle; each
    subscription appears once per renewal falling in the window. Amounts
    stay in the subscription's own currency.
    """
    if months <= 0:
        return []
    end = start.replace(day=1) + relativedelta(months=months)

    buckets: Dict[str, TimelineMonth] = {}
    cursor = start.replace(day=1)
    while cursor < end:
        key = cursor.strftime("%Y-%m")
        buckets[key] = TimelineMonth(month=key)
        cursor += relativedelta(months=1)

    for sub in subscriptions:
        due = sub.next_billing_date
        while due < start:
            due = next_billing_after(due, sub.billing_cycle)
        while due < end:
            bucket = buckets[due.strftime("%Y-%m")]
            bucket.payments.append({
                "subscription_id": sub.id,
                "name": sub.name,
                "date": due.isoformat(),
                "amount": sub.price,
                "currency": sub.currency,
            })
            bucket.total_by_currency[sub.currency] = (
                bucket.total_by_currency.get(sub.currency, 0.0) + sub.price
            )
            due = next_billing_after(due, sub.billing_cycle)

    for bucket in buckets.values():
        bucket.payments.sort(key=lambda p: (p["date"], p["name"]))
    return list(buckets.values())


# =============================================================================
# Service
# =============================================================================

def _validated(values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(values)

    if "name" in out:
        name = (out["name"] or "").strip()
        if not name:
            raise ValidationFailed("name", "Name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationFailed("name", f"Name must be at most {MAX_NAME_LENGTH} characters")
        out["name"] = name

    if "price" in out:
        price = out["price"]
        if price is None or not isinstance(price, (int, float)) or isinstance(price, bool):
            raise ValidationFailed("price", "Price must be a number")
        if not math.isfinite(price) or price <= 0:
            raise ValidationFailed("price", "Price must be greater than zero")
        out["price"] = float(price)

    if "currency" in out:
        out["currency"] = parse_currency(out["currency"]).value

    if "billing_cycle" in out:
        raw = out["billing_cycle"]
        value = raw.value if isinstance(raw, BillingCycle) else str(raw or "").strip().capitalize()
        try:
            out["billing_cycle"] = BillingCycle(value).value
        except ValueError:
            raise ValidationFailed(
                "billing_cycle", "Billing cycle must be Monthly, Quarterly or Yearly"
            ) from None

    return out


class SubscriptionService:
    """Subscription CRUD scoped to one owner."""

    def __init__(self, db: Session, feed: ChangeFeed = change_feed):
        self.db = db
        self._feed = feed

    def _check_category(self, owner_id: str, category_id: Optional[str]) -> None:
        if category_id is None:
            return
        category = self.db.get(Category, category_id)
        if category is None or (not category.is_default and category.user_id != owner_id):
            raise CategoryNotFound(category_id)

    @staticmethod
    def _check_dates(start: date, next_billing: date) -> None:
        if next_billing < start:
            raise ValidationFailed(
                "next_billing_date", "Next billing date cannot be before the start date"
            )

    def list_subscriptions(self, owner_id: str) -> List[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == owner_id)
            .order_by(Subscription.next_billing_date, Subscription.name)
        )
        return list(self.db.exec(stmt).all())

    def get_subscription(self, owner_id: str, subscription_id: str) -> Subscription:
        sub = self.db.get(Subscription, subscription_id)
        if sub is None or sub.user_id != owner_id:
            raise SubscriptionNotFound(subscription_id)
        return sub

    def create_subscription(self, owner_id: str, **values: Any) -> Subscription:
        missing = [name for name in ("name", "price", "start_date", "next_billing_date") if values.get(name) is None]
        if missing:
            raise ValidationFailed(missing[0], f"{missing[0]} is required")
        values.setdefault("currency", "USD")
        values.setdefault("billing_cycle", BillingCycle.MONTHLY.value)

        clean = _validated({k: v for k, v in values.items() if k in _EDITABLE})
        self._check_dates(clean["start_date"], clean["next_billing_date"])
        self._check_category(owner_id, clean.get("category_id"))

        sub = Subscription(user_id=owner_id, **clean)
        self.db.add(sub)
        self.db.commit()
        self.db.refresh(sub)
        logger.info("Subscription created: id=%s user=%s", sub.id, owner_id)

        self._feed.publish(
            TABLE, ChangeKind.INSERT, sub.id,
            row=sub.model_dump(mode="json"), owner_id=owner_id,
        )
        return sub

    def update_subscription(self, owner_id: str, subscription_id: str, **changes: Any) -> Subscription:
        sub = self.get_subscription(owner_id, subscription_id)
        clean = _validated({k: v for k, v in changes.items() if k in _EDITABLE})
        self._check_dates(
            clean.get("start_date", sub.start_date),
            clean.get("next_billing_date", sub.next_billing_date),
        )
        if "category_id" in clean:
            self._check_category(owner_id, clean["category_id"])

        old = sub.model_dump(mode="json")
        for name, value in clean.items():
            setattr(sub, name, value)
        sub.updated_at = datetime.now(timezone.utc)
        self.db.add(sub)
        self.db.commit()
        self.db.refresh(sub)

        self._feed.publish(
            TABLE, ChangeKind.UPDATE, sub.id,
            row=sub.model_dump(mode="json"), old=old, owner_id=owner_id,
        )
        return sub

    def delete_subscription(self, owner_id: str, subscription_id: str) -> None:
        sub = self.get_subscription(owner_id, subscription_id)
        old = sub.model_dump(mode="json")
        self.db.delete(sub)
        self.db.commit()
        logger.info("Subscription deleted: id=%s user=%s", subscription_id, owner_id)
        self._feed.publish(TABLE, ChangeKind.DELETE, subscription_id, old=old, owner_id=owner_id)

    def category_names(self, owner_id: str) -> Dict[str, str]:
        rows = self.db.exec(
            select(Category).where(
                or_(Category.user_id == owner_id, Category.is_default == True)  # noqa: E712
            )
        ).all()
        return {row.id: row.name for row in rows}
