"""
Billing-cycle normalization.

Pure helpers: no I/O, never raise on an unrecognised cycle (treated as
Monthly).
"""

from __future__ import annotations

from datetime import date

from dateutil.relativedelta import relativedelta

from subtrack.models.subscription import BillingCycle

_MONTHS_PER_CYCLE = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def parse_billing_cycle(value) -> BillingCycle:
    """Map a stored/received value to a BillingCycle, defaulting to Monthly."""
    if isinstance(value, BillingCycle):
        return value
    text = str(value or "").strip().capitalize()
    try:
        return BillingCycle(text)
    except ValueError:
        return BillingCycle.MONTHLY


def monthly_equivalent(price: float, billing_cycle) -> float:
    """Price per month in the subscription's own currency."""
    return price / _MONTHS_PER_CYCLE[parse_billing_cycle(billing_cycle)]


def next_billing_after(current: date, billing_cycle) -> date:
    """The renewal date one cycle after *current*."""
    months = _MONTHS_PER_CYCLE[parse_billing_cycle(billing_cycle)]
    return current + relativedelta(months=months)
