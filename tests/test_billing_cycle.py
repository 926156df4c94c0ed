"""
Tests for billing-cycle normalization.
"""

from datetime import date

import pytest

from subtrack.models.subscription import BillingCycle
from subtrack.services.billing_cycle import (
    monthly_equivalent,
    next_billing_after,
    parse_billing_cycle,
)


class TestMonthlyEquivalent:
    def test_monthly_is_unchanged(self):
        assert monthly_equivalent(15.0, "Monthly") == 15.0

    def test_quarterly_divides_by_three(self):
        assert monthly_equivalent(30.0, "Quarterly") == pytest.approx(10.0)

    def test_yearly_divides_by_twelve(self):
        assert monthly_equivalent(120.0, "Yearly") == pytest.approx(10.0)

    def test_enum_input(self):
        assert monthly_equivalent(120.0, BillingCycle.YEARLY) == pytest.approx(10.0)

    @pytest.mark.parametrize("cycle", ["Weekly", "", None, "fortnightly", 42])
    def test_unknown_cycle_treated_as_monthly(self, cycle):
        assert monthly_equivalent(9.99, cycle) == 9.99

    def test_does_not_round(self):
        assert monthly_equivalent(10.0, "Quarterly") == pytest.approx(10.0 / 3)


class TestParseBillingCycle:
    @pytest.mark.parametrize("raw,expected", [
        ("Monthly", BillingCycle.MONTHLY),
        ("quarterly", BillingCycle.QUARTERLY),
        (" YEARLY ", BillingCycle.YEARLY),
        ("daily", BillingCycle.MONTHLY),
    ])
    def test_parse(self, raw, expected):
        assert parse_billing_cycle(raw) == expected


class TestNextBillingAfter:
    def test_monthly(self):
        assert next_billing_after(date(2025, 1, 15), "Monthly") == date(2025, 2, 15)

    def test_month_end_clamps(self):
        assert next_billing_after(date(2025, 1, 31), "Monthly") == date(2025, 2, 28)

    def test_quarterly(self):
        assert next_billing_after(date(2025, 11, 1), "Quarterly") == date(2026, 2, 1)

    def test_yearly_leap_day(self):
        assert next_billing_after(date(2024, 2, 29), "Yearly") == date(2025, 2, 28)
