"""
Tests for the entitlement engine and EntitlementMonitor.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from subtrack.models.access import SubscriptionStatus, UserAccess, UserType
from subtrack.services.change_feed import ChangeEvent, ChangeFeed, ChangeKind
from subtrack.services.entitlement_service import (
    AccessLevel,
    EntitlementMonitor,
    EntitlementSnapshot,
    access_level,
    has_analytics_access,
    shows_pricing,
    trial_status,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def trial(end, user_id="u1"):
    return UserAccess(
        user_id=user_id,
        user_type=UserType.NEW.value,
        subscription_status=SubscriptionStatus.TRIAL.value,
        trial_start_date=end - timedelta(days=7),
        trial_end_date=end,
    )


def lifetime(user_id="u1"):
    return UserAccess(
        user_id=user_id,
        user_type=UserType.EXISTING.value,
        has_lifetime_access=True,
        subscription_status=SubscriptionStatus.FREE.value,
    )


def premium(user_id="u1"):
    return UserAccess(
        user_id=user_id,
        user_type=UserType.NEW.value,
        subscription_status=SubscriptionStatus.PREMIUM.value,
        subscription_start_date=NOW,
        subscription_end_date=NOW + timedelta(days=365),
    )


def free(user_id="u1"):
    return UserAccess(user_id=user_id, subscription_status=SubscriptionStatus.FREE.value)


class TestHasAnalyticsAccess:
    def test_lifetime(self):
        assert has_analytics_access(lifetime(), NOW) is True

    def test_premium(self):
        assert has_analytics_access(premium(), NOW) is True

    def test_active_trial(self):
        assert has_analytics_access(trial(NOW + timedelta(days=3)), NOW) is True

    def test_trial_at_exact_end_still_has_access(self):
        assert has_analytics_access(trial(NOW), NOW) is True

    def test_expired_trial(self):
        assert has_analytics_access(trial(NOW - timedelta(seconds=1)), NOW) is False

    def test_free(self):
        assert has_analytics_access(free(), NOW) is False

    def test_no_record(self):
        assert has_analytics_access(None, NOW) is False

    def test_naive_trial_end_treated_as_utc(self):
        end = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        assert has_analytics_access(trial(end), NOW) is True

    def test_lifetime_wins_over_any_status(self):
        access = trial(NOW - timedelta(days=30))
        access.has_lifetime_access = True
        assert access_level(access, NOW) == AccessLevel.LIFETIME


class TestTrialStatus:
    def test_days_left_rounds_up(self):
        status = trial_status(trial(NOW + timedelta(days=6, hours=1)), NOW)
        assert status.is_in_trial is True
        assert status.days_left == 7

    def test_full_trial(self):
        assert trial_status(trial(NOW + timedelta(days=7)), NOW).days_left == 7

    def test_expired_clamps_to_zero(self):
        status = trial_status(trial(NOW - timedelta(days=2)), NOW)
        assert status.is_in_trial is False
        assert status.days_left == 0

    def test_not_a_trial(self):
        status = trial_status(premium(), NOW)
        assert status.is_in_trial is False
        assert status.days_left == 0

    def test_no_record(self):
        assert trial_status(None, NOW).days_left == 0


class TestShowsPricing:
    @pytest.mark.parametrize("access,expected", [
        (lifetime(), False),
        (premium(), False),
        (trial(NOW + timedelta(days=1)), True),
        (free(), True),
        (None, True),
    ])
    def test_pricing(self, access, expected):
        assert shows_pricing(access, NOW) is expected


class TestSnapshot:
    def test_expired_trial_snapshot(self):
        snap = EntitlementSnapshot.build(trial(NOW - timedelta(days=1)), NOW)
        assert snap.access_level == AccessLevel.TRIAL_EXPIRED
        assert snap.has_analytics_access is False
        assert snap.shows_pricing is True
        assert snap.trial_days_left == 0

    def test_missing_record_snapshot(self):
        snap = EntitlementSnapshot.build(None, NOW)
        assert snap.access_level == AccessLevel.NONE
        assert snap.user_id is None


class TestEntitlementMonitor:
    def _event(self, kind, access, seq):
        return ChangeEvent(
            table="user_access",
            kind=kind,
            key=access.user_id,
            row=access.model_dump(mode="json"),
            owner_id=access.user_id,
            seq=seq,
        )

    def test_reconcile_then_upgrade_event(self):
        monitor = EntitlementMonitor(loader=lambda: [trial(NOW - timedelta(days=1))], clock=lambda: NOW)
        monitor.reconcile()
        assert monitor.snapshot("u1").has_analytics_access is False

        assert monitor.apply(self._event(ChangeKind.UPDATE, premium(), seq=5)) is True
        assert monitor.snapshot("u1").access_level == AccessLevel.PREMIUM

    def test_stale_event_ignored(self):
        monitor = EntitlementMonitor(loader=lambda: [], clock=lambda: NOW)
        monitor.reconcile()
        monitor.apply(self._event(ChangeKind.UPDATE, premium(), seq=10))
        assert monitor.apply(self._event(ChangeKind.UPDATE, free(), seq=9)) is False
        assert monitor.snapshot("u1").access_level == AccessLevel.PREMIUM

    def test_events_before_reconcile_floor_ignored(self):
        monitor = EntitlementMonitor(loader=lambda: [lifetime()], clock=lambda: NOW)
        monitor.reconcile(as_of_seq=20)
        assert monitor.apply(self._event(ChangeKind.UPDATE, free(), seq=20)) is False
        assert monitor.snapshot("u1").access_level == AccessLevel.LIFETIME

    def test_all_snapshots(self):
        monitor = EntitlementMonitor(
            loader=lambda: [lifetime("a"), free("b")], clock=lambda: NOW,
        )
        monitor.reconcile()
        snaps = monitor.all_snapshots()
        assert snaps["a"].has_analytics_access is True
        assert snaps["b"].has_analytics_access is False


async def wait_for(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        assert asyncio.get_running_loop().time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


class TestEntitlementMonitorFollowsFeed:
    @pytest.mark.asyncio
    async def test_start_loads_then_applies_events(self):
        feed = ChangeFeed()
        monitor = EntitlementMonitor(loader=lambda: [trial(NOW + timedelta(days=2))], clock=lambda: NOW)

        monitor.start(feed)
        await wait_for(lambda: monitor.ready)
        assert monitor.snapshot("u1").access_level == AccessLevel.TRIAL

        feed.publish("user_access", ChangeKind.UPDATE, "u1",
                     row=premium().model_dump(mode="json"), owner_id="u1")
        feed.publish("subscriptions", ChangeKind.INSERT, "s1", row={"id": "s1"}, owner_id="u1")
        await wait_for(lambda: monitor.snapshot("u1").access_level == AccessLevel.PREMIUM)

        await monitor.stop()
        assert monitor.ready is False
        assert len(feed) == 0

    @pytest.mark.asyncio
    async def test_overflow_reconciles_from_loader(self):
        feed = ChangeFeed()
        stored = [trial(NOW + timedelta(days=2))]
        monitor = EntitlementMonitor(loader=lambda: list(stored), clock=lambda: NOW, queue_size=1)
        monitor.start(feed)
        await wait_for(lambda: monitor.ready)

        stored[:] = [lifetime()]
        for access in (free(), premium(), free()):
            feed.publish("user_access", ChangeKind.UPDATE, "u1",
                         row=access.model_dump(mode="json"), owner_id="u1")

        await wait_for(lambda: monitor.snapshot("u1").access_level == AccessLevel.LIFETIME)
        await asyncio.sleep(0.05)
        assert monitor.snapshot("u1").access_level == AccessLevel.LIFETIME
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_lookup_reads_store_until_ready(self):
        store = MagicMock()
        store.get.return_value = free("u9")
        monitor = EntitlementMonitor(loader=lambda: [lifetime("u9")], clock=lambda: NOW)

        assert (await monitor.lookup("u9", store=store)).subscription_status == "free"
        store.get.assert_called_once_with("u9")

    @pytest.mark.asyncio
    async def test_lookup_prefers_mirror_and_reads_through_on_miss(self):
        store = MagicMock()
        store.get.return_value = None
        monitor = EntitlementMonitor(loader=lambda: [lifetime("u9")], clock=lambda: NOW)
        monitor.reconcile()
        monitor.ready = True

        assert (await monitor.lookup("u9", store=store)).has_lifetime_access is True
        store.get.assert_not_called()
        assert await monitor.lookup("missing", store=store) is None
        store.get.assert_called_once_with("missing")
