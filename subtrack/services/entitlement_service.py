"""
Entitlement Engine
==================

Derives what an account may use from its UserAccess record and the
current time. Every query here is pure: the record is written only by
access provisioning (creation) and the payment webhook (upgrade).

    lifetime            analytics always   pricing never
    premium             analytics always   pricing never
    trial, now <= end   analytics yes      pricing yes
    trial, now >  end   analytics no       pricing yes   (trial_expired)
    free                analytics no       pricing yes

Trial expiry is computed, never stored.

EntitlementMonitor keeps an in-memory mirror of every access record,
started with the app and fed by user_access change events. Routers read
through it and fall back to the store until it has loaded.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from subtrack.core.async_utils import run_sync
from subtrack.models.access import SubscriptionStatus, UserAccess
from subtrack.services.access_store import TABLE as ACCESS_TABLE
from subtrack.services.access_store import UserAccessStore
from subtrack.services.change_feed import DEFAULT_QUEUE_SIZE, ChangeFeed, LiveRecordSet

logger = logging.getLogger(__name__)

_ONE_DAY = timedelta(days=1)


class AccessLevel(str, Enum):
    LIFETIME = "lifetime"
    PREMIUM = "premium"
    TRIAL = "trial"
    TRIAL_EXPIRED = "trial_expired"
    FREE = "free"
    NONE = "none"


@dataclass(frozen=True)
class TrialStatus:
    is_in_trial: bool
    days_left: int


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _trial_end(access: UserAccess) -> Optional[datetime]:
    if access.subscription_status != SubscriptionStatus.TRIAL.value:
        return None
    return as_utc(access.trial_end_date)


def access_level(access: Optional[UserAccess], now: datetime) -> AccessLevel:
    if access is None:
        return AccessLevel.NONE
    if access.has_lifetime_access:
        return AccessLevel.LIFETIME
    status = access.subscription_status
    if status == SubscriptionStatus.PREMIUM.value:
        return AccessLevel.PREMIUM
    if status == SubscriptionStatus.TRIAL.value:
        end = _trial_end(access)
        if end is not None and as_utc(now) <= end:
            return AccessLevel.TRIAL
        return AccessLevel.TRIAL_EXPIRED
    return AccessLevel.FREE


def has_analytics_access(access: Optional[UserAccess], now: datetime) -> bool:
    return access_level(access, now) in (
        AccessLevel.LIFETIME,
        AccessLevel.PREMIUM,
        AccessLevel.TRIAL,
    )


def shows_pricing(access: Optional[UserAccess], now: datetime) -> bool:
    return access_level(access, now) not in (AccessLevel.LIFETIME, AccessLevel.PREMIUM)


def trial_status(access: Optional[UserAccess], now: datetime) -> TrialStatus:
    """Whether the account is inside its trial and whole days remaining.

    days_left rounds up and never goes below zero; (False, 0) means the
    trial expired or never started.
    """
    if access is None:
        return TrialStatus(is_in_trial=False, days_left=0)
    end = _trial_end(access)
    if end is None:
        return TrialStatus(is_in_trial=False, days_left=0)
    remaining = end - as_utc(now)
    days_left = max(0, math.ceil(remaining / _ONE_DAY))
    return TrialStatus(is_in_trial=remaining >= timedelta(0), days_left=days_left)


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Everything the UI gates need, computed at one instant."""

    user_id: Optional[str]
    access_level: AccessLevel
    has_analytics_access: bool
    shows_pricing: bool
    is_in_trial: bool
    trial_days_left: int
    user_type: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_end_date: Optional[datetime] = None

    @classmethod
    def build(cls, access: Optional[UserAccess], now: datetime) -> "EntitlementSnapshot":
        trial = trial_status(access, now)
        return cls(
            user_id=access.user_id if access else None,
            access_level=access_level(access, now),
            has_analytics_access=has_analytics_access(access, now),
            shows_pricing=shows_pricing(access, now),
            is_in_trial=trial.is_in_trial,
            trial_days_left=trial.days_left,
            user_type=access.user_type if access else None,
            subscription_status=access.subscription_status if access else None,
            subscription_end_date=as_utc(access.subscription_end_date) if access else None,
        )


class EntitlementMonitor:
    """Latest UserAccess per user, fed by record-store change events.

    Events are applied through a LiveRecordSet (last event wins per user),
    and ``reconcile()`` re-reads everything after a reconnect so a missed
    push cannot leave a stale entitlement behind.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[UserAccess]],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._queue_size = queue_size
        self._records = LiveRecordSet(
            key=lambda row: row["user_id"],
            loader=lambda: [access.model_dump(mode="json") for access in loader()],
        )
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.ready = False

    @property
    def records(self):
        return self._records

    def reconcile(self, as_of_seq: int = 0) -> None:
        self._records.reconcile(as_of_seq)

    def apply(self, event) -> bool:
        return self._records.apply(event)

    def get(self, user_id: str) -> Optional[UserAccess]:
        row = self._records.get(user_id)
        return UserAccess.model_validate(row) if row is not None else None

    def snapshot(self, user_id: str) -> EntitlementSnapshot:
        return EntitlementSnapshot.build(self.get(user_id), self._clock())

    def all_snapshots(self) -> Dict[str, EntitlementSnapshot]:
        now = self._clock()
        return {key: EntitlementSnapshot.build(self.get(key), now) for key in self._records.keys()}

    async def _resync(self, feed: ChangeFeed) -> None:
        as_of = feed.last_seq
        await run_sync(self.reconcile, as_of)
        self.ready = True

    async def run(self, feed: ChangeFeed) -> None:
        """Follow user_access changes on *feed* until cancelled."""
        subscription = feed.subscribe(table=ACCESS_TABLE, maxsize=self._queue_size)
        try:
            await self._resync(feed)
            logger.info("Entitlement monitor following %d access records", len(self._records))
            while True:
                event = await subscription.get()
                if subscription.overflowed:
                    subscription.overflowed = False
                    logger.warning("Entitlement monitor fell behind; reconciling")
                    await self._resync(feed)
                    continue
                self.apply(event)
        finally:
            self.ready = False
            subscription.close()

    def start(self, feed: ChangeFeed) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(feed))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def lookup(self, user_id: str, store: Optional[UserAccessStore] = None) -> Optional[UserAccess]:
        """The user's record from the live mirror, read through to the store on a miss."""
        if self.ready:
            access = self.get(user_id)
            if access is not None:
                return access
        return await run_sync((store or UserAccessStore()).get, user_id)


_monitor: Optional[EntitlementMonitor] = None


def get_entitlement_monitor() -> EntitlementMonitor:
    """Process-wide monitor over every user_access record."""
    global _monitor
    if _monitor is None:
        _monitor = EntitlementMonitor(loader=UserAccessStore().list_all)
    return _monitor
