"""
Access Provisioning — one-time creation of the entitlement record
==================================================================

Runs on every authenticated sign-in and is idempotent:

1. If the user already has a UserAccess record, return it untouched.
2. Otherwise classify the account against the migration cutover:
   created before it → "existing" (lifetime access, no trial);
   otherwise → "new" (7-day trial starting now).
3. Insert with bounded retries. Every retry re-reads first, so a
   concurrent sign-in that won the insert is returned instead of failing.
4. Read the record back (with its own small retry budget) before
   reporting success. A record that cannot be read back is fatal for this
   sign-in: proceeding without it would re-classify the user on the next
   attempt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple, Type

from sqlalchemy.exc import SQLAlchemyError

from subtrack.config import settings
from subtrack.core.async_utils import run_sync
from subtrack.core.errors import ProvisioningFailed, ProvisioningVerificationFailed
from subtrack.core.retry import RetryExhausted, RetryPolicy, fixed_delay, linear_backoff
from subtrack.models.access import SubscriptionStatus, UserAccess, UserType
from subtrack.services.access_store import UserAccessStore
from subtrack.services.entitlement_service import as_utc

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (SQLAlchemyError, OSError, TimeoutError)


class _NotYetReadable(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessProvisioner:
    def __init__(
        self,
        store: Optional[UserAccessStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        write_policy: Optional[RetryPolicy] = None,
        verify_policy: Optional[RetryPolicy] = None,
        cutover: Optional[datetime] = None,
        trial_days: Optional[int] = None,
    ):
        self._store = store or UserAccessStore()
        self._clock = clock
        self._write_policy = write_policy or RetryPolicy(
            max_attempts=settings.provisioning_max_attempts,
            delay=linear_backoff(settings.provisioning_retry_delay_s),
        )
        self._verify_policy = verify_policy or RetryPolicy(
            max_attempts=settings.provisioning_verify_attempts,
            delay=fixed_delay(settings.provisioning_verify_delay_s),
        )
        self._cutover = as_utc(cutover or settings.existing_user_cutover)
        self._trial_days = trial_days if trial_days is not None else settings.trial_length_days

    def classify(self, created_at: Optional[datetime]) -> UserType:
        if created_at is not None and as_utc(created_at) < self._cutover:
            return UserType.EXISTING
        return UserType.NEW

    def build_record(self, user_id: str, created_at: Optional[datetime], now: datetime) -> UserAccess:
        if self.classify(created_at) == UserType.EXISTING:
            return UserAccess(
                user_id=user_id,
                user_type=UserType.EXISTING.value,
                has_lifetime_access=True,
                subscription_status=SubscriptionStatus.FREE.value,
                trial_start_date=None,
                trial_end_date=None,
            )
        return UserAccess(
            user_id=user_id,
            user_type=UserType.NEW.value,
            has_lifetime_access=False,
            subscription_status=SubscriptionStatus.TRIAL.value,
            trial_start_date=now,
            trial_end_date=now + timedelta(days=self._trial_days),
        )

    async def ensure_access_record(self, user) -> UserAccess:
        """Return the user's UserAccess, creating it on first sign-in.

        *user* needs ``user_id`` and ``created_at`` attributes.
        Raises ProvisioningFailed or ProvisioningVerificationFailed.
        """
        user_id = user.user_id
        now = self._clock()

        async def attempt() -> Tuple[UserAccess, bool]:
            current = await run_sync(self._store.get, user_id)
            if current is not None:
                return current, False
            record = self.build_record(user_id, user.created_at, now)
            return await run_sync(self._store.insert, record), True

        try:
            access, created = await self._write_policy.run(
                attempt, retry_on=TRANSIENT_ERRORS, label=f"provision access for {user_id}",
            )
        except RetryExhausted as exc:
            raise ProvisioningFailed(user_id, exc.attempts, exc.last_exc) from exc

        if not created:
            logger.debug("Access record already present for %s", user_id)
            return access

        logger.info("Provisioned %s access for %s", access.user_type, user_id)
        return await self._verify(user_id)

    async def _verify(self, user_id: str) -> UserAccess:
        async def read() -> UserAccess:
            row = await run_sync(self._store.get, user_id)
            if row is None:
                raise _NotYetReadable(user_id)
            return row

        try:
            return await self._verify_policy.run(
                read,
                retry_on=(_NotYetReadable, *TRANSIENT_ERRORS),
                label=f"verify access record for {user_id}",
            )
        except RetryExhausted as exc:
            raise ProvisioningVerificationFailed(user_id, exc.attempts) from exc


_provisioner: Optional[AccessProvisioner] = None


def get_access_provisioner() -> AccessProvisioner:
    global _provisioner
    if _provisioner is None:
        _provisioner = AccessProvisioner()
    return _provisioner
