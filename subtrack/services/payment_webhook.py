"""
Payment Webhook — verified payment events upgrade accounts to premium
=====================================================================

SIGNATURE (standard-webhooks style):
    webhook-id         unique message id
    webhook-timestamp  unix seconds; rejected outside the tolerance window
    webhook-signature  space-separated "v1,<base64 hmac-sha256>" entries

    signed content = f"{webhook-id}.{webhook-timestamp}.{raw body}"
    A "whsec_" secret prefix means the remainder is the base64 key.

FLOW:
    1. verify() — any failure raises InvalidWebhookSignature; nothing is
       stored and no access record is touched.
    2. The event is appended to payment_webhook_events in the same commit
       as the access change. event_id is unique, so a redelivered event is
       acknowledged without reapplying, and an event whose upgrade failed
       was never stored and is applied on redelivery.
    3. payment.succeeded / subscription.active carrying
       data.metadata.userId set the user's UserAccess to premium for one
       year (or lifetime when metadata.subscriptionType == "lifetime").
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from subtrack.config import settings
from subtrack.core.database import get_session_context
from subtrack.core.errors import InvalidWebhookSignature
from subtrack.models.access import PaymentWebhookEvent, SubscriptionStatus, UserType
from subtrack.services.access_store import UserAccessStore

logger = logging.getLogger(__name__)

UPGRADE_EVENTS = frozenset({"payment.succeeded", "subscription.active"})
SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX):])
    return secret.encode("utf-8")


def sign(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    """Produce a webhook-signature header value for *body*."""
    content = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), content, hashlib.sha256).digest()
    return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('ascii')}"


def verify(
    headers: Mapping[str, str],
    body: bytes,
    secret: Optional[str],
    tolerance_s: int = 300,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Check the signature headers and return the parsed JSON payload."""
    if not secret:
        # Unsigned delivery is never accepted
        raise InvalidWebhookSignature("webhook secret not configured")

    msg_id = headers.get("webhook-id")
    raw_ts = headers.get("webhook-timestamp")
    raw_sig = headers.get("webhook-signature")
    if not msg_id or not raw_ts or not raw_sig:
        raise InvalidWebhookSignature("missing signature headers")

    try:
        timestamp = int(raw_ts)
    except ValueError:
        raise InvalidWebhookSignature("malformed webhook-timestamp") from None

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_s:
        raise InvalidWebhookSignature("timestamp outside tolerance")

    expected = sign(secret, msg_id, timestamp, body).split(",", 1)[1]
    for candidate in raw_sig.split():
        version, _, value = candidate.partition(",")
        if version == SIGNATURE_VERSION and hmac.compare_digest(value, expected):
            break
    else:
        raise InvalidWebhookSignature("no matching signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidWebhookSignature("body is not valid JSON") from None
    if not isinstance(payload, dict):
        raise InvalidWebhookSignature("body is not a JSON object")
    return payload


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    upgraded_user: Optional[str] = None


class PaymentWebhookProcessor:
    def __init__(
        self,
        store: Optional[UserAccessStore] = None,
        session_factory: Callable = get_session_context,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store or UserAccessStore()
        self._session_factory = session_factory
        self._clock = clock

    def _audit_row(self, event: Dict[str, Any], msg_id: str) -> PaymentWebhookEvent:
        data = _as_dict(event.get("data"))
        metadata = _as_dict(data.get("metadata"))
        payment_id = data.get("id") or data.get("payment_id")
        user_id = metadata.get("userId")
        return PaymentWebhookEvent(
            event_id=str(event.get("id") or msg_id),
            event_type=str(event.get("type") or "unknown"),
            payment_id=str(payment_id) if payment_id else None,
            user_id=str(user_id) if user_id else None,
            raw_data=event,
        )

    def _seen(self, event_id: str) -> bool:
        with self._session_factory() as session:
            return session.exec(
                select(PaymentWebhookEvent.id).where(PaymentWebhookEvent.event_id == event_id)
            ).first() is not None

    def _record(self, row: PaymentWebhookEvent) -> bool:
        """Append an event that needs no access change. False if already stored."""
        with self._session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def _upgrade(self, row: PaymentWebhookEvent, subscription_type: str) -> bool:
        """Apply premium and store the audit row in one commit. False if already stored."""
        user_id, event_id = row.user_id, row.event_id
        now = self._clock()
        lifetime = subscription_type == "lifetime"
        fields = dict(
            subscription_status=SubscriptionStatus.PREMIUM.value,
            subscription_start_date=now,
            subscription_end_date=None if lifetime else now + relativedelta(years=1),
            trial_start_date=None,
            trial_end_date=None,
        )
        if lifetime:
            fields["has_lifetime_access"] = True
        try:
            access = self._store.upsert_fields(
                user_id,
                defaults={"user_type": UserType.NEW.value},
                also_add=[row],
                **fields,
            )
        except IntegrityError:
            # A concurrent delivery of the same event won the insert
            if self._seen(event_id):
                return False
            raise
        logger.info(
            "Access upgraded: user=%s status=%s lifetime=%s end=%s",
            user_id, access.subscription_status, access.has_lifetime_access,
            access.subscription_end_date,
        )
        return True

    def process(self, event: Dict[str, Any], msg_id: str) -> WebhookOutcome:
        """Store and apply one verified event.

        The audit row is the dedup key and is committed together with the
        access change. If the upgrade fails nothing is stored, the error
        propagates and the provider's redelivery is applied normally.
        """
        row = self._audit_row(event, msg_id)
        event_id, event_type, user_id = row.event_id, row.event_type, row.user_id

        if self._seen(event_id):
            logger.info("Duplicate payment event %s (%s) acknowledged", event_id, event_type)
            return WebhookOutcome(event_id, event_type, duplicate=True)

        if event_type not in UPGRADE_EVENTS or not user_id:
            if event_type in UPGRADE_EVENTS:
                logger.warning("Payment event %s (%s) has no metadata.userId", event_id, event_type)
            if not self._record(row):
                return WebhookOutcome(event_id, event_type, duplicate=True)
            logger.info("Payment event %s (%s) stored, no action", event_id, event_type)
            return WebhookOutcome(event_id, event_type)

        metadata = _as_dict(_as_dict(event.get("data")).get("metadata"))
        if not self._upgrade(row, str(metadata.get("subscriptionType") or "premium")):
            logger.info("Duplicate payment event %s (%s) acknowledged", event_id, event_type)
            return WebhookOutcome(event_id, event_type, duplicate=True)
        return WebhookOutcome(event_id, event_type, upgraded_user=user_id)

    def handle(self, headers: Mapping[str, str], body: bytes, now: Optional[float] = None) -> WebhookOutcome:
        event = verify(
            headers, body,
            secret=settings.payment_webhook_secret,
            tolerance_s=settings.payment_webhook_tolerance_s,
            now=now,
        )
        return self.process(event, headers.get("webhook-id"))
