"""
Tests for payment webhook verification and premium upgrades.
"""

import base64
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from subtrack.core.errors import InvalidWebhookSignature
from subtrack.models.access import PaymentWebhookEvent, SubscriptionStatus, UserAccess
from subtrack.services.access_store import UserAccessStore
from subtrack.services.change_feed import ChangeFeed
from subtrack.services.entitlement_service import AccessLevel, access_level
from subtrack.services.payment_webhook import PaymentWebhookProcessor, sign, verify

SECRET = "whsec_" + base64.b64encode(b"test-webhook-key").decode("ascii")
NOW_TS = 1_740_830_400  # 2025-03-01T12:00:00Z
NOW = datetime.fromtimestamp(NOW_TS, tz=timezone.utc)


def signed(body, msg_id="msg_1", timestamp=NOW_TS, secret=SECRET):
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": sign(secret, msg_id, timestamp, body),
    }


def payload(event_id, user_id, event_type="payment.succeeded", subscription_type=None):
    metadata = {"userId": user_id}
    if subscription_type:
        metadata["subscriptionType"] = subscription_type
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"id": f"pay_{event_id}", "metadata": metadata},
    }).encode()


@pytest.fixture
def processor():
    return PaymentWebhookProcessor(store=UserAccessStore(feed=ChangeFeed()), clock=lambda: NOW)


def audit_rows(db, event_id):
    db.expire_all()
    return db.exec(select(PaymentWebhookEvent).where(PaymentWebhookEvent.event_id == event_id)).all()


class TestVerify:
    def test_valid_signature_returns_payload(self):
        body = b'{"id": "evt_1", "type": "payment.succeeded"}'
        assert verify(signed(body), body, SECRET, now=NOW_TS)["id"] == "evt_1"

    def test_any_of_several_signatures_may_match(self):
        body = b'{"id": "evt_2"}'
        headers = signed(body)
        headers["webhook-signature"] = "v1,bm9wZQ== " + headers["webhook-signature"]
        assert verify(headers, body, SECRET, now=NOW_TS)["id"] == "evt_2"

    def test_plain_secret_supported(self):
        body = b'{"id": "evt_3"}'
        assert verify(signed(body, secret="plain"), body, "plain", now=NOW_TS)["id"] == "evt_3"

    @pytest.mark.parametrize("mutate", [
        lambda h, b: (h, b + b" "),
        lambda h, b: ({**h, "webhook-id": "msg_other"}, b),
        lambda h, b: ({k: v for k, v in h.items() if k != "webhook-signature"}, b),
        lambda h, b: ({**h, "webhook-timestamp": "yesterday"}, b),
    ])
    def test_tampering_rejected(self, mutate):
        body = b'{"id": "evt_4"}'
        headers, tampered = mutate(signed(body), body)
        with pytest.raises(InvalidWebhookSignature):
            verify(headers, tampered, SECRET, now=NOW_TS)

    def test_timestamp_outside_tolerance(self):
        body = b'{"id": "evt_5"}'
        with pytest.raises(InvalidWebhookSignature) as exc:
            verify(signed(body, timestamp=NOW_TS - 301), body, SECRET, tolerance_s=300, now=NOW_TS)
        assert "tolerance" in exc.value.reason

    def test_missing_secret_rejects_everything(self):
        body = b'{"id": "evt_6"}'
        with pytest.raises(InvalidWebhookSignature):
            verify(signed(body), body, None, now=NOW_TS)

    def test_non_object_body_rejected(self):
        body = b"[1, 2, 3]"
        with pytest.raises(InvalidWebhookSignature):
            verify(signed(body), body, SECRET, now=NOW_TS)


class TestProcess:
    def test_payment_upgrades_to_premium_for_a_year(self, processor, user_id):
        outcome = processor.process(json.loads(payload("evt_a_" + user_id, user_id)), "msg")

        assert outcome.upgraded_user == user_id
        access = UserAccessStore().get(user_id)
        assert access.subscription_status == SubscriptionStatus.PREMIUM.value
        assert access.has_lifetime_access is False
        assert access.trial_end_date is None
        end = access.subscription_end_date.replace(tzinfo=timezone.utc)
        assert end == NOW.replace(year=NOW.year + 1)
        assert access_level(access, NOW + timedelta(days=30)) == AccessLevel.PREMIUM

    def test_lifetime_purchase(self, processor, user_id):
        processor.process(
            json.loads(payload("evt_l_" + user_id, user_id, subscription_type="lifetime")), "msg",
        )
        access = UserAccessStore().get(user_id)
        assert access.has_lifetime_access is True
        assert access.subscription_end_date is None

    def test_upgrade_overwrites_expired_trial(self, processor, user_id):
        store = UserAccessStore(feed=ChangeFeed())
        store.insert(UserAccess(
            user_id=user_id, user_type="new", subscription_status="trial",
            trial_start_date=NOW - timedelta(days=20), trial_end_date=NOW - timedelta(days=13),
        ))

        processor.process(json.loads(payload("evt_t_" + user_id, user_id)), "msg")

        access = store.get(user_id)
        assert access.user_type == "new"
        assert access.subscription_status == "premium"
        assert access.trial_start_date is None

    def test_duplicate_event_applied_once(self, processor, user_id, db):
        event = json.loads(payload("evt_d_" + user_id, user_id))

        first = processor.process(event, "msg")
        second = processor.process(event, "msg")

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.upgraded_user is None
        assert len(audit_rows(db, "evt_d_" + user_id)) == 1

    def test_other_event_types_stored_without_action(self, processor, user_id, db):
        event = json.loads(payload("evt_r_" + user_id, user_id, event_type="refund.created"))

        outcome = processor.process(event, "msg")

        assert outcome.upgraded_user is None
        assert UserAccessStore().get(user_id) is None
        assert len(audit_rows(db, "evt_r_" + user_id)) == 1

    def test_missing_user_id_is_stored_not_applied(self, processor, db):
        event = {"id": "evt_nouser_1", "type": "payment.succeeded", "data": {"metadata": {}}}
        assert processor.process(event, "msg").upgraded_user is None

    @pytest.mark.parametrize("data", [["x"], "text", {"metadata": ["x"]}, {"metadata": None}])
    def test_non_object_data_stored_without_action(self, processor, db, data):
        event_id = f"evt_shape_{uuid.uuid4().hex[:8]}"
        outcome = processor.process({"id": event_id, "type": "payment.succeeded", "data": data}, "msg")

        assert outcome.upgraded_user is None
        assert outcome.duplicate is False
        assert len(audit_rows(db, event_id)) == 1


class FlakyStore(UserAccessStore):
    """Fails the first access write with a transient database error."""

    def __init__(self, failures=1):
        super().__init__(feed=ChangeFeed())
        self.failures = failures

    def upsert_fields(self, user_id, defaults, also_add=(), **fields):
        if self.failures:
            self.failures -= 1
            raise OperationalError("UPDATE user_access", {}, Exception("database is locked"))
        return super().upsert_fields(user_id, defaults, also_add=also_add, **fields)


class TestFailedUpgrade:
    def test_redelivery_applies_upgrade_after_failure(self, user_id, db):
        processor = PaymentWebhookProcessor(store=FlakyStore(), clock=lambda: NOW)
        event = json.loads(payload("evt_f_" + user_id, user_id))

        with pytest.raises(OperationalError):
            processor.process(event, "msg")
        assert audit_rows(db, "evt_f_" + user_id) == []
        assert UserAccessStore().get(user_id) is None

        outcome = processor.process(event, "msg")

        assert outcome.duplicate is False
        assert outcome.upgraded_user == user_id
        assert UserAccessStore().get(user_id).subscription_status == "premium"
        assert len(audit_rows(db, "evt_f_" + user_id)) == 1

    def test_audit_row_rolled_back_with_failed_commit(self, user_id, db):
        store = UserAccessStore(feed=ChangeFeed())
        store.insert(UserAccess(user_id=user_id, user_type="new", subscription_status="trial"))
        processor = PaymentWebhookProcessor(store=store, clock=lambda: NOW)
        event = json.loads(payload("evt_rb_" + user_id, user_id))

        with patch("sqlmodel.Session.commit", side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error"))):
            with pytest.raises(OperationalError):
                processor.process(event, "msg")

        assert audit_rows(db, "evt_rb_" + user_id) == []
        assert store.get(user_id).subscription_status == "trial"


class TestHandle:
    def test_bad_signature_leaves_no_trace(self, processor, user_id, db):
        body = payload("evt_bad_" + user_id, user_id)
        headers = signed(body, secret="whsec_" + base64.b64encode(b"wrong").decode())

        with patch("subtrack.services.payment_webhook.settings") as mock_settings:
            mock_settings.payment_webhook_secret = SECRET
            mock_settings.payment_webhook_tolerance_s = 300
            with pytest.raises(InvalidWebhookSignature):
                processor.handle(headers, body, now=NOW_TS)

        assert audit_rows(db, "evt_bad_" + user_id) == []
        assert UserAccessStore().get(user_id) is None

    def test_signed_delivery_upgrades(self, processor, user_id):
        body = payload("evt_ok_" + user_id, user_id)

        with patch("subtrack.services.payment_webhook.settings") as mock_settings:
            mock_settings.payment_webhook_secret = SECRET
            mock_settings.payment_webhook_tolerance_s = 300
            outcome = processor.handle(signed(body), body, now=NOW_TS)

        assert outcome.event_id == "evt_ok_" + user_id
        assert UserAccessStore().get(user_id).subscription_status == "premium"
