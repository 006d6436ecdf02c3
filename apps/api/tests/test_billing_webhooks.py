"""
Billing webhook ingestion: signature verification, exactly-once processing
and the mapping from provider events to license transitions.
"""

import hashlib
import hmac
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from aurora_sync.core.exceptions import InvalidWebhookPayloadError, InvalidWebhookSignatureError
from aurora_sync.models import (
    DeadLetterEntry,
    EventDelivery,
    License,
    Subscription,
    SubscriptionChange,
    SubscriptionEvent,
    WebhookEvent,
)
from aurora_sync.models.enums import AckStatus, ChangeType, DeliveryStatus, LicenseStatus, SubscriptionStatus
from aurora_sync.services.billing_webhook_service import verify_webhook_signature
from aurora_sync.services.idempotency_ledger import IdempotencyLedger
from conftest import MACHINE_A, MACHINE_B

SECRET = "whsec_test"
SIGNED_AT = 1767261600


def sign(payload: bytes, secret: str = SECRET, timestamp: int = SIGNED_AT) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_data(plan_id="professional", billing_cycle="monthly", subscription="sub_ext_1", customer_id="cust_1001"):
    return {
        "id": "cs_test_1",
        "subscription": subscription,
        "customer": "cus_ext_1",
        "metadata": {"customerId": customer_id, "planId": plan_id, "billingCycle": billing_cycle},
    }


def license_for(db, external_subscription_id):
    subscription = db.scalar(
        select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
    )
    return db.scalar(
        select(License).where(License.subscription_id == subscription.id).order_by(License.id.desc()).limit(1)
    )


class TestSignature:
    def test_valid_signature(self):
        payload = b'{"id": "evt_1"}'
        verify_webhook_signature(payload, sign(payload), SECRET, now=SIGNED_AT + 10)

    def test_any_v1_entry_may_match(self):
        payload = b'{"id": "evt_1"}'
        header = sign(payload).replace("v1=", "v1=deadbeef,v1=")
        verify_webhook_signature(payload, header, SECRET, now=SIGNED_AT)

    @pytest.mark.parametrize(
        "header",
        [None, "", "garbage", f"t={SIGNED_AT}", "t=notanumber,v1=abc"],
    )
    def test_malformed_header(self, header):
        with pytest.raises(InvalidWebhookSignatureError):
            verify_webhook_signature(b"{}", header, SECRET, now=SIGNED_AT)

    def test_wrong_secret(self):
        payload = b'{"id": "evt_1"}'
        with pytest.raises(InvalidWebhookSignatureError):
            verify_webhook_signature(payload, sign(payload, secret="other"), SECRET, now=SIGNED_AT)

    def test_tampered_body(self):
        header = sign(b'{"id": "evt_1"}')
        with pytest.raises(InvalidWebhookSignatureError):
            verify_webhook_signature(b'{"id": "evt_2"}', header, SECRET, now=SIGNED_AT)

    def test_stale_timestamp(self):
        payload = b'{"id": "evt_1"}'
        with pytest.raises(InvalidWebhookSignatureError):
            verify_webhook_signature(payload, sign(payload), SECRET, now=SIGNED_AT + 301)


class TestWebhookProcessing:
    def test_checkout_creates_license(self, db, services):
        outcome = services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        assert outcome.status == "processed"
        license = license_for(db, "sub_ext_1")
        assert license.status == LicenseStatus.ACTIVE
        assert license.customer_id == "cust_1001"
        assert IdempotencyLedger.is_processed(db, "evt_1")

    def test_duplicate_delivery_applies_once(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())
        again = services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        assert again.status == "duplicate"
        assert db.scalar(select(func.count()).select_from(License)) == 1

    def test_invalid_payload_rolls_back_ledger(self, db, services):
        data = checkout_data()
        del data["metadata"]["planId"]

        with pytest.raises(InvalidWebhookPayloadError):
            services.webhooks.process("evt_1", "checkout.session.completed", data)

        assert db.scalar(select(func.count()).select_from(WebhookEvent)) == 0
        assert db.scalar(select(func.count()).select_from(Subscription)) == 0

        # Provider redelivery with the same id is processed from scratch
        outcome = services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())
        assert outcome.status == "processed"

    def test_one_off_checkout_is_ignored(self, db, services):
        data = checkout_data()
        data["subscription"] = None

        outcome = services.webhooks.process("evt_1", "checkout.session.completed", data)

        assert outcome.status == "ignored"
        assert db.scalar(select(func.count()).select_from(License)) == 0

    def test_ledger_only_event(self, db, services):
        outcome = services.webhooks.process("evt_1", "customer.updated", {"id": "cus_ext_1"})

        assert outcome.status == "ignored"
        assert IdempotencyLedger.is_processed(db, "evt_1")

    def test_unknown_subscription_is_ignored(self, services):
        outcome = services.webhooks.process(
            "evt_1", "customer.subscription.updated", {"id": "sub_missing", "status": "active"}
        )
        assert outcome.status == "ignored"

    def test_payment_failure_and_recovery(self, db, services, connect):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())
        connect(license_for(db, "sub_ext_1").license_key, MACHINE_A)

        failed = services.webhooks.process("evt_2", "invoice.payment_failed", {"subscription": "sub_ext_1"})
        assert failed.status == "processed"
        assert license_for(db, "sub_ext_1").status == LicenseStatus.PAST_DUE

        period_end = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)
        invoice = {
            "subscription": "sub_ext_1",
            "amount_paid": 9900,
            "currency": "usd",
            "lines": {"data": [{"period": {"start": 1772442000, "end": int(period_end.timestamp())}}]},
        }
        paid = services.webhooks.process("evt_3", "invoice.payment_succeeded", invoice)

        license = license_for(db, "sub_ext_1")
        assert license.status == LicenseStatus.ACTIVE
        assert license.expires_at == period_end
        assert len(paid.event_ids) == 2

    def test_renewal_payment_extends_period(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())
        period_end = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)

        outcome = services.webhooks.process(
            "evt_2",
            "invoice.paid",
            {"subscription": "sub_ext_1", "amount_paid": 9900, "lines": {"data": [{"period": {"end": int(period_end.timestamp())}}]}},
        )

        assert len(outcome.event_ids) == 1
        assert license_for(db, "sub_ext_1").expires_at == period_end

    def test_subscription_deleted_deactivates(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        outcome = services.webhooks.process("evt_2", "customer.subscription.deleted", {"id": "sub_ext_1"})

        assert outcome.status == "processed"
        license = license_for(db, "sub_ext_1")
        assert license.status == LicenseStatus.CANCELLED
        assert license.revocation_reason == "subscription_deleted"

        repeat = services.webhooks.process("evt_3", "customer.subscription.deleted", {"id": "sub_ext_1"})
        assert repeat.status == "ignored"

    def test_price_change_reissues_key(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())
        old_key = license_for(db, "sub_ext_1").license_key

        services.webhooks.process(
            "evt_2",
            "customer.subscription.updated",
            {"id": "sub_ext_1", "status": "active", "items": {"data": [{"price": {"id": "price_enterprise_monthly"}}]}},
        )

        license = license_for(db, "sub_ext_1")
        assert license.license_key != old_key
        assert license.tier_code == "ENT"
        assert license.max_terminals == 10

    def test_provider_past_due_status(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        services.webhooks.process("evt_2", "customer.subscription.updated", {"id": "sub_ext_1", "status": "unpaid"})

        assert license_for(db, "sub_ext_1").status == LicenseStatus.PAST_DUE

    def test_cancel_at_period_end_round_trip(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        services.webhooks.process(
            "evt_2", "customer.subscription.updated",
            {"id": "sub_ext_1", "status": "active", "cancel_at_period_end": True},
        )
        subscription = db.scalar(select(Subscription).where(Subscription.external_subscription_id == "sub_ext_1"))
        assert subscription.cancel_at_period_end

        services.webhooks.process(
            "evt_3", "customer.subscription.updated",
            {"id": "sub_ext_1", "status": "active", "cancel_at_period_end": False},
        )
        db.refresh(subscription)
        assert not subscription.cancel_at_period_end
        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_customer_deleted_deactivates_all(self, db, services):
        services.webhooks.process("evt_1", "checkout.session.completed", checkout_data())

        outcome = services.webhooks.process("evt_2", "customer.deleted", {"id": "cus_ext_1"})

        assert outcome.status == "processed"
        assert license_for(db, "sub_ext_1").revocation_reason == "customer_deleted"



class TestCancellationDeliveryEndToEnd:
    def test_deleted_subscription_reaches_dlq_for_offline_terminal_once(self, db, clock, services, channel, connect):
        services.webhooks.process("evt_checkout", "checkout.session.completed", checkout_data())
        key = license_for(db, "sub_ext_1").license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B, open_stream=False)

        outcome = services.webhooks.process("evt_001", "customer.subscription.deleted", {"id": "sub_ext_1"})

        assert outcome.status == "processed"
        license = license_for(db, "sub_ext_1")
        assert license.status == LicenseStatus.CANCELLED
        (revoked,) = db.scalars(
            select(SubscriptionEvent).where(
                SubscriptionEvent.license_key == key,
                SubscriptionEvent.event_type == "license_revoked",
            )
        ).all()
        cancellations = db.scalar(
            select(func.count())
            .select_from(SubscriptionChange)
            .where(SubscriptionChange.change_type == ChangeType.CANCELLATION)
        )
        assert cancellations == 1

        services.coordinator.acknowledge(revoked.event_id, MACHINE_A, AckStatus.SUCCESS)
        for _ in range(5):
            clock.advance(seconds=300)
            services.coordinator.process_due()

        deliveries = {
            d.machine_id_hash: d
            for d in db.scalars(select(EventDelivery).where(EventDelivery.event_id == revoked.event_id))
        }
        assert deliveries[MACHINE_A].status == DeliveryStatus.DELIVERED
        assert deliveries[MACHINE_B].status == DeliveryStatus.DEAD_LETTERED
        (entry,) = db.scalars(select(DeadLetterEntry).where(DeadLetterEntry.event_id == revoked.event_id)).all()
        assert entry.machine_id_hash == MACHINE_B
        assert entry.retry_count == 5

        def snapshot():
            return (
                license_for(db, "sub_ext_1").status,
                db.scalar(select(func.count()).select_from(SubscriptionChange)),
                db.scalar(select(func.count()).select_from(SubscriptionEvent)),
                db.scalar(select(func.count()).select_from(EventDelivery)),
                db.scalar(select(func.count()).select_from(DeadLetterEntry)),
                len(channel.pushed),
            )

        before = snapshot()
        redelivered = services.webhooks.process("evt_001", "customer.subscription.deleted", {"id": "sub_ext_1"})

        assert redelivered.status == "duplicate"
        assert snapshot() == before
