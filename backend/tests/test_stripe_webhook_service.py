"""
Unit test: signed Stripe webhooks mark purchases paid / failed exactly once.
Bad signatures are rejected before parsing; replayed event ids do nothing.
"""
import json
import time

import pytest

from errors import SignatureError, ValidationError, StoreError
from models import WebhookOutcome
from services.stripe_webhook_service import StripeWebhookService
from conftest import sign_payload

EMAIL = "collector@example.com"
SESSION_ID = "cs_test_webhook_001"
EVENT_ID = "evt_test_webhook_001"


def _checkout_event(event_id=EVENT_ID, event_type="checkout.session.completed", session_id=SESSION_ID,
                    payment_status="paid", email=EMAIL, app="bookfoldar"):
    metadata = {"customer_email": email} if email else {}
    if app:
        metadata["app"] = app
    return {
        "id": event_id,
        "type": event_type,
        "livemode": False,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "mode": "payment",
                "payment_status": payment_status,
                "amount_total": 2499,
                "currency": "usd",
                "customer": "cus_test_001",
                "payment_intent": "pi_test_001",
                "metadata": metadata,
            }
        },
    }


def _payment_intent_event(event_type, intent_id="pi_test_001", error=None, event_id="evt_pi_001"):
    obj = {"id": intent_id, "object": "payment_intent", "metadata": {"app": "bookfoldar", "customer_email": EMAIL}}
    if error:
        obj["last_payment_error"] = {"message": error, "code": "card_declined"}
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _signed(event):
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_payload(payload)


@pytest.fixture
def webhook_service(services):
    return services.webhook_service


class TestSignature:

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, webhook_service, store):
        payload, _ = _signed(_checkout_event())
        with pytest.raises(SignatureError):
            await webhook_service.process_webhook(payload, None)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, webhook_service, store):
        payload = json.dumps(_checkout_event())
        header = sign_payload(payload, secret="whsec_other")
        with pytest.raises(SignatureError):
            await webhook_service.process_webhook(payload.encode(), header)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, webhook_service, store):
        payload = json.dumps(_checkout_event())
        header = sign_payload(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureError):
            await webhook_service.process_webhook(payload.encode(), header)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_missing_secret_rejects_everything(self, store):
        service = StripeWebhookService(store, "")
        payload, header = _signed(_checkout_event())
        with pytest.raises(SignatureError):
            await service.process_webhook(payload, header)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_flipping_any_byte_rejects_without_mutation(self, webhook_service, store):
        payload, header = _signed(_checkout_event())
        # Every position, one bit flipped
        for i in range(len(payload)):
            tampered = bytearray(payload)
            tampered[i] ^= 0x01
            with pytest.raises(SignatureError):
                await webhook_service.process_webhook(bytes(tampered), header)
        assert store.calls == []
        assert store.purchases == {}
        assert store.events == {}

    @pytest.mark.asyncio
    async def test_verified_but_malformed_body_is_validation_error(self, webhook_service, store):
        payload = "not json"
        with pytest.raises(ValidationError):
            await webhook_service.process_webhook(payload.encode(), sign_payload(payload))
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_verified_event_without_id_is_validation_error(self, webhook_service):
        payload = json.dumps({"type": "checkout.session.completed", "data": {"object": {}}})
        with pytest.raises(ValidationError):
            await webhook_service.process_webhook(payload.encode(), sign_payload(payload))


class TestCheckoutCompleted:

    @pytest.mark.asyncio
    async def test_paid_completion_creates_paid_purchase(self, webhook_service, store):
        result = await webhook_service.process_webhook(*_signed(_checkout_event()))
        assert result.outcome == WebhookOutcome.APPLIED.value
        [record] = store.purchases_for(EMAIL)
        assert record.status == "paid"
        assert record.processor_session_id == SESSION_ID
        assert record.processor_payment_intent_id == "pi_test_001"
        assert record.processor_customer_id == "cus_test_001"
        assert record.amount == 2499
        assert store.events == {EVENT_ID: "checkout.session.completed"}
        assert [a for a, _ in store.audits] == ["PURCHASE_PAID"]

    @pytest.mark.asyncio
    async def test_pending_purchase_from_checkout_is_marked_paid(self, webhook_service, services, store):
        await services.stripe_service.create_checkout_session(
            EMAIL, "https://a.example/ok", "https://a.example/cancel",
        )
        event = _checkout_event(session_id="cs_test_001")
        await webhook_service.process_webhook(*_signed(event))
        [record] = store.purchases_for(EMAIL)
        assert record.status == "paid"

    @pytest.mark.asyncio
    async def test_replay_applies_once(self, webhook_service, store):
        payload, header = _signed(_checkout_event())
        first = await webhook_service.process_webhook(payload, header)
        second = await webhook_service.process_webhook(payload, header)
        assert first.outcome == "processed"
        assert second.outcome == "duplicate"
        assert len(store.purchases_for(EMAIL)) == 1
        assert len(store.events) == 1
        assert store.calls.count("mark_purchase_paid") == 1
        assert len(store.audits) == 1

    @pytest.mark.asyncio
    async def test_unpaid_completion_stays_pending(self, webhook_service, store):
        result = await webhook_service.process_webhook(*_signed(_checkout_event(payment_status="unpaid")))
        assert result.outcome == "ignored"
        [record] = store.purchases_for(EMAIL)
        assert record.status == "pending"

    @pytest.mark.asyncio
    async def test_async_payment_succeeded_marks_paid(self, webhook_service, store):
        await webhook_service.process_webhook(*_signed(_checkout_event(payment_status="unpaid")))
        event = _checkout_event(
            event_id="evt_async_ok", event_type="checkout.session.async_payment_succeeded", payment_status="paid",
        )
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "processed"
        [record] = store.purchases_for(EMAIL)
        assert record.status == "paid"

    @pytest.mark.asyncio
    async def test_foreign_app_session_ignored(self, webhook_service, store):
        result = await webhook_service.process_webhook(*_signed(_checkout_event(app="another-product")))
        assert result.outcome == "ignored"
        assert store.purchases == {}

    @pytest.mark.asyncio
    async def test_paid_session_without_id_is_acknowledged(self, webhook_service, store):
        event = _checkout_event()
        del event["data"]["object"]["id"]
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "ignored"
        assert result.details["reason"] == "session_id_missing"
        assert store.purchases == {}
        assert store.events == {EVENT_ID: "checkout.session.completed"}

    @pytest.mark.asyncio
    async def test_email_from_customer_details(self, webhook_service, store):
        event = _checkout_event(email=None)
        event["data"]["object"]["customer_details"] = {"email": "Collector@Example.com"}
        await webhook_service.process_webhook(*_signed(event))
        assert store.purchases_for(EMAIL)[0].status == "paid"

    @pytest.mark.asyncio
    async def test_second_paid_session_for_same_email_flagged(self, webhook_service, store):
        await webhook_service.process_webhook(*_signed(_checkout_event()))
        second = _checkout_event(event_id="evt_second", session_id="cs_test_second")
        result = await webhook_service.process_webhook(*_signed(second))
        assert result.outcome == "processed"
        assert result.details["duplicate_payment"] is True
        records = store.purchases_for(EMAIL)
        assert len([r for r in records if r.status == "paid"]) == 1
        duplicate = next(r for r in records if r.processor_session_id == "cs_test_second")
        assert duplicate.status == "pending"
        assert duplicate.duplicate_of_paid is True
        assert "DUPLICATE_PAYMENT_DETECTED" in [a for a, _ in store.audits]


class TestFailedAndExpired:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_type", ["checkout.session.expired", "checkout.session.async_payment_failed"])
    async def test_pending_becomes_failed(self, webhook_service, store, event_type):
        await webhook_service.process_webhook(*_signed(_checkout_event(payment_status="unpaid")))
        event = _checkout_event(event_id="evt_fail", event_type=event_type, payment_status="unpaid")
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "processed"
        [record] = store.purchases_for(EMAIL)
        assert record.status == "failed"
        assert record.last_payment_error == event_type

    @pytest.mark.asyncio
    async def test_paid_is_terminal(self, webhook_service, store):
        await webhook_service.process_webhook(*_signed(_checkout_event()))
        event = _checkout_event(event_id="evt_expired_late", event_type="checkout.session.expired")
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "ignored"
        assert store.purchases_for(EMAIL)[0].status == "paid"

    @pytest.mark.asyncio
    async def test_unknown_session_ignored(self, webhook_service, store):
        event = _checkout_event(event_type="checkout.session.expired")
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "ignored"
        assert store.purchases == {}


class TestPaymentIntents:

    @pytest.mark.asyncio
    async def test_failed_intent_records_error_without_status_change(self, webhook_service, store):
        await webhook_service.process_webhook(*_signed(_checkout_event(payment_status="unpaid")))
        event = _payment_intent_event("payment_intent.payment_failed", error="Your card was declined.")
        await webhook_service.process_webhook(*_signed(event))
        [record] = store.purchases_for(EMAIL)
        assert record.status == "pending"
        assert record.processor_payment_intent_id == "pi_test_001"
        assert record.last_payment_error == "Your card was declined."

    @pytest.mark.asyncio
    async def test_succeeded_intent_never_grants_access(self, webhook_service, store):
        event = _payment_intent_event("payment_intent.succeeded")
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "ignored"
        assert store.purchases == {}


class TestAcknowledgement:

    @pytest.mark.asyncio
    async def test_unrecognised_event_is_acknowledged(self, webhook_service, store):
        event = {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        result = await webhook_service.process_webhook(*_signed(event))
        assert result.outcome == "ignored"
        assert result.event_type == "customer.created"
        assert store.events == {"evt_other": "customer.created"}

    @pytest.mark.asyncio
    async def test_apply_failure_releases_claim_for_retry(self, webhook_service, store):
        store.failing.add("mark_purchase_paid")
        payload, header = _signed(_checkout_event())
        with pytest.raises(StoreError):
            await webhook_service.process_webhook(payload, header)
        assert store.events == {}
        assert "STRIPE_EVENT_FAILED" in [a for a, _ in store.audits]

        store.failing.clear()
        result = await webhook_service.process_webhook(payload, header)
        assert result.outcome == "processed"
        assert store.purchases_for(EMAIL)[0].status == "paid"

    @pytest.mark.asyncio
    async def test_claim_failure_is_store_error(self, webhook_service, store):
        store.failing.add("claim_event")
        with pytest.raises(StoreError):
            await webhook_service.process_webhook(*_signed(_checkout_event()))
        assert store.purchases == {}

    def test_every_event_type_has_a_handler(self, webhook_service):
        from models import StripeEventType
        assert set(webhook_service.handlers) == set(StripeEventType)
