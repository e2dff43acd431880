"""Stripe Webhook Service - signed, idempotent purchase reconciliation.

Key Principles:
1. Signature verification: raw bytes are verified before anything is parsed
2. Idempotency: an event id is claimed exactly once (unique marker insert)
3. Monotonic purchases: pending -> paid | failed, terminal states never move
4. Audit logging: paid, failed and duplicate-payment transitions are logged
5. Reconciliation events never grant or revoke access

Events Handled:
- checkout.session.completed (primary purchase trigger)
- checkout.session.async_payment_succeeded
- checkout.session.async_payment_failed
- checkout.session.expired
- payment_intent.succeeded
- payment_intent.payment_failed
"""
import json
import logging
from typing import Dict, Any, Optional

import stripe

from errors import SignatureError, ValidationError, StoreError, DuplicatePaymentError
from models import (
    AuditAction, PurchaseRecord, StripeEventType, WebhookEvent, WebhookOutcome, WebhookResult,
)
from services.stripe_service import APP_METADATA_TAG
from utils.emails import normalize_email, email_hash

logger = logging.getLogger(__name__)

COMPLETED_PAYMENT_STATUSES = ("paid", "no_payment_required")


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_valid_email(*candidates: Optional[str]) -> Optional[str]:
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return normalize_email(candidate)
        except ValidationError:
            continue
    return None


def _extract_webhook_context(event: WebhookEvent) -> Dict[str, Any]:
    """Safe fields for structured logging (no raw emails)."""
    obj = event.data_object
    metadata = obj.get("metadata") or {}
    return {
        "livemode": event.livemode,
        "object_id": obj.get("id"),
        "email_hash": email_hash(metadata.get("customer_email")),
    }


class StripeWebhookService:
    """Verifies, deduplicates and applies Stripe events to the account store."""

    def __init__(self, store, webhook_secret: str, tolerance: int = 300):
        self.store = store
        self.webhook_secret = (webhook_secret or "").strip()
        self.tolerance = tolerance
        self.handlers = {
            StripeEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            StripeEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: self._handle_async_payment_succeeded,
            StripeEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED: self._handle_checkout_failed,
            StripeEventType.CHECKOUT_SESSION_EXPIRED: self._handle_checkout_failed,
            StripeEventType.PAYMENT_INTENT_SUCCEEDED: self._handle_payment_intent,
            StripeEventType.PAYMENT_INTENT_PAYMENT_FAILED: self._handle_payment_intent,
            StripeEventType.UNRECOGNIZED: self._handle_unrecognized,
        }

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def verify(self, payload: bytes, signature: Optional[str]) -> str:
        """Check the Stripe-Signature header against the raw body.

        Returns the decoded body. Raises SignatureError on any failure.
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
            raise SignatureError("webhook secret not configured")
        if not signature:
            raise SignatureError("Stripe-Signature header missing")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureError("payload is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            raise SignatureError(str(e)) from e
        return text

    @staticmethod
    def parse(text: str) -> WebhookEvent:
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError("Webhook payload is not valid JSON") from e
        if not isinstance(body, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        event = WebhookEvent.from_payload(body)
        if not event.id:
            raise ValidationError("Webhook event id missing")
        return event

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Main webhook entry point.

        Raises:
            SignatureError: signature missing or invalid (nothing was touched)
            ValidationError: verified body is not a Stripe event
            StoreError: claim or apply could not reach the store
        """
        event = self.parse(self.verify(payload, signature))
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s object_id=%s email_hash=%s",
            event.id, event.raw_type, ctx["livemode"], ctx["object_id"], ctx["email_hash"],
        )

        if not await self.store.claim_event(event.id, event.raw_type):
            logger.info("WEBHOOK_DUPLICATE event_id=%s event_type=%s", event.id, event.raw_type)
            return WebhookResult(event_id=event.id, event_type=event.raw_type, outcome=WebhookOutcome.DUPLICATE)

        try:
            details = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event.id, event.raw_type, e,
            )
            await self._release_claim(event.id)
            await self.store.audit(
                AuditAction.STRIPE_EVENT_FAILED,
                resource_type="stripe_event",
                resource_id=event.id,
                metadata={"event_type": event.raw_type, "error": str(e)[:500]},
            )
            raise

        outcome = details.pop("outcome", WebhookOutcome.APPLIED)
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s outcome=%s",
            event.id, event.raw_type, outcome.value,
        )
        return WebhookResult(event_id=event.id, event_type=event.raw_type, outcome=outcome, details=details)

    async def _release_claim(self, event_id: str) -> None:
        try:
            await self.store.release_event(event_id)
        except StoreError as e:
            # Marker stays; the event will be treated as a replay on redelivery
            logger.error("WEBHOOK_CLAIM_RELEASE_FAILED event_id=%s error=%s", event_id, e)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: WebhookEvent) -> Dict[str, Any]:
        """Route event to its handler. Every StripeEventType has one."""
        return await self.handlers[event.type](event.data_object, event)

    async def _handle_unrecognized(self, obj: Dict, event: WebhookEvent) -> Dict[str, Any]:
        logger.info(f"Ignoring unhandled event type: {event.raw_type}")
        return {"outcome": WebhookOutcome.IGNORED, "reason": "unhandled_event_type"}

    async def _handle_checkout_completed(self, session: Dict, event: WebhookEvent) -> Dict[str, Any]:
        """
        checkout.session.completed - PRIMARY purchase trigger.

        Card payments arrive with payment_status "paid". Delayed methods
        complete "unpaid" and are settled later by async_payment_succeeded
        or async_payment_failed; until then the purchase stays pending.
        """
        if not self._is_ours(session):
            return {"outcome": WebhookOutcome.IGNORED, "reason": "foreign_session"}

        payment_status = session.get("payment_status")
        if payment_status in COMPLETED_PAYMENT_STATUSES:
            return await self._mark_paid(session)

        session_id = session.get("id")
        email = self._session_email(session)
        if session_id and email:
            await self.store.create_pending_purchase(PurchaseRecord(
                email=email,
                processor_session_id=session_id,
                processor_customer_id=_id_of(session.get("customer")),
                amount=session.get("amount_total"),
                currency=session.get("currency"),
            ))
        logger.info(
            "CHECKOUT_COMPLETED_AWAITING_PAYMENT session_id=%s payment_status=%s",
            session_id, payment_status,
        )
        return {"outcome": WebhookOutcome.IGNORED, "reason": "awaiting_payment", "session_id": session_id}

    async def _handle_async_payment_succeeded(self, session: Dict, event: WebhookEvent) -> Dict[str, Any]:
        if not self._is_ours(session):
            return {"outcome": WebhookOutcome.IGNORED, "reason": "foreign_session"}
        return await self._mark_paid(session)

    async def _handle_checkout_failed(self, session: Dict, event: WebhookEvent) -> Dict[str, Any]:
        """checkout.session.expired / async_payment_failed: pending -> failed."""
        session_id = session.get("id")
        if not session_id or not self._is_ours(session):
            return {"outcome": WebhookOutcome.IGNORED, "reason": "foreign_session"}

        record, changed = await self.store.mark_purchase_failed(session_id, reason=event.raw_type)
        if record is None:
            logger.info("PURCHASE_FAIL_NO_RECORD session_id=%s event_type=%s", session_id, event.raw_type)
            return {"outcome": WebhookOutcome.IGNORED, "reason": "unknown_session", "session_id": session_id}
        if not changed:
            return {
                "outcome": WebhookOutcome.IGNORED,
                "reason": "already_terminal",
                "session_id": session_id,
                "status": record.status,
            }

        ehash = email_hash(record.email)
        logger.info("PURCHASE_FAILED session_id=%s email_hash=%s reason=%s", session_id, ehash, event.raw_type)
        await self.store.audit(
            AuditAction.PURCHASE_FAILED,
            email_hash=ehash,
            resource_type="purchase",
            resource_id=record.purchase_id,
            metadata={"session_id": session_id, "event_id": event.id, "reason": event.raw_type},
        )
        return {"session_id": session_id, "purchase_id": record.purchase_id, "status": record.status}

    async def _handle_payment_intent(self, intent: Dict, event: WebhookEvent) -> Dict[str, Any]:
        """Reconciliation only: attach the intent id and last error to the purchase."""
        intent_id = intent.get("id")
        if not intent_id:
            return {"outcome": WebhookOutcome.IGNORED, "reason": "missing_payment_intent"}
        metadata = intent.get("metadata") or {}
        if metadata.get("app") not in (None, "", APP_METADATA_TAG):
            return {"outcome": WebhookOutcome.IGNORED, "reason": "foreign_payment_intent"}

        error_message = None
        if event.type == StripeEventType.PAYMENT_INTENT_PAYMENT_FAILED:
            last_error = intent.get("last_payment_error") or {}
            error_message = last_error.get("message") or last_error.get("code") or "payment_failed"

        email = _first_valid_email(metadata.get("customer_email"), intent.get("receipt_email"))
        record = await self.store.record_payment_intent(intent_id, email, error_message)
        if record is None:
            logger.info("PAYMENT_INTENT_UNMATCHED payment_intent_id=%s event_type=%s", intent_id, event.raw_type)
            return {"outcome": WebhookOutcome.IGNORED, "reason": "unknown_payment_intent"}

        logger.info(
            "PAYMENT_INTENT_RECORDED payment_intent_id=%s purchase_id=%s failed=%s",
            intent_id, record.purchase_id, error_message is not None,
        )
        return {"payment_intent_id": intent_id, "purchase_id": record.purchase_id, "status": record.status}

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _is_ours(session: Dict) -> bool:
        metadata = session.get("metadata") or {}
        return metadata.get("app") in (None, "", APP_METADATA_TAG)

    @staticmethod
    def _session_email(session: Dict) -> Optional[str]:
        metadata = session.get("metadata") or {}
        customer_details = session.get("customer_details") or {}
        return _first_valid_email(
            metadata.get("customer_email"),
            customer_details.get("email"),
            session.get("customer_email"),
        )

    async def _mark_paid(self, session: Dict) -> Dict[str, Any]:
        session_id = session.get("id")
        if not session_id:
            logger.error("PURCHASE_SESSION_ID_MISSING event acknowledged without changes")
            return {"outcome": WebhookOutcome.IGNORED, "reason": "session_id_missing"}

        email = self._session_email(session)
        if email is None:
            existing = await self.store.get_purchase_by_session(session_id)
            if existing is None:
                logger.error("PURCHASE_EMAIL_MISSING session_id=%s", session_id)
                return {"outcome": WebhookOutcome.IGNORED, "reason": "email_missing", "session_id": session_id}
            email = existing.email

        ehash = email_hash(email)
        amount = session.get("amount_total")
        currency = session.get("currency")
        payment_intent_id = _id_of(session.get("payment_intent"))

        try:
            record, changed = await self.store.mark_purchase_paid(
                session_id,
                email,
                amount,
                currency,
                payment_intent_id=payment_intent_id,
                customer_id=_id_of(session.get("customer")),
            )
        except DuplicatePaymentError:
            record = await self.store.flag_duplicate_payment(
                session_id, email, amount, currency, payment_intent_id=payment_intent_id,
            )
            logger.error(
                "DUPLICATE_PAYMENT_DETECTED session_id=%s email_hash=%s payment_intent_id=%s",
                session_id, ehash, payment_intent_id,
            )
            await self.store.audit(
                AuditAction.DUPLICATE_PAYMENT_DETECTED,
                email_hash=ehash,
                resource_type="purchase",
                resource_id=record.purchase_id,
                metadata={"session_id": session_id, "payment_intent_id": payment_intent_id, "amount": amount},
            )
            return {
                "session_id": session_id,
                "purchase_id": record.purchase_id,
                "status": record.status,
                "duplicate_payment": True,
            }

        if not changed:
            return {
                "outcome": WebhookOutcome.IGNORED,
                "reason": "already_terminal",
                "session_id": session_id,
                "status": record.status,
            }

        logger.info("PURCHASE_PAID session_id=%s email_hash=%s purchase_id=%s", session_id, ehash, record.purchase_id)
        await self.store.audit(
            AuditAction.PURCHASE_PAID,
            email_hash=ehash,
            resource_type="purchase",
            resource_id=record.purchase_id,
            metadata={"session_id": session_id, "amount": amount, "currency": currency},
        )
        return {"session_id": session_id, "purchase_id": record.purchase_id, "status": record.status}
