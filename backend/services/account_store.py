"""Account Store - persisted purchase ledger, trials and webhook markers.

The store is the only owner of PurchaseRecord and ProcessedEventMarker rows.
Every check-then-write the services need is expressed as a single atomic
MongoDB operation backed by a unique index (see Database._create_indexes):

- insert_trial_if_absent: $setOnInsert upsert on trials.email
- claim_event: insert on processed_events.processor_event_id
- mark_purchase_paid: conditional update pending -> paid, guarded by the
  partial unique index (one paid purchase per email)

Driver failures surface as StoreError; callers decide whether to fail closed
(access checks) or return 500 (checkout, webhooks).
"""
import logging
from contextlib import contextmanager
from typing import Optional, Tuple

from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import StoreError, DuplicatePaymentError
from models import (
    TrialRecord, PurchaseRecord, PurchaseStatus, ProcessedEventMarker,
    CustomerLink, AuditAction, utc_now,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

_NO_ID = {"_id": 0}


@contextmanager
def _store_errors(operation: str):
    try:
        yield
    except (StoreError, DuplicatePaymentError):
        raise
    except PyMongoError as e:
        logger.error("STORE_ERROR operation=%s error=%s", operation, e)
        raise StoreError(f"{operation} failed: {e}") from e


class AccountStore:
    """Persisted Account Store over a Motor database handle."""

    def __init__(self, db):
        self.db = db

    # =========================================================================
    # Purchases
    # =========================================================================

    async def find_paid_purchase(self, email: str) -> Optional[PurchaseRecord]:
        with _store_errors("find_paid_purchase"):
            doc = await self.db.purchases.find_one(
                {"email": email, "status": PurchaseStatus.PAID.value},
                _NO_ID,
            )
        return PurchaseRecord(**doc) if doc else None

    async def get_purchase_by_session(self, session_id: str) -> Optional[PurchaseRecord]:
        with _store_errors("get_purchase_by_session"):
            doc = await self.db.purchases.find_one({"processor_session_id": session_id}, _NO_ID)
        return PurchaseRecord(**doc) if doc else None

    async def create_pending_purchase(self, purchase: PurchaseRecord) -> PurchaseRecord:
        """Insert a pending purchase for a new checkout session.

        A webhook that already created the row for this session wins; the
        existing row is returned unchanged.
        """
        with _store_errors("create_pending_purchase"):
            try:
                await self.db.purchases.insert_one(purchase.model_dump())
                return purchase
            except DuplicateKeyError:
                doc = await self.db.purchases.find_one(
                    {"processor_session_id": purchase.processor_session_id}, _NO_ID
                )
                return PurchaseRecord(**doc) if doc else purchase

    async def mark_purchase_paid(
        self,
        session_id: str,
        email: str,
        amount: Optional[int],
        currency: Optional[str],
        payment_intent_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Tuple[PurchaseRecord, bool]:
        """Move the session's purchase to paid, creating it if absent.

        Returns (record, changed). ``changed`` is False when the row was
        already terminal. Raises DuplicatePaymentError when the email already
        has a paid purchase under another session.
        """
        now = utc_now()
        paid_fields = {
            "status": PurchaseStatus.PAID.value,
            "paid_at": now,
            "updated_at": now,
        }
        if amount is not None:
            paid_fields["amount"] = amount
        if currency:
            paid_fields["currency"] = currency.lower()
        if payment_intent_id:
            paid_fields["processor_payment_intent_id"] = payment_intent_id
        if customer_id:
            paid_fields["processor_customer_id"] = customer_id

        with _store_errors("mark_purchase_paid"):
            # Second pass only runs after losing an insert race on the session id
            for _ in range(2):
                try:
                    doc = await self.db.purchases.find_one_and_update(
                        {"processor_session_id": session_id, "status": PurchaseStatus.PENDING.value},
                        {"$set": paid_fields},
                        projection=_NO_ID,
                        return_document=ReturnDocument.AFTER,
                    )
                except DuplicateKeyError:
                    raise DuplicatePaymentError(f"email already has a paid purchase (session {session_id})")
                if doc:
                    return PurchaseRecord(**doc), True

                existing = await self.db.purchases.find_one({"processor_session_id": session_id}, _NO_ID)
                if existing:
                    return PurchaseRecord(**existing), False

                record = PurchaseRecord(
                    email=email,
                    processor_session_id=session_id,
                    processor_payment_intent_id=payment_intent_id,
                    processor_customer_id=customer_id,
                    amount=amount,
                    currency=currency.lower() if currency else None,
                    status=PurchaseStatus.PAID,
                    created_at=now,
                    updated_at=now,
                    paid_at=now,
                )
                try:
                    await self.db.purchases.insert_one(record.model_dump())
                    return record, True
                except DuplicateKeyError:
                    raced = await self.db.purchases.find_one({"processor_session_id": session_id}, _NO_ID)
                    if raced is None:
                        raise DuplicatePaymentError(f"email already has a paid purchase (session {session_id})")
            raise StoreError(f"mark_purchase_paid did not converge for session {session_id}")

    async def flag_duplicate_payment(
        self,
        session_id: str,
        email: str,
        amount: Optional[int],
        currency: Optional[str],
        payment_intent_id: Optional[str] = None,
    ) -> PurchaseRecord:
        """Record a payment that could not be marked paid because the email
        already owns lifetime access. The row stays pending for refund review."""
        now = utc_now()
        template = PurchaseRecord(
            email=email,
            processor_session_id=session_id,
            processor_payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency.lower() if currency else None,
            created_at=now,
            updated_at=now,
        ).model_dump()
        on_insert = {k: v for k, v in template.items() if k not in ("duplicate_of_paid", "updated_at")}
        with _store_errors("flag_duplicate_payment"):
            doc = await self.db.purchases.find_one_and_update(
                {"processor_session_id": session_id},
                {
                    "$set": {"duplicate_of_paid": True, "updated_at": now},
                    "$setOnInsert": on_insert,
                },
                upsert=True,
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        return PurchaseRecord(**doc)

    async def mark_purchase_failed(
        self, session_id: str, reason: Optional[str] = None
    ) -> Tuple[Optional[PurchaseRecord], bool]:
        """pending -> failed. Terminal rows and unknown sessions are left alone."""
        now = utc_now()
        update = {"status": PurchaseStatus.FAILED.value, "failed_at": now, "updated_at": now}
        if reason:
            update["last_payment_error"] = reason
        with _store_errors("mark_purchase_failed"):
            doc = await self.db.purchases.find_one_and_update(
                {"processor_session_id": session_id, "status": PurchaseStatus.PENDING.value},
                {"$set": update},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return PurchaseRecord(**doc), True
            existing = await self.db.purchases.find_one({"processor_session_id": session_id}, _NO_ID)
        return (PurchaseRecord(**existing) if existing else None), False

    async def record_payment_intent(
        self,
        payment_intent_id: str,
        email: Optional[str],
        error_message: Optional[str] = None,
    ) -> Optional[PurchaseRecord]:
        """Attach a payment intent outcome to its purchase. Never changes status."""
        now = utc_now()
        update = {"updated_at": now, "last_payment_error": error_message}
        with _store_errors("record_payment_intent"):
            doc = await self.db.purchases.find_one_and_update(
                {"processor_payment_intent_id": payment_intent_id},
                {"$set": update},
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
            )
            if doc is None and email:
                # Intent not linked yet: attach to the newest pending purchase for the email
                doc = await self.db.purchases.find_one_and_update(
                    {
                        "email": email,
                        "status": PurchaseStatus.PENDING.value,
                        "processor_payment_intent_id": None,
                    },
                    {"$set": {**update, "processor_payment_intent_id": payment_intent_id}},
                    projection=_NO_ID,
                    sort=[("created_at", DESCENDING)],
                    return_document=ReturnDocument.AFTER,
                )
        return PurchaseRecord(**doc) if doc else None

    # =========================================================================
    # Trials
    # =========================================================================

    async def get_trial(self, email: str) -> Optional[TrialRecord]:
        with _store_errors("get_trial"):
            doc = await self.db.trials.find_one({"email": email}, _NO_ID)
        return TrialRecord(**doc) if doc else None

    async def insert_trial_if_absent(self, trial: TrialRecord) -> Tuple[TrialRecord, bool]:
        """Atomically create the trial unless one exists. Returns (stored, created)."""
        with _store_errors("insert_trial_if_absent"):
            try:
                result = await self.db.trials.update_one(
                    {"email": trial.email},
                    {"$setOnInsert": trial.to_document()},
                    upsert=True,
                )
                created = result.upserted_id is not None
            except DuplicateKeyError:
                # Concurrent upsert for the same email won
                created = False
            doc = await self.db.trials.find_one({"email": trial.email}, _NO_ID)
        if doc is None:
            raise StoreError("trial for email missing after upsert")
        return TrialRecord(**doc), created

    # =========================================================================
    # Webhook markers
    # =========================================================================

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        """Insert the ProcessedEventMarker. False means the event was already claimed."""
        marker = ProcessedEventMarker(processor_event_id=event_id, event_type=event_type)
        with _store_errors("claim_event"):
            try:
                await self.db.processed_events.insert_one(marker.model_dump())
            except DuplicateKeyError:
                return False
        return True

    async def release_event(self, event_id: str) -> None:
        """Drop a claim whose side effects failed so a redelivery can apply them."""
        with _store_errors("release_event"):
            await self.db.processed_events.delete_one({"processor_event_id": event_id})

    # =========================================================================
    # Stripe customers
    # =========================================================================

    async def get_customer_id(self, email: str) -> Optional[str]:
        with _store_errors("get_customer_id"):
            doc = await self.db.customer_links.find_one({"email": email}, _NO_ID)
        return doc.get("stripe_customer_id") if doc else None

    async def save_customer_id(self, email: str, customer_id: str) -> None:
        link = CustomerLink(email=email, stripe_customer_id=customer_id)
        with _store_errors("save_customer_id"):
            try:
                await self.db.customer_links.update_one(
                    {"email": email},
                    {"$setOnInsert": link.model_dump()},
                    upsert=True,
                )
            except DuplicateKeyError:
                pass  # another request linked the same email first

    # =========================================================================
    # Audit
    # =========================================================================

    async def audit(self, action: AuditAction, **kwargs) -> str:
        return await create_audit_log(self.db, action, **kwargs)
