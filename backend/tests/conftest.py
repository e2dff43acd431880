"""
Pytest configuration and shared test helpers for backend tests.

Services are exercised against an in-memory account store that mirrors the
atomic semantics of services.account_store.AccountStore, a controllable clock
and a MagicMock Stripe client. No MongoDB or network access is needed.
"""
import hashlib
import hmac
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Optional
from unittest.mock import MagicMock

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from fastapi.testclient import TestClient

from config import Settings
from errors import StoreError, DuplicatePaymentError
from models import PurchaseRecord, PurchaseStatus, TrialRecord, utc_now
from server import create_app
from services.container import build_services
from services.trial_ledger import InMemoryTrialCache

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_ID = "price_test_lifetime"
EPOCH = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class InMemoryAccountStore:
    """Minimal in-memory store for trials, purchases, processed events, customer links and audits."""

    def __init__(self):
        self.trials = {}
        self.purchases = {}  # purchase_id -> PurchaseRecord
        self.events = {}
        self.customers = {}
        self.audits = []
        self.calls = []
        self.unavailable = False
        self.failing = set()

    def _enter(self, operation: str):
        self.calls.append(operation)
        if self.unavailable or operation in self.failing:
            raise StoreError(f"{operation} failed: store unavailable")

    def _by_session(self, session_id: str) -> Optional[PurchaseRecord]:
        for record in self.purchases.values():
            if record.processor_session_id == session_id:
                return record
        return None

    def _paid_for(self, email: str) -> Optional[PurchaseRecord]:
        for record in self.purchases.values():
            if record.email == email and record.status == PurchaseStatus.PAID.value:
                return record
        return None

    # purchases
    async def find_paid_purchase(self, email):
        self._enter("find_paid_purchase")
        return self._paid_for(email)

    async def get_purchase_by_session(self, session_id):
        self._enter("get_purchase_by_session")
        return self._by_session(session_id)

    async def create_pending_purchase(self, purchase):
        self._enter("create_pending_purchase")
        existing = self._by_session(purchase.processor_session_id)
        if existing:
            return existing
        self.purchases[purchase.purchase_id] = purchase
        return purchase

    async def mark_purchase_paid(self, session_id, email, amount, currency,
                                 payment_intent_id=None, customer_id=None):
        self._enter("mark_purchase_paid")
        record = self._by_session(session_id)
        if record is not None and record.status != PurchaseStatus.PENDING.value:
            return record, False
        paid = self._paid_for(record.email if record else email)
        if paid is not None:
            raise DuplicatePaymentError(f"email already has a paid purchase (session {session_id})")
        if record is None:
            record = PurchaseRecord(email=email, processor_session_id=session_id)
            self.purchases[record.purchase_id] = record
        now = utc_now()
        record.status = PurchaseStatus.PAID.value
        record.paid_at = now
        record.updated_at = now
        if amount is not None:
            record.amount = amount
        if currency:
            record.currency = currency.lower()
        if payment_intent_id:
            record.processor_payment_intent_id = payment_intent_id
        if customer_id:
            record.processor_customer_id = customer_id
        return record, True

    async def flag_duplicate_payment(self, session_id, email, amount, currency, payment_intent_id=None):
        self._enter("flag_duplicate_payment")
        record = self._by_session(session_id)
        if record is None:
            record = PurchaseRecord(
                email=email,
                processor_session_id=session_id,
                processor_payment_intent_id=payment_intent_id,
                amount=amount,
                currency=currency,
            )
            self.purchases[record.purchase_id] = record
        record.duplicate_of_paid = True
        return record

    async def mark_purchase_failed(self, session_id, reason=None):
        self._enter("mark_purchase_failed")
        record = self._by_session(session_id)
        if record is None:
            return None, False
        if record.status != PurchaseStatus.PENDING.value:
            return record, False
        record.status = PurchaseStatus.FAILED.value
        record.failed_at = utc_now()
        if reason:
            record.last_payment_error = reason
        return record, True

    async def record_payment_intent(self, payment_intent_id, email, error_message=None):
        self._enter("record_payment_intent")
        for record in self.purchases.values():
            if record.processor_payment_intent_id == payment_intent_id:
                record.last_payment_error = error_message
                return record
        if email:
            pending = [
                r for r in self.purchases.values()
                if r.email == email and r.status == PurchaseStatus.PENDING.value and not r.processor_payment_intent_id
            ]
            if pending:
                record = max(pending, key=lambda r: r.created_at)
                record.processor_payment_intent_id = payment_intent_id
                record.last_payment_error = error_message
                return record
        return None

    # trials
    async def get_trial(self, email):
        self._enter("get_trial")
        return self.trials.get(email)

    async def insert_trial_if_absent(self, trial):
        self._enter("insert_trial_if_absent")
        if trial.email in self.trials:
            return self.trials[trial.email], False
        self.trials[trial.email] = trial
        return trial, True

    # webhook markers
    async def claim_event(self, event_id, event_type):
        self._enter("claim_event")
        if event_id in self.events:
            return False
        self.events[event_id] = event_type
        return True

    async def release_event(self, event_id):
        self._enter("release_event")
        self.events.pop(event_id, None)

    # customers
    async def get_customer_id(self, email):
        self._enter("get_customer_id")
        return self.customers.get(email)

    async def save_customer_id(self, email, customer_id):
        self._enter("save_customer_id")
        self.customers.setdefault(email, customer_id)

    async def audit(self, action, **kwargs):
        self.audits.append((action, kwargs))
        return f"audit-{len(self.audits)}"

    # helpers for assertions
    def purchases_for(self, email):
        return [r for r in self.purchases.values() if r.email == email]

    def seed_paid(self, email, session_id="cs_seed_paid"):
        record = PurchaseRecord(email=email, processor_session_id=session_id, status=PurchaseStatus.PAID, paid_at=utc_now())
        self.purchases[record.purchase_id] = record
        return record

    def seed_trial(self, email, start: datetime):
        record = TrialRecord.start(email, start)
        self.trials[email] = record
        return record


def make_stripe_client():
    """MagicMock shaped like stripe.StripeClient for the calls the service makes."""
    client = MagicMock()
    client.customers.list.return_value = SimpleNamespace(data=[])
    client.customers.create.return_value = SimpleNamespace(id="cus_test_new")
    client.checkout.sessions.create.return_value = SimpleNamespace(
        id="cs_test_001",
        url="https://checkout.stripe.com/c/pay/cs_test_001",
        amount_total=2499,
        currency="usd",
    )
    client.billing_portal.sessions.create.return_value = SimpleNamespace(
        url="https://billing.stripe.com/p/session/test_001",
    )
    return client


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for ``payload`` (v1 HMAC-SHA256 scheme)."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id=PRICE_ID,
        mongo_url="mongodb://localhost:27017",
        db_name="bookfoldar_test",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryAccountStore()


@pytest.fixture
def cache(clock):
    return InMemoryTrialCache(clock=clock)


@pytest.fixture
def stripe_client():
    return make_stripe_client()


@pytest.fixture
def services(settings, store, stripe_client, cache, clock):
    return build_services(settings, store, stripe_client, cache=cache, clock=clock)


@pytest.fixture
def client(services):
    """TestClient for an app wired to the in-memory services."""
    return TestClient(create_app(services))
