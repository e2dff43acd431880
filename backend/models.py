from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timedelta, timezone
from enum import Enum
import uuid

# ============================================================================
# CONSTANTS
# ============================================================================

ONE_DAY = timedelta(days=1)
TRIAL_DURATION = timedelta(days=3)


def utc_now() -> datetime:
    """Current UTC time truncated to millisecond precision (BSON datetime precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class EntitlementTier(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    LIFETIME = "lifetime"


class TrialState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class StripeEventType(str, Enum):
    """Closed set of webhook events the processor knows how to apply."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "StripeEventType":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNRECOGNIZED


class WebhookOutcome(str, Enum):
    APPLIED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class AuditAction(str, Enum):
    # Trials
    TRIAL_STARTED = "TRIAL_STARTED"

    # Purchases
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    PURCHASE_PAID = "PURCHASE_PAID"
    PURCHASE_FAILED = "PURCHASE_FAILED"
    DUPLICATE_PAYMENT_DETECTED = "DUPLICATE_PAYMENT_DETECTED"

    # Webhooks
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"


# ============================================================================
# TRIALS
# ============================================================================

class TrialStatus(BaseModel):
    active: bool
    days_remaining: int = Field(ge=0, serialization_alias="daysRemaining")


class TrialRecord(BaseModel):
    """One per email. Duration is fixed at creation and never extended."""
    model_config = ConfigDict(extra="ignore")

    email: str
    start_time: datetime
    expiry_time: datetime

    @classmethod
    def start(cls, email: str, now: datetime) -> "TrialRecord":
        return cls(email=email, start_time=now, expiry_time=now + TRIAL_DURATION)

    def days_remaining(self, now: datetime) -> int:
        remaining = as_utc(self.expiry_time) - now
        if remaining <= timedelta(0):
            return 0
        # ceil without float rounding
        return -((-remaining) // ONE_DAY)

    def is_active(self, now: datetime) -> bool:
        return now < as_utc(self.expiry_time)

    def state(self, now: datetime) -> TrialState:
        return TrialState.ACTIVE if self.is_active(now) else TrialState.EXPIRED

    def status_at(self, now: datetime) -> TrialStatus:
        return TrialStatus(active=self.is_active(now), days_remaining=self.days_remaining(now))

    def to_document(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "start_time": self.start_time,
            "expiry_time": self.expiry_time,
        }


# ============================================================================
# PURCHASES & EVENTS
# ============================================================================

class PurchaseRecord(BaseModel):
    """Persisted purchase ledger row. pending -> paid | failed, both terminal."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    purchase_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    processor_session_id: Optional[str] = None
    processor_payment_intent_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    amount: Optional[int] = None  # minor units (cents)
    currency: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.PENDING
    last_payment_error: Optional[str] = None
    duplicate_of_paid: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PurchaseStatus.PAID.value


class ProcessedEventMarker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    processor_event_id: str
    event_type: str
    processed_at: datetime = Field(default_factory=utc_now)


class CustomerLink(BaseModel):
    """Cached Stripe customer id for an email."""
    model_config = ConfigDict(extra="ignore")

    email: str
    stripe_customer_id: str
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# DERIVED / API MODELS
# ============================================================================

class AccessDecision(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    has_active_access: bool = Field(serialization_alias="hasActiveAccess")
    tier: EntitlementTier = EntitlementTier.NONE
    trial_days_remaining: int = Field(default=0, ge=0, serialization_alias="trialDaysRemaining")

    @classmethod
    def lifetime(cls) -> "AccessDecision":
        return cls(has_active_access=True, tier=EntitlementTier.LIFETIME, trial_days_remaining=0)

    @classmethod
    def trial(cls, days_remaining: int) -> "AccessDecision":
        return cls(has_active_access=False, tier=EntitlementTier.TRIAL, trial_days_remaining=days_remaining)

    @classmethod
    def none(cls) -> "AccessDecision":
        return cls(has_active_access=False, tier=EntitlementTier.NONE, trial_days_remaining=0)


class CheckoutSession(BaseModel):
    session_id: str
    redirect_url: str


class WebhookEvent(BaseModel):
    """Verified Stripe event narrowed to the fields the processor reads."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: StripeEventType
    raw_type: str
    livemode: bool = False
    created: Optional[int] = None
    data_object: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        raw_type = str(payload.get("type") or "")
        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return cls(
            id=str(payload.get("id") or ""),
            type=StripeEventType.parse(raw_type),
            raw_type=raw_type,
            livemode=bool(payload.get("livemode", False)),
            created=payload.get("created"),
            data_object=obj if isinstance(obj, dict) else {},
        )


class WebhookResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    event_id: str
    event_type: str
    outcome: WebhookOutcome
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    email_hash: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)
