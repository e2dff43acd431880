"""Stripe Service - Checkout session creation and billing portal access.

This service handles:
- Creating one-time payment checkout sessions for lifetime access
- Resolving (or creating) the Stripe customer for an email
- Billing portal sessions for receipts and payment methods

Key Principles:
- One process-wide StripeClient, injected; no module-level stripe.api_key
- Validation happens before any network call
- An email with a paid purchase never gets a second checkout session
- Only a client-supplied Idempotency-Key is forwarded for session creation
"""
import asyncio
import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse

import stripe

from config import Settings
from errors import (
    ValidationError, ConfigurationError, UpstreamError, StoreError, AlreadyPurchasedError,
)
from models import CheckoutSession, PurchaseRecord, AuditAction
from utils.emails import normalize_email, email_hash

logger = logging.getLogger(__name__)

APP_METADATA_TAG = "bookfoldar"


def build_stripe_client(settings: Settings) -> stripe.StripeClient:
    """Process-wide Stripe handle with a bounded request timeout."""
    return stripe.StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.RequestsClient(timeout=settings.stripe_api_timeout_sec),
        max_network_retries=settings.stripe_max_network_retries,
    )


def validate_redirect_url(value: Optional[str], field: str) -> str:
    """Absolute http(s) URL with a host, or ValidationError."""
    url = (value or "").strip()
    if not url:
        raise ValidationError(f"{field} is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field} must be an absolute http or https URL")
    return url


def _retry_after(error: stripe.StripeError) -> Optional[int]:
    headers = getattr(error, "headers", None) or {}
    raw = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def translate_stripe_error(error: stripe.StripeError, operation: str) -> UpstreamError:
    """Map a Stripe SDK error onto the UpstreamError categories."""
    if isinstance(error, stripe.InvalidRequestError):
        category = UpstreamError.INVALID_REQUEST
    elif isinstance(error, stripe.AuthenticationError):
        category = UpstreamError.AUTHENTICATION
    elif isinstance(error, stripe.PermissionError):
        category = UpstreamError.PERMISSION
    elif isinstance(error, stripe.RateLimitError):
        category = UpstreamError.RATE_LIMIT
    elif isinstance(error, stripe.APIConnectionError):
        category = UpstreamError.CONNECTION
    else:
        category = UpstreamError.API
    request_id = getattr(error, "request_id", None)
    logger.error(
        "STRIPE_ERROR operation=%s category=%s stripe_request_id=%s error=%s",
        operation, category, request_id, getattr(error, "user_message", None) or error,
    )
    retry_after = _retry_after(error) if category == UpstreamError.RATE_LIMIT else None
    return UpstreamError(f"{operation}: {error}", category=category, retry_after=retry_after)


class StripeService:
    """Checkout Session Manager and billing portal operations."""

    def __init__(self, client: stripe.StripeClient, store, settings: Settings):
        self.client = client
        self.store = store
        self.settings = settings

    def _require_config(self) -> None:
        missing = []
        if not (self.settings.stripe_secret_key or "").strip():
            missing.append("STRIPE_SECRET_KEY")
        if not (self.settings.stripe_price_id or "").strip():
            missing.append("STRIPE_PRICE_ID")
        if missing:
            raise ConfigurationError("Missing required configuration: " + ", ".join(missing), missing=missing)

    async def _call(self, operation: str, fn, **kwargs):
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except stripe.StripeError as e:
            raise translate_stripe_error(e, operation) from e

    async def create_checkout_session(
        self,
        email: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[CheckoutSession]:
        """
        Create a Stripe checkout session for the one-time lifetime purchase.

        Args:
            email: Buyer email (normalised before use)
            success_url: Absolute URL Stripe redirects to after payment
            cancel_url: Absolute URL Stripe redirects to on cancel
            metadata: Extra string metadata copied onto the session and payment intent
            idempotency_key: Client-supplied key forwarded to Stripe, if any

        Returns:
            CheckoutSession, or None when Stripe answered without an id or URL
        """
        email = normalize_email(email)
        success_url = validate_redirect_url(success_url, "successUrl")
        cancel_url = validate_redirect_url(cancel_url, "cancelUrl")
        self._require_config()
        ehash = email_hash(email)

        if await self.store.find_paid_purchase(email):
            logger.info("CHECKOUT_REJECTED_ALREADY_PAID email_hash=%s", ehash)
            raise AlreadyPurchasedError(f"email_hash={ehash} already has a paid purchase")

        customer_id = await self.resolve_customer(email)

        session_metadata = {str(k): str(v) for k, v in (metadata or {}).items()}
        # Reserved keys last so callers cannot spoof the buyer email
        session_metadata.update({"app": APP_METADATA_TAG, "customer_email": email})

        params = {
            "mode": "payment",
            "customer": customer_id,
            "line_items": [{"price": self.settings.stripe_price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": ehash,
            "metadata": session_metadata,
            "payment_intent_data": {"metadata": session_metadata},
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        session = await self._call(
            "checkout.sessions.create",
            self.client.checkout.sessions.create,
            params=params,
            options=options,
        )

        session_id = getattr(session, "id", None)
        redirect_url = getattr(session, "url", None)
        if not session_id or not redirect_url:
            logger.error("CHECKOUT_SESSION_MISSING email_hash=%s session_id=%s", ehash, session_id)
            return None

        try:
            await self.store.create_pending_purchase(PurchaseRecord(
                email=email,
                processor_session_id=session_id,
                processor_customer_id=customer_id,
                amount=getattr(session, "amount_total", None),
                currency=getattr(session, "currency", None),
            ))
        except StoreError as e:
            # Completion webhook upserts the purchase by session id anyway
            logger.warning("PENDING_PURCHASE_NOT_RECORDED session_id=%s error=%s", session_id, e)

        await self.store.audit(
            AuditAction.CHECKOUT_SESSION_CREATED,
            email_hash=ehash,
            resource_type="checkout_session",
            resource_id=session_id,
        )
        logger.info("CHECKOUT_SESSION_CREATED email_hash=%s session_id=%s", ehash, session_id)
        return CheckoutSession(session_id=session_id, redirect_url=redirect_url)

    async def resolve_customer(self, email: str) -> str:
        """Stripe customer id for ``email``: cached link, then search, then create."""
        ehash = email_hash(email)
        try:
            cached = await self.store.get_customer_id(email)
        except StoreError as e:
            logger.warning("CUSTOMER_LINK_LOOKUP_FAILED email_hash=%s error=%s", ehash, e)
            cached = None
        if cached:
            return cached

        customer_id = await self._find_customer(email)
        if customer_id is None:
            try:
                customer = await self._call(
                    "customers.create",
                    self.client.customers.create,
                    params={"email": email, "metadata": {"app": APP_METADATA_TAG}},
                    options={"idempotency_key": f"customer-{ehash}"},
                )
                customer_id = customer.id
                logger.info("STRIPE_CUSTOMER_CREATED email_hash=%s customer_id=%s", ehash, customer_id)
            except UpstreamError as e:
                # A concurrent create with the same key collided; reuse its customer
                if not isinstance(e.__cause__, stripe.IdempotencyError):
                    raise
                customer_id = await self._find_customer(email)
                if customer_id is None:
                    raise

        try:
            await self.store.save_customer_id(email, customer_id)
        except StoreError as e:
            logger.warning("CUSTOMER_LINK_NOT_SAVED email_hash=%s error=%s", ehash, e)
        return customer_id

    async def _find_customer(self, email: str) -> Optional[str]:
        result = await self._call(
            "customers.list",
            self.client.customers.list,
            params={"email": email, "limit": 1},
        )
        data = getattr(result, "data", None) or []
        return data[0].id if data else None

    async def create_billing_portal_session(self, email: str, return_url: str) -> Optional[str]:
        """Portal URL for a known customer, or None when the email never checked out."""
        email = normalize_email(email)
        return_url = validate_redirect_url(return_url, "returnUrl")
        self._require_config()

        try:
            customer_id = await self.store.get_customer_id(email)
        except StoreError as e:
            logger.warning("CUSTOMER_LINK_LOOKUP_FAILED email_hash=%s error=%s", email_hash(email), e)
            customer_id = None
        if not customer_id:
            customer_id = await self._find_customer(email)
        if not customer_id:
            return None

        portal_session = await self._call(
            "billing_portal.sessions.create",
            self.client.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        logger.info("Billing portal session created email_hash=%s", email_hash(email))
        return getattr(portal_session, "url", None)
