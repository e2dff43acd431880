"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification on the raw body
- Idempotency (via processed_events markers)
- Audit logging of purchase transitions

POST /webhook - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias (Stripe may be configured with this URL)

Status codes drive Stripe's redelivery: 200 for every verified event
(including replays and ignored types), 400 for bad signatures, 500 when the
event could not be applied and should be retried.
"""
from fastapi import APIRouter, Depends, Header, Request
from typing import Optional
import logging

from services.container import AppServices, get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, services: AppServices, stripe_signature: Optional[str]):
    payload = await request.body()
    result = await services.webhook_service.process_webhook(payload, stripe_signature)
    return {"received": True, "eventId": result.event_id, "status": result.outcome}


# Primary webhook endpoint
@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: AppServices = Depends(get_services),
):
    """Handle Stripe webhooks at /webhook"""
    return await _handle_stripe_webhook(request, services, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: AppServices = Depends(get_services),
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, services, stripe_signature)
