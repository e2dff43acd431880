"""Checkout Routes - one-time purchase for lifetime access.

POST /checkout - Create Stripe checkout session
"""
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
import logging

from services.container import AppServices, get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["checkout"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    model_config = ConfigDict(populate_by_name=True)

    email: str
    success_url: str = Field(alias="successUrl")
    cancel_url: str = Field(alias="cancelUrl")
    metadata: Optional[Dict[str, Any]] = None


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: AppServices = Depends(get_services),
):
    """
    Create Stripe checkout session for the lifetime purchase.

    Returns 409 when the email already has lifetime access.
    """
    session = await services.stripe_service.create_checkout_session(
        email=body.email,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        metadata=body.metadata,
        idempotency_key=(idempotency_key or "").strip() or None,
    )
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CHECKOUT_SESSION_MISSING", "message": "Payment provider did not return a session"},
        )
    return {"sessionId": session.session_id, "url": session.redirect_url}
