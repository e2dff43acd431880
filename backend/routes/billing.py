"""Billing Routes - product details and payment management.

Endpoints:
- GET /plan - Product name, price and description for the purchase page
- POST /billing-portal - Create Stripe billing portal session (receipts, payment methods)
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
import logging

from services.container import AppServices, get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["billing"])


class PortalRequest(BaseModel):
    """Request to open the billing portal."""
    model_config = ConfigDict(populate_by_name=True)

    email: str
    return_url: str = Field(alias="returnUrl")


@router.get("/plan")
async def get_plan(services: AppServices = Depends(get_services)):
    settings = services.settings
    return {
        "name": settings.product_name,
        "price": settings.product_price_display,
        "description": settings.product_description,
        "billing": "one_time",
    }


@router.post("/billing-portal")
async def create_portal_session(body: PortalRequest, services: AppServices = Depends(get_services)):
    """Create Stripe billing portal session for an email that has checked out before."""
    url = await services.stripe_service.create_billing_portal_session(body.email, body.return_url)
    if not url:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "NO_BILLING_ACCOUNT", "message": "No billing account found for this email"},
        )
    return {"url": url}
