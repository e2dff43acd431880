"""Access Routes - entitlement checks and trials.

POST /access-check - Resolve lifetime / trial / none for an email
POST /start-trial - Explicitly start the 3 day trial (idempotent)
GET /trial-status - Trial countdown for an email
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
import logging

from services.container import AppServices, get_services

logger = logging.getLogger(__name__)
router = APIRouter(tags=["access"])


class EmailRequest(BaseModel):
    email: str


@router.post("/access-check")
async def access_check(body: EmailRequest, services: AppServices = Depends(get_services)):
    decision = await services.access_resolver.check_access(body.email)
    return decision.model_dump(by_alias=True)


@router.post("/start-trial")
async def start_trial(body: EmailRequest, services: AppServices = Depends(get_services)):
    """Start the trial, or return the existing one unchanged."""
    ledger = services.trial_ledger
    record = await ledger.start_trial(body.email)
    now = ledger.clock()
    return {
        "email": record.email,
        "startTime": record.start_time.isoformat(),
        "expiryTime": record.expiry_time.isoformat(),
        "status": record.state(now).value,
        "daysRemaining": record.days_remaining(now),
    }


@router.get("/trial-status")
async def trial_status(email: str = Query(...), services: AppServices = Depends(get_services)):
    status = await services.trial_ledger.get_trial_status(email)
    return status.model_dump(by_alias=True)
