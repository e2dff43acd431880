"""Process-wide service handles, built once in the app lifespan."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from config import Settings
from models import utc_now
from services.access_resolver import AccessResolver
from services.stripe_service import StripeService
from services.stripe_webhook_service import StripeWebhookService
from services.trial_ledger import TrialLedger, InMemoryTrialCache, NullTrialCache, LocalTrialCache


@dataclass
class AppServices:
    settings: Settings
    store: object
    trial_ledger: TrialLedger
    access_resolver: AccessResolver
    stripe_service: StripeService
    webhook_service: StripeWebhookService


def build_services(
    settings: Settings,
    store,
    stripe_client,
    cache: Optional[LocalTrialCache] = None,
    clock: Callable[[], datetime] = utc_now,
) -> AppServices:
    if cache is None:
        if settings.local_trial_cache_enabled:
            cache = InMemoryTrialCache(settings.local_trial_cache_max_entries, clock=clock)
        else:
            cache = NullTrialCache()
    ledger = TrialLedger(store, cache, clock=clock)
    return AppServices(
        settings=settings,
        store=store,
        trial_ledger=ledger,
        access_resolver=AccessResolver(store, ledger, cache, clock=clock),
        stripe_service=StripeService(stripe_client, store, settings),
        webhook_service=StripeWebhookService(
            store,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_sec,
        ),
    )


def get_services(request: Request) -> AppServices:
    """FastAPI dependency: the container attached to app.state by the lifespan."""
    return request.app.state.services
