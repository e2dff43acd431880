"""Access Resolver - single entitlement decision per email.

Precedence: paid purchase > active trial > expired trial > first contact
(auto-provisioned trial). When the store cannot be read the decision fails
closed: lifetime is never granted and has_active_access is always false; the
local trial cache only informs the trial countdown.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from errors import StoreError
from models import AccessDecision, TrialRecord, utc_now
from services.trial_ledger import LocalTrialCache, NullTrialCache
from utils.emails import normalize_email, email_hash

logger = logging.getLogger(__name__)


def _trial_decision(record: Optional[TrialRecord], now: datetime) -> AccessDecision:
    if record is None or not record.is_active(now):
        return AccessDecision.none()
    return AccessDecision.trial(record.days_remaining(now))


class AccessResolver:
    def __init__(self, store, ledger, cache: Optional[LocalTrialCache] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.ledger = ledger
        self.cache = cache if cache is not None else NullTrialCache()
        self.clock = clock

    async def check_access(self, email: str) -> AccessDecision:
        email = normalize_email(email)
        ehash = email_hash(email)

        try:
            paid = await self.store.find_paid_purchase(email)
            if paid is not None:
                # Purchase supersedes any trial copy held locally
                self.cache.discard(email)
                logger.info("ACCESS_DECISION email_hash=%s tier=lifetime", ehash)
                return AccessDecision.lifetime()
            trial = await self.store.get_trial(email)
        except StoreError as e:
            return self._degraded(email, e)

        if trial is not None:
            self.cache.put(trial)
            decision = _trial_decision(trial, self.clock())
            logger.info("ACCESS_DECISION email_hash=%s tier=%s", ehash, decision.tier)
            return decision

        # First contact: provision the trial. Concurrent callers converge on one record.
        record = await self.ledger.start_trial(email)
        decision = _trial_decision(record, self.clock())
        logger.info("ACCESS_DECISION email_hash=%s tier=%s provisioned=true", ehash, decision.tier)
        return decision

    def _degraded(self, email: str, error: StoreError) -> AccessDecision:
        cached = self.cache.get(email)
        decision = _trial_decision(cached, self.clock())
        logger.warning(
            "ACCESS_DEGRADED email_hash=%s tier=%s cached_trial=%s error=%s",
            email_hash(email), decision.tier, cached is not None, error,
        )
        return decision
