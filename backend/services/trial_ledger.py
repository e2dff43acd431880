"""Trial Ledger - 3 day trial lifecycle.

The store is authoritative; the local cache is a best-effort mirror used only
when the store cannot be reached. A trial is created at most once per email
and is never extended or reset.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from errors import StoreError
from models import TrialRecord, TrialStatus, AuditAction, utc_now
from utils.emails import normalize_email, email_hash

logger = logging.getLogger(__name__)


class LocalTrialCache(Protocol):
    """Process-local, non-authoritative copy of trial records."""

    def get(self, email: str) -> Optional[TrialRecord]: ...

    def put_if_absent(self, record: TrialRecord) -> TrialRecord: ...

    def put(self, record: TrialRecord) -> None: ...

    def discard(self, email: str) -> None: ...


class InMemoryTrialCache:
    """LRU dict of trial records. Single process, no cross-request locking.

    Expired trials are kept for ``retention`` after expiry so a trial started
    while the store was down is not restarted once it comes back; after that
    they are dropped on access. At most ``max_entries`` records are held.
    """

    def __init__(self, max_entries: int = 10_000, retention: timedelta = timedelta(days=30),
                 clock: Callable[[], datetime] = utc_now):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.retention = retention
        self.clock = clock
        self._records: "OrderedDict[str, TrialRecord]" = OrderedDict()

    def _is_stale(self, record: TrialRecord, now: datetime) -> bool:
        return record.expiry_time + self.retention <= now

    def _evict(self) -> None:
        if len(self._records) <= self.max_entries:
            return
        now = self.clock()
        for email in [e for e, r in self._records.items() if self._is_stale(r, now)]:
            del self._records[email]
        while len(self._records) > self.max_entries:
            self._records.popitem(last=False)

    def get(self, email: str) -> Optional[TrialRecord]:
        record = self._records.get(email)
        if record is None:
            return None
        if self._is_stale(record, self.clock()):
            del self._records[email]
            return None
        self._records.move_to_end(email)
        return record

    def put_if_absent(self, record: TrialRecord) -> TrialRecord:
        existing = self.get(record.email)
        if existing is not None:
            return existing
        self.put(record)
        return record

    def put(self, record: TrialRecord) -> None:
        if self._is_stale(record, self.clock()):
            self._records.pop(record.email, None)
            return
        self._records[record.email] = record
        self._records.move_to_end(record.email)
        self._evict()

    def discard(self, email: str) -> None:
        self._records.pop(email, None)

    def __len__(self) -> int:
        return len(self._records)


class NullTrialCache:
    """Cache that remembers nothing. put_if_absent hands the record back."""

    def get(self, email: str) -> Optional[TrialRecord]:
        return None

    def put_if_absent(self, record: TrialRecord) -> TrialRecord:
        return record

    def put(self, record: TrialRecord) -> None:
        pass

    def discard(self, email: str) -> None:
        pass


class TrialLedger:
    def __init__(self, store, cache: Optional[LocalTrialCache] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.cache = cache if cache is not None else NullTrialCache()
        self.clock = clock

    async def start_trial(self, email: str) -> TrialRecord:
        """Start the trial for ``email`` unless one already exists.

        Returns the stored record, which for a repeat call carries the
        original start and expiry times. A trial started while the store was
        down is written back with its cached times once the store recovers.
        """
        email = normalize_email(email)
        cached = self.cache.get(email)
        candidate = cached or TrialRecord.start(email, self.clock())

        try:
            record, created = await self.store.insert_trial_if_absent(candidate)
        except StoreError as e:
            logger.warning(
                "TRIAL_STORE_UNAVAILABLE email_hash=%s falling back to local cache: %s",
                email_hash(email), e,
            )
            return self.cache.put_if_absent(candidate)

        self.cache.put(record)
        if created:
            logger.info(
                "TRIAL_STARTED email_hash=%s expiry=%s reconciled=%s",
                email_hash(email), record.expiry_time.isoformat(), cached is not None,
            )
            await self.store.audit(
                AuditAction.TRIAL_STARTED,
                email_hash=email_hash(email),
                resource_type="trial",
                metadata={
                    "expiry_time": record.expiry_time.isoformat(),
                    "reconciled_from_cache": cached is not None,
                },
            )
        return record

    async def find_trial(self, email: str) -> Optional[TrialRecord]:
        """Stored trial for a normalised email, or the cached copy if the store is down."""
        try:
            return await self.store.get_trial(email)
        except StoreError as e:
            logger.warning("TRIAL_STORE_UNAVAILABLE email_hash=%s using local cache: %s", email_hash(email), e)
            return self.cache.get(email)

    async def get_trial_status(self, email: str) -> TrialStatus:
        email = normalize_email(email)
        record = await self.find_trial(email)
        if record is None:
            return TrialStatus(active=False, days_remaining=0)
        return record.status_at(self.clock())
