"""
Local usage guard.

Approximates the remote provider's rate limits so a request can fail
fast and courteously instead of hitting a hard quota error.

Admission rules:
1. Sliding window - at most ``requests_per_minute`` requests in the
   trailing 60 seconds, recomputed on every read
2. Cooldown - a timed lockout set after a confirmed quota error

The daily counter is tracked and reported but not enforced.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from velvet_chat.config.loader import UsageLimits
from velvet_chat.storage.models import UsageRecord, now_ms

logger = logging.getLogger(__name__)

WINDOW_MS = 60_000


class UsageStore(Protocol):
    """Persistence collaborator for the usage record."""

    def load(self) -> Optional[UsageRecord]:
        ...

    def save(self, record: UsageRecord) -> None:
        ...


@dataclass(frozen=True)
class UsageStatus:
    """Snapshot of the guard's admission state."""
    active_count: int
    active_limit: int
    daily_count: int
    daily_limit: int
    cooldown_remaining_seconds: int
    is_blocked: bool
    retry_after_seconds: int = 0


class UsageGuard:
    """Tracks recent request timestamps, daily counts and cooldowns.

    One instance is shared by every conversation in the process. All
    read-modify-write cycles on the persisted record happen under a
    single lock.
    """

    def __init__(
        self,
        store: UsageStore,
        limits: Optional[UsageLimits] = None,
        clock: Callable[[], int] = now_ms
    ):
        """Initialize the guard.

        Args:
            store: Usage record persistence collaborator
            limits: Rate limit policy (defaults to UsageLimits())
            clock: Returns the current time in epoch milliseconds
        """
        self.store = store
        self.limits = limits or UsageLimits()
        self.clock = clock
        self._lock = threading.Lock()

    def _today(self, now: int) -> str:
        return datetime.fromtimestamp(now / 1000).date().isoformat()

    def _read(self, now: int) -> UsageRecord:
        """Load the record, applying date rollover and window pruning."""
        record = self.store.load()
        today = self._today(now)
        if record is None:
            return UsageRecord(last_reset_date=today)

        if record.last_reset_date != today:
            logger.info(
                f"Daily usage reset: {record.daily_count} requests on "
                f"{record.last_reset_date}"
            )
            record.daily_count = 0
            record.last_reset_date = today

        record.timestamps = [t for t in record.timestamps if now - t < WINDOW_MS]
        return record

    def record_request(self) -> None:
        """Count one outgoing request against the window and the day."""
        with self._lock:
            now = self.clock()
            record = self._read(now)
            record.timestamps.append(now)
            record.daily_count += 1
            self.store.save(record)
            logger.debug(
                f"Request recorded: {len(record.timestamps)}/"
                f"{self.limits.requests_per_minute} in window, "
                f"{record.daily_count} today"
            )

    def trigger_cooldown(self, duration_seconds: Optional[int] = None) -> None:
        """Lock out new requests after a confirmed quota error.

        Args:
            duration_seconds: Lockout length (defaults to the configured
                cooldown, 60 seconds)
        """
        if duration_seconds is None:
            duration_seconds = self.limits.cooldown_seconds
        with self._lock:
            now = self.clock()
            record = self._read(now)
            record.cooldown_until = now + duration_seconds * 1000
            self.store.save(record)
        logger.warning(f"Quota cooldown active for {duration_seconds}s")

    def get_status(self) -> UsageStatus:
        """Compute the current admission state."""
        with self._lock:
            now = self.clock()
            record = self._read(now)

        active_count = len(record.timestamps)
        active_limit = self.limits.requests_per_minute
        cooldown_remaining = max(0, math.ceil((record.cooldown_until - now) / 1000))

        retry_after = cooldown_remaining
        if active_count >= active_limit:
            # The window reopens once enough of the oldest entries age out
            freeing = record.timestamps[active_count - active_limit]
            window_wait = max(0, math.ceil((freeing + WINDOW_MS - now) / 1000))
            retry_after = max(retry_after, window_wait)

        return UsageStatus(
            active_count=active_count,
            active_limit=active_limit,
            daily_count=record.daily_count,
            daily_limit=self.limits.requests_per_day,
            cooldown_remaining_seconds=cooldown_remaining,
            is_blocked=active_count >= active_limit or cooldown_remaining > 0,
            retry_after_seconds=retry_after,
        )
