"""Premium subscription gate.

Caches whether an identity has an active subscription and short-circuits
credit and quota enforcement when it does. Refreshes go to the external
subscription collaborator at most once per throttle window per identity,
so rapid triggers (app foregrounding, screen refreshes) collapse into one
call.

Usage:
    gate = PremiumGate(subscriptions, throttle_seconds=60.0)
    is_premium = await gate.refresh(identity)
    if can_consume(record):
        ...
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .interfaces import SubscriptionStatus
from .models import BalanceRecord, Identity

logger = logging.getLogger(__name__)


def can_consume(record: BalanceRecord) -> bool:
    """Whether one unit of paid work may start for this record.

    Premium is checked before any counter is examined.
    """
    if record.is_premium:
        return True
    if record.credits <= 0:
        return False
    return record.quota_limit is None or record.quota_used < record.quota_limit


class PremiumGate:
    """Throttled, cached view of subscription status.

    Attributes:
        subscriptions: External subscription-status collaborator
        throttle_seconds: Minimum seconds between checks for one identity
        clock: Optional clock for time operations (for testing with VirtualClock)
    """

    def __init__(
        self,
        subscriptions: SubscriptionStatus,
        throttle_seconds: float = 60.0,
        clock: Any = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.throttle_seconds = throttle_seconds
        self.clock = clock
        # identity key -> last known status
        self._status: dict[str, bool] = {}
        # identity key -> time of last successful check
        self._last_check: dict[str, float] = {}

    def _get_current_time(self) -> float:
        """Get current time. Uses injected clock if available."""
        if self.clock is not None:
            result: float = self.clock.time()
            return result
        return time.time()

    def cached(self, identity: Identity) -> bool | None:
        """Last known status, None if never checked."""
        return self._status.get(identity.key)

    def is_premium(self, identity: Identity) -> bool:
        return self._status.get(identity.key, False)

    def seed(self, identity: Identity, is_premium: bool) -> None:
        """Adopt a persisted status if nothing has been checked yet.

        Does not open a throttle window, so the next refresh still asks
        the collaborator.
        """
        self._status.setdefault(identity.key, is_premium)

    def invalidate(self, identity: Identity) -> None:
        """Forget the throttle window so the next refresh hits the collaborator."""
        self._last_check.pop(identity.key, None)

    async def refresh(self, identity: Identity, force: bool = False) -> bool:
        """Refresh subscription status, honouring the throttle window.

        A collaborator failure keeps the cached value and does not open a
        new throttle window, so the next call retries.

        Args:
            identity: Identity to check
            force: Skip the throttle (e.g., right after a purchase)

        Returns:
            Current premium status
        """
        key = identity.key
        now = self._get_current_time()
        last = self._last_check.get(key)
        if not force and last is not None and now - last < self.throttle_seconds:
            logger.debug(
                "Skipping subscription check for %s (checked %.1fs ago)",
                key,
                now - last,
            )
            return self._status.get(key, False)

        try:
            active = bool(await self.subscriptions.is_active(identity))
        except Exception as e:
            logger.warning("Subscription check failed for %s, keeping cached status: %s", key, e)
            return self._status.get(key, False)

        previous = self._status.get(key)
        self._status[key] = active
        self._last_check[key] = now
        if previous is not None and previous != active:
            logger.info("Premium status changed for %s: %s", key, active)
        return active
