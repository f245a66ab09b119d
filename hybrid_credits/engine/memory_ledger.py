"""In-process remote ledger.

Reference implementation of the RemoteLedger protocol with the same atomic
semantics the backend must provide: every mutation happens under one
asyncio.Lock, so the credit check, the quota check and both counter updates
of a consume are a single step. Used for local development and as the fake
backend in tests, with hooks to simulate an unreachable network.

Never allow negative balances - fail loud.

Usage:
    ledger = InMemoryRemoteLedger(quota_limit=5)
    ledger.offline = True               # every call raises UnavailableError
    ledger.fail_next("consume_with_quota")  # one-shot failure
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime

from .errors import (
    ConflictError,
    InsufficientCreditsError,
    QuotaExceededError,
    UnavailableError,
)
from .models import BalanceRecord, ConsumeResult, CreditSource, Identity
from .quota_clock import QuotaClock

logger = logging.getLogger(__name__)


@dataclass
class _LedgerRow:
    identity: Identity
    credits: int
    quota_used: int
    quota_limit: int
    quota_day: date
    updated_at: datetime


class InMemoryRemoteLedger:
    """Authoritative balances held in memory.

    Attributes:
        quota_limit: Daily limit given to new records
        quota_clock: Server-side quota day (resets counters lazily)
        latency: Simulated network delay per call in seconds
        offline: When True every call raises UnavailableError
        calls: Names of the methods called, in order
    """

    def __init__(
        self,
        quota_limit: int = 5,
        quota_clock: QuotaClock | None = None,
        latency: float = 0.0,
    ) -> None:
        self.quota_limit = quota_limit
        self.quota_clock = quota_clock or QuotaClock()
        self.latency = latency
        self.offline = False
        self.calls: list[str] = []
        self._rows: dict[str, _LedgerRow] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._lock = asyncio.Lock()

    # ===== Fault injection =====

    def fail_next(self, method: str, error: Exception | None = None) -> None:
        """Make the next call to method raise error (default UnavailableError)."""
        self._failures.setdefault(method, []).append(
            error or UnavailableError(f"simulated failure in {method}")
        )

    async def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise UnavailableError("remote ledger offline", method=method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # ===== Internal helpers =====

    def _roll(self, row: _LedgerRow) -> None:
        today = self.quota_clock.current_quota_day()
        if row.quota_day != today:
            row.quota_used = 0
            row.quota_day = today

    def _to_record(self, row: _LedgerRow) -> BalanceRecord:
        return BalanceRecord(
            identity=row.identity,
            credits=row.credits,
            quota_used=row.quota_used,
            quota_limit=row.quota_limit,
            quota_day=row.quota_day,
            updated_at=row.updated_at,
        )

    def _new_row(self, identity: Identity, credits: int) -> _LedgerRow:
        return _LedgerRow(
            identity=identity,
            credits=credits,
            quota_used=0,
            quota_limit=self.quota_limit,
            quota_day=self.quota_clock.current_quota_day(),
            updated_at=self.quota_clock.now(),
        )

    # ===== Direct access (setup and inspection) =====

    def seed(
        self,
        identity: Identity,
        credits: int,
        quota_used: int = 0,
        quota_limit: int | None = None,
    ) -> None:
        """Create or overwrite a record without going through the network path."""
        if credits < 0 or quota_used < 0:
            raise ValueError("seeded counters must not be negative")
        row = self._new_row(identity, credits)
        row.quota_used = quota_used
        if quota_limit is not None:
            row.quota_limit = quota_limit
        self._rows[identity.key] = row

    def has_record(self, identity: Identity) -> bool:
        return identity.key in self._rows

    def get_credits(self, identity: Identity) -> int:
        row = self._rows.get(identity.key)
        return row.credits if row else 0

    def get_quota_used(self, identity: Identity) -> int:
        row = self._rows.get(identity.key)
        if row is None:
            return 0
        self._roll(row)
        return row.quota_used

    # ===== RemoteLedger protocol =====

    async def fetch(self, identity: Identity) -> BalanceRecord | None:
        await self._enter("fetch")
        async with self._lock:
            row = self._rows.get(identity.key)
            if row is None:
                return None
            self._roll(row)
            return self._to_record(row)

    async def create(self, identity: Identity, initial_credits: int) -> BalanceRecord:
        await self._enter("create")
        if initial_credits < 0:
            raise ValueError(f"initial_credits must be non-negative, got {initial_credits}")
        async with self._lock:
            if identity.key in self._rows:
                raise ConflictError(identity=identity.key)
            row = self._new_row(identity, initial_credits)
            self._rows[identity.key] = row
            logger.debug("Created remote record %s with %d credits", identity.key, initial_credits)
            return self._to_record(row)

    async def consume_with_quota(self, identity: Identity, is_premium: bool) -> ConsumeResult:
        await self._enter("consume_with_quota")
        async with self._lock:
            row = self._rows.get(identity.key)
            if row is None:
                if is_premium:
                    return ConsumeResult(True, 0, 0, None, is_premium=True)
                raise InsufficientCreditsError(identity=identity.key)
            self._roll(row)
            if is_premium:
                return ConsumeResult(True, row.credits, row.quota_used, None, is_premium=True)
            if row.credits <= 0:
                raise InsufficientCreditsError(
                    identity=identity.key, credits=row.credits
                )
            if row.quota_used >= row.quota_limit:
                raise QuotaExceededError(
                    identity=identity.key,
                    quota_used=row.quota_used,
                    quota_limit=row.quota_limit,
                )
            row.credits -= 1
            row.quota_used += 1
            row.updated_at = self.quota_clock.now()
            return ConsumeResult(True, row.credits, row.quota_used, row.quota_limit)

    async def consume_quota(self, identity: Identity, is_premium: bool) -> ConsumeResult:
        await self._enter("consume_quota")
        async with self._lock:
            row = self._rows.get(identity.key)
            if row is None:
                row = self._new_row(identity, 0)
                self._rows[identity.key] = row
            self._roll(row)
            if is_premium:
                return ConsumeResult(True, row.credits, row.quota_used, None, is_premium=True)
            if row.quota_used >= row.quota_limit:
                raise QuotaExceededError(
                    identity=identity.key,
                    quota_used=row.quota_used,
                    quota_limit=row.quota_limit,
                )
            row.quota_used += 1
            row.updated_at = self.quota_clock.now()
            return ConsumeResult(True, row.credits, row.quota_used, row.quota_limit)

    async def add_credits(
        self, identity: Identity, amount: int, source: CreditSource
    ) -> BalanceRecord:
        await self._enter("add_credits")
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        async with self._lock:
            row = self._rows.get(identity.key)
            if row is None:
                row = self._new_row(identity, 0)
                self._rows[identity.key] = row
            self._roll(row)
            row.credits += amount
            row.updated_at = self.quota_clock.now()
            logger.debug(
                "Added %d credits (%s) to %s, balance %d",
                amount,
                source.value,
                identity.key,
                row.credits,
            )
            return self._to_record(row)
