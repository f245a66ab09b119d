"""Collaborator interfaces consumed by the reconciliation engine.

The engine never talks to a network or a storage technology directly. It is
built from objects satisfying these protocols, so production bindings and
test fakes are interchangeable.
"""

from __future__ import annotations

from typing import Protocol

from .models import BalanceRecord, ConsumeResult, CreditSource, Identity


class RemoteLedger(Protocol):
    """Authoritative backend record for credits and quota.

    All methods raise UnavailableError on network failure.
    """

    async def fetch(self, identity: Identity) -> BalanceRecord | None:
        """Return the record, or None when the identity has none yet."""
        ...

    async def create(self, identity: Identity, initial_credits: int) -> BalanceRecord:
        """Create a record. Raises ConflictError if one exists."""
        ...

    async def consume_with_quota(self, identity: Identity, is_premium: bool) -> ConsumeResult:
        """Atomically spend one credit and one quota unit.

        Premium always succeeds without touching either counter. Otherwise
        requires credits > 0 and quota_used < quota_limit, or raises
        InsufficientCreditsError / QuotaExceededError without mutating state.
        """
        ...

    async def consume_quota(self, identity: Identity, is_premium: bool) -> ConsumeResult:
        """Atomically spend one free quota unit without touching credits."""
        ...

    async def add_credits(
        self, identity: Identity, amount: int, source: CreditSource
    ) -> BalanceRecord:
        """Additively grant credits, creating the record if absent."""
        ...


class SubscriptionStatus(Protocol):
    """Reports whether an identity has an active premium subscription."""

    async def is_active(self, identity: Identity) -> bool:
        ...


class BalanceStore(Protocol):
    """Synchronous on-device balance persistence."""

    def load(self, identity: Identity) -> BalanceRecord | None:
        ...

    def save(self, record: BalanceRecord) -> None:
        ...

    def clear(self, identity: Identity) -> None:
        ...
