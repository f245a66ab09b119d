"""Data model for balances, identities and migration.

An identity is either an anonymous device or an authenticated account.
Balances are keyed by the identity's string key so the same record shape
serves both the local cache and the remote ledger.

Counters are never negative: constructing a BalanceRecord with a negative
credit or quota count raises InvalidBalanceError rather than clamping.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Union

from .errors import InvalidBalanceError, MigrationIncompleteError


@dataclass(frozen=True)
class AnonymousIdentity:
    """Device-scoped identity, created once per install."""

    device_id: str

    @property
    def key(self) -> str:
        return f"anonymous:{self.device_id}"

    @property
    def is_authenticated(self) -> bool:
        return False

    def to_dict(self) -> dict[str, str]:
        return {"kind": "anonymous", "device_id": self.device_id}


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Account-scoped identity for a signed-in principal."""

    principal_id: str

    @property
    def key(self) -> str:
        return f"authenticated:{self.principal_id}"

    @property
    def is_authenticated(self) -> bool:
        return True

    def to_dict(self) -> dict[str, str]:
        return {"kind": "authenticated", "principal_id": self.principal_id}


Identity = Union[AnonymousIdentity, AuthenticatedIdentity]


def identity_from_dict(data: dict[str, Any]) -> Identity:
    """Rebuild an identity from its to_dict() form."""
    kind = data.get("kind")
    if kind == "anonymous":
        return AnonymousIdentity(device_id=data["device_id"])
    if kind == "authenticated":
        return AuthenticatedIdentity(principal_id=data["principal_id"])
    raise ValueError(f"Unknown identity kind: {kind!r}")


class CreditSource(str, Enum):
    """Why credits were granted (kept for audit)."""

    PURCHASE = "purchase"
    MIGRATION = "migration"
    BONUS = "bonus"
    REFUND = "refund"


@dataclass(frozen=True)
class BalanceRecord:
    """Credits and daily quota for one identity.

    Attributes:
        identity: Owner of the balance
        credits: Paid credits left
        quota_used: Free units used on quota_day
        quota_limit: Free units per day, None means unlimited
        quota_day: Calendar day quota_used refers to
        is_premium: Subscription active, bypasses both limits
        updated_at: Last modification time (UTC)
    """

    identity: Identity
    credits: int
    quota_used: int
    quota_limit: int | None
    quota_day: date
    is_premium: bool = False
    updated_at: datetime = datetime.min.replace(tzinfo=timezone.utc)

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise InvalidBalanceError(
                f"credits must not be negative, got {self.credits}",
                identity=self.identity.key,
            )
        if self.quota_used < 0:
            raise InvalidBalanceError(
                f"quota_used must not be negative, got {self.quota_used}",
                identity=self.identity.key,
            )
        if self.quota_limit is not None and self.quota_limit <= 0:
            raise InvalidBalanceError(
                f"quota_limit must be positive or None, got {self.quota_limit}",
                identity=self.identity.key,
            )

    def evolve(self, **changes: Any) -> BalanceRecord:
        """Return a copy with the given fields replaced (re-validated)."""
        return replace(self, **changes)

    # ===== Derived values for display =====

    @property
    def quota_remaining(self) -> int | None:
        """Free units left today, None when unlimited."""
        if self.is_premium or self.quota_limit is None:
            return None
        return max(0, self.quota_limit - self.quota_used)

    @property
    def has_quota_left(self) -> bool:
        remaining = self.quota_remaining
        return remaining is None or remaining > 0

    @property
    def quota_display_text(self) -> str:
        if self.quota_remaining is None:
            return "Unlimited"
        return f"{self.quota_used}/{self.quota_limit}"

    @property
    def should_show_quota_warning(self) -> bool:
        remaining = self.quota_remaining
        return remaining is not None and remaining <= 1

    # ===== Serialization =====

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "identity": self.identity.to_dict(),
            "credits": self.credits,
            "quota_used": self.quota_used,
            "quota_limit": self.quota_limit,
            "quota_day": self.quota_day.isoformat(),
            "is_premium": self.is_premium,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BalanceRecord:
        """Create from dictionary."""
        return cls(
            identity=identity_from_dict(data["identity"]),
            credits=int(data["credits"]),
            quota_used=int(data.get("quota_used", 0)),
            quota_limit=data.get("quota_limit"),
            quota_day=date.fromisoformat(data["quota_day"]),
            is_premium=bool(data.get("is_premium", False)),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class MigrationTicket:
    """One-shot instruction to move an anonymous balance to an account.

    Produced once per authentication event and discarded after use.
    """

    from_device_id: str
    to_principal_id: str
    credits_at_migration: int

    @property
    def source(self) -> AnonymousIdentity:
        return AnonymousIdentity(self.from_device_id)

    @property
    def target(self) -> AuthenticatedIdentity:
        return AuthenticatedIdentity(self.to_principal_id)


@dataclass(frozen=True)
class ConsumeResult:
    """Authoritative counters returned by a remote consume."""

    success: bool
    credits_after: int
    quota_used_after: int
    quota_limit: int | None
    is_premium: bool = False

    def validate(self) -> None:
        """Raise InvalidBalanceError if the server reported impossible counters."""
        if self.credits_after < 0 or self.quota_used_after < 0:
            raise InvalidBalanceError(
                "remote reported negative counters",
                credits_after=self.credits_after,
                quota_used_after=self.quota_used_after,
            )
        if self.quota_limit is not None and self.quota_limit <= 0:
            raise InvalidBalanceError(
                "remote reported non-positive quota limit",
                quota_limit=self.quota_limit,
            )


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of an authentication event.

    warning is set when the anonymous balance could not be moved; the
    account keeps its own balance and support reconciles manually.
    """

    record: BalanceRecord
    ticket: MigrationTicket | None = None
    warning: MigrationIncompleteError | None = None

    @property
    def completed(self) -> bool:
        return self.ticket is not None and self.warning is None
