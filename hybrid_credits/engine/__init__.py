"""Credit and quota reconciliation engine."""

from __future__ import annotations

from .audit_log import AuditLog
from .balance_cache import BalanceCache
from .errors import (
    ConflictError, CreditEngineError, ErrorCategory, ErrorCode, ErrorResponse,
    InsufficientCreditsError, InvalidBalanceError, MigrationIncompleteError,
    QuotaExceededError, UnavailableError,
)
from .identity import IdentityResolver, IdentityStore
from .interfaces import BalanceStore, RemoteLedger, SubscriptionStatus
from .memory_ledger import InMemoryRemoteLedger
from .models import (
    AnonymousIdentity, AuthenticatedIdentity, BalanceRecord, ConsumeResult,
    CreditSource, Identity, MigrationResult, MigrationTicket,
)
from .premium import PremiumGate, can_consume
from .quota_clock import QuotaClock
from .reconciliation import ReconciliationEngine
from .state_machine import ReconciliationState, ReconciliationStateMachine

__all__ = [
    "ReconciliationEngine",
    "AnonymousIdentity", "AuthenticatedIdentity", "Identity",
    "BalanceRecord", "ConsumeResult", "CreditSource",
    "MigrationResult", "MigrationTicket",
    "IdentityResolver", "IdentityStore",
    "BalanceCache",
    "BalanceStore", "RemoteLedger", "SubscriptionStatus",
    "InMemoryRemoteLedger",
    "PremiumGate", "can_consume",
    "QuotaClock",
    "ReconciliationState", "ReconciliationStateMachine",
    "AuditLog",
    # Errors
    "CreditEngineError", "ErrorCategory", "ErrorCode", "ErrorResponse",
    "InsufficientCreditsError", "QuotaExceededError", "UnavailableError",
    "ConflictError", "MigrationIncompleteError", "InvalidBalanceError",
]
