"""Pytest fixtures for hybrid_credits tests.

Common fixtures for the identity store, balance cache, in-memory remote
ledger and a fully wired reconciliation engine on a temporary database.
"""

from __future__ import annotations

# Load environment variables from .env before any tests run
from dotenv import load_dotenv

load_dotenv()

from datetime import timezone
from pathlib import Path
from typing import Iterator

import pytest

from hybrid_credits.config import reset_config
from hybrid_credits.engine.audit_log import AuditLog
from hybrid_credits.engine.balance_cache import BalanceCache
from hybrid_credits.engine.identity import IdentityResolver, IdentityStore
from hybrid_credits.engine.memory_ledger import InMemoryRemoteLedger
from hybrid_credits.engine.premium import PremiumGate
from hybrid_credits.engine.quota_clock import QuotaClock
from hybrid_credits.engine.reconciliation import ReconciliationEngine

from tests.testing_utils import ScriptedSubscriptions, VirtualClock


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: end-to-end scenario across engine, cache and remote ledger",
    )


@pytest.fixture(autouse=True)
def fresh_config() -> Iterator[None]:
    """Reset the global config before and after each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> VirtualClock:
    """Virtual clock starting at 2026-03-14 10:00 UTC."""
    return VirtualClock()


@pytest.fixture
def quota_clock(clock: VirtualClock) -> QuotaClock:
    """Quota clock on UTC calendar days driven by the virtual clock."""
    return QuotaClock(clock=clock, tz=timezone.utc)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "hybrid_credits.db"


@pytest.fixture
def cache(db_path: Path) -> BalanceCache:
    return BalanceCache(db_path)


@pytest.fixture
def identity_store(db_path: Path) -> IdentityStore:
    return IdentityStore(db_path)


@pytest.fixture
def resolver(identity_store: IdentityStore) -> IdentityResolver:
    """Resolver generating predictable device ids (DEVICE-1, DEVICE-2, ...)."""
    counter = iter(range(1, 1000))
    return IdentityResolver(identity_store, id_factory=lambda: f"DEVICE-{next(counter)}")


@pytest.fixture
def remote(quota_clock: QuotaClock) -> InMemoryRemoteLedger:
    """In-memory remote ledger with the default daily limit of 5."""
    return InMemoryRemoteLedger(quota_limit=5, quota_clock=quota_clock)


@pytest.fixture
def subscriptions() -> ScriptedSubscriptions:
    return ScriptedSubscriptions()


@pytest.fixture
def premium_gate(subscriptions: ScriptedSubscriptions, clock: VirtualClock) -> PremiumGate:
    return PremiumGate(subscriptions, throttle_seconds=60.0, clock=clock)


@pytest.fixture
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(tmp_path / "logs" / "audit.jsonl")


@pytest.fixture
def engine(
    resolver: IdentityResolver,
    cache: BalanceCache,
    remote: InMemoryRemoteLedger,
    premium_gate: PremiumGate,
    quota_clock: QuotaClock,
    audit_log: AuditLog,
) -> ReconciliationEngine:
    """Engine with starter grant 10, daily limit 5 and a 1s remote timeout."""
    return ReconciliationEngine(
        resolver=resolver,
        cache=cache,
        remote=remote,
        premium_gate=premium_gate,
        quota_clock=quota_clock,
        starter_credits=10,
        default_quota_limit=5,
        remote_timeout=1.0,
        audit_log=audit_log,
    )
