"""Unit tests for the ReconciliationEngine protocols."""

import asyncio
from datetime import date
from pathlib import Path

import pytest

from hybrid_credits.config import get_validated_config, set_config_value
from hybrid_credits.engine.audit_log import AuditLog
from hybrid_credits.engine.balance_cache import BalanceCache
from hybrid_credits.engine.errors import (
    InsufficientCreditsError,
    InvalidBalanceError,
    QuotaExceededError,
    UnavailableError,
)
from hybrid_credits.engine.identity import IdentityResolver
from hybrid_credits.engine.memory_ledger import InMemoryRemoteLedger
from hybrid_credits.engine.models import (
    AnonymousIdentity,
    AuthenticatedIdentity,
    BalanceRecord,
    ConsumeResult,
    CreditSource,
    Identity,
)
from hybrid_credits.engine.premium import PremiumGate
from hybrid_credits.engine.quota_clock import QuotaClock
from hybrid_credits.engine.reconciliation import ReconciliationEngine
from hybrid_credits.engine.state_machine import ReconciliationState

from tests.testing_utils import ScriptedSubscriptions, VirtualClock

DEVICE = AnonymousIdentity("DEVICE-1")
TODAY = date(2026, 3, 14)


def cached_record(identity: Identity, credits: int, quota_used: int = 0, day: date = TODAY) -> BalanceRecord:
    return BalanceRecord(
        identity=identity,
        credits=credits,
        quota_used=quota_used,
        quota_limit=5,
        quota_day=day,
    )


class RacingLedger(InMemoryRemoteLedger):
    """Reports no record on the first fetch although one exists."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.hide_once = True

    async def fetch(self, identity: Identity) -> BalanceRecord | None:
        record = await super().fetch(identity)
        if self.hide_once:
            self.hide_once = False
            return None
        return record


class CorruptLedger(InMemoryRemoteLedger):
    """Returns impossible counters."""

    async def fetch(self, identity: Identity) -> BalanceRecord | None:
        raise InvalidBalanceError("credits must not be negative, got -3")

    async def consume_with_quota(self, identity: Identity, is_premium: bool) -> ConsumeResult:
        return ConsumeResult(True, -1, 1, 5)


def build_engine(
    remote: InMemoryRemoteLedger,
    resolver: IdentityResolver,
    cache: BalanceCache,
    premium_gate: PremiumGate,
    quota_clock: QuotaClock,
    remote_timeout: float = 1.0,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        resolver=resolver,
        cache=cache,
        remote=remote,
        premium_gate=premium_gate,
        quota_clock=quota_clock,
        remote_timeout=remote_timeout,
    )


class TestLoad:
    """Load protocol."""

    @pytest.mark.asyncio
    async def test_new_identity_gets_starter_grant(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        assert engine.state(DEVICE) == ReconciliationState.UNINITIALIZED

        record = await engine.load()

        assert record.identity == DEVICE
        assert record.credits == 10
        assert remote.get_credits(DEVICE) == 10
        assert cache.load(DEVICE) == record
        assert engine.state(DEVICE) == ReconciliationState.READY

    @pytest.mark.asyncio
    async def test_remote_is_authoritative(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7))
        remote.seed(DEVICE, credits=3, quota_used=1)

        record = await engine.load()

        assert (record.credits, record.quota_used) == (3, 1)
        assert cache.load(DEVICE).credits == 3  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_cached_publishes_before_remote(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7))
        remote.seed(DEVICE, credits=3)
        seen: list[int] = []
        engine.add_listener(lambda r: seen.append(r.credits))

        await engine.load()

        assert seen == [7, 3]

    @pytest.mark.asyncio
    async def test_cached_zero_seeds_remote_with_zero(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=0))

        record = await engine.load()

        assert record.credits == 0
        assert remote.get_credits(DEVICE) == 0

    @pytest.mark.asyncio
    async def test_offline_keeps_cache(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7, quota_used=2))
        remote.offline = True

        record = await engine.load()

        assert (record.credits, record.quota_used) == (7, 2)
        assert engine.state(DEVICE) == ReconciliationState.READY

    @pytest.mark.asyncio
    async def test_offline_without_cache_seeds_starter(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        remote.offline = True

        record = await engine.load()

        assert record.credits == 10
        assert record.quota_limit == 5
        assert cache.load(DEVICE) == record
        assert not remote.has_record(DEVICE)

    @pytest.mark.asyncio
    async def test_create_failure_keeps_cache(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7))
        remote.fail_next("create")

        record = await engine.load()

        assert record.credits == 7
        assert not remote.has_record(DEVICE)

    @pytest.mark.asyncio
    async def test_create_conflict_treated_as_fetch(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock,
    ) -> None:
        remote = RacingLedger(quota_clock=quota_clock)
        remote.seed(DEVICE, credits=4)
        engine = build_engine(remote, resolver, cache, premium_gate, quota_clock)

        record = await engine.load()

        assert record.credits == 4
        assert remote.calls == ["fetch", "create", "fetch"]

    @pytest.mark.asyncio
    async def test_corrupted_remote_ignored(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock,
    ) -> None:
        cache.save(cached_record(DEVICE, credits=6))
        engine = build_engine(CorruptLedger(quota_clock=quota_clock), resolver, cache, premium_gate, quota_clock)

        record = await engine.load()

        assert record.credits == 6

    @pytest.mark.asyncio
    async def test_timeout_treated_as_unavailable(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock,
    ) -> None:
        cache.save(cached_record(DEVICE, credits=5))
        slow = InMemoryRemoteLedger(quota_clock=quota_clock, latency=0.5)
        engine = build_engine(slow, resolver, cache, premium_gate, quota_clock, remote_timeout=0.05)

        record = await engine.load()

        assert record.credits == 5

    @pytest.mark.asyncio
    async def test_stale_cache_reset_on_load(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7, quota_used=5, day=date(2026, 3, 13)))
        remote.offline = True

        record = await engine.load()

        assert record.quota_used == 0
        assert record.quota_day == TODAY

    @pytest.mark.asyncio
    async def test_audit_records_origin(
        self, engine: ReconciliationEngine, audit_log: AuditLog
    ) -> None:
        await engine.load()
        event = audit_log.read_recent(1)[0]
        assert event["event_type"] == "balance_reconciled"
        assert event["origin"] == "created"


class TestConsume:
    """Paid consume protocol."""

    @pytest.mark.asyncio
    async def test_success_updates_cache(
        self, engine: ReconciliationEngine, cache: BalanceCache, audit_log: AuditLog
    ) -> None:
        await engine.load()

        result = await engine.consume()

        assert (result.credits_after, result.quota_used_after) == (9, 1)
        cached = cache.load(DEVICE)
        assert (cached.credits, cached.quota_used) == (9, 1)  # type: ignore[union-attr]
        assert audit_log.read_recent(1)[0]["event_type"] == "credit_consumed"

    @pytest.mark.asyncio
    async def test_loads_on_first_use(self, engine: ReconciliationEngine) -> None:
        result = await engine.consume()
        assert result.credits_after == 9
        assert engine.state(DEVICE) == ReconciliationState.READY

    @pytest.mark.asyncio
    async def test_fail_fast_on_zero_credits(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        remote.seed(DEVICE, credits=0)
        await engine.load()

        with pytest.raises(InsufficientCreditsError):
            await engine.consume()

        assert "consume_with_quota" not in remote.calls

    @pytest.mark.asyncio
    async def test_remote_rejection_leaves_cache(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        remote.seed(DEVICE, credits=3, quota_used=5)
        await engine.load()

        with pytest.raises(QuotaExceededError):
            await engine.consume()

        assert cache.load(DEVICE).credits == 3  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_unavailable_is_retriable_and_spends_nothing(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        await engine.load()
        remote.offline = True

        with pytest.raises(UnavailableError) as exc_info:
            await engine.consume()

        assert exc_info.value.retriable
        assert cache.load(DEVICE).credits == 10  # type: ignore[union-attr]
        assert remote.get_credits(DEVICE) == 10

    @pytest.mark.asyncio
    async def test_negative_result_treated_as_unavailable(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock,
    ) -> None:
        cache.save(cached_record(DEVICE, credits=2))
        engine = build_engine(CorruptLedger(quota_clock=quota_clock), resolver, cache, premium_gate, quota_clock)
        await engine.load()

        with pytest.raises(UnavailableError):
            await engine.consume()

        assert cache.load(DEVICE).credits == 2  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_premium_consume_spends_nothing(
        self,
        engine: ReconciliationEngine,
        remote: InMemoryRemoteLedger,
        subscriptions: ScriptedSubscriptions,
    ) -> None:
        remote.seed(DEVICE, credits=0, quota_used=5)
        subscriptions.set_active(DEVICE)
        await engine.load()
        assert await engine.refresh_premium()

        result = await engine.consume()

        assert result.is_premium
        assert remote.get_credits(DEVICE) == 0
        snapshot = engine.snapshot()
        assert snapshot.quota_limit == 5  # type: ignore[union-attr]
        assert snapshot.is_premium  # type: ignore[union-attr]


class TestFreeQuota:
    """Free-quota protocol."""

    @pytest.mark.asyncio
    async def test_online_spends_quota_only(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        await engine.load()

        result = await engine.consume_free_quota()

        assert (result.credits_after, result.quota_used_after) == (10, 1)
        assert remote.get_quota_used(DEVICE) == 1

    @pytest.mark.asyncio
    async def test_online_limit_propagates(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        remote.seed(DEVICE, credits=1, quota_used=5)
        await engine.load()
        with pytest.raises(QuotaExceededError):
            await engine.consume_free_quota()

    @pytest.mark.asyncio
    async def test_offline_counts_locally(
        self,
        engine: ReconciliationEngine,
        remote: InMemoryRemoteLedger,
        cache: BalanceCache,
        audit_log: AuditLog,
    ) -> None:
        remote.seed(DEVICE, credits=2, quota_used=3)
        await engine.load()
        remote.offline = True

        result = await engine.consume_free_quota()

        assert result.quota_used_after == 4
        assert cache.load(DEVICE).quota_used == 4  # type: ignore[union-attr]
        assert remote.get_quota_used(DEVICE) == 3
        assert audit_log.read_recent(1)[0]["offline"] is True

    @pytest.mark.asyncio
    async def test_offline_at_limit_rejected(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        remote.seed(DEVICE, credits=2, quota_used=5)
        await engine.load()
        remote.offline = True

        with pytest.raises(QuotaExceededError):
            await engine.consume_free_quota()


class TestAddCredits:

    @pytest.mark.asyncio
    async def test_grant_updates_cache(
        self, engine: ReconciliationEngine, cache: BalanceCache, audit_log: AuditLog
    ) -> None:
        await engine.load()

        record = await engine.add_credits(50, CreditSource.PURCHASE)

        assert record.credits == 60
        assert cache.load(DEVICE).credits == 60  # type: ignore[union-attr]
        event = audit_log.read_recent(1)[0]
        assert (event["event_type"], event["amount"], event["source"]) == ("credits_granted", 50, "purchase")

    @pytest.mark.asyncio
    async def test_source_by_name(self, engine: ReconciliationEngine) -> None:
        await engine.load()
        record = await engine.add_credits(5, "refund")
        assert record.credits == 15

    @pytest.mark.asyncio
    async def test_offline_adds_nothing(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, cache: BalanceCache
    ) -> None:
        await engine.load()
        remote.offline = True

        with pytest.raises(UnavailableError):
            await engine.add_credits(50, CreditSource.PURCHASE)

        assert cache.load(DEVICE).credits == 10  # type: ignore[union-attr]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 2.5, True])
    async def test_invalid_amount(self, engine: ReconciliationEngine, amount: object) -> None:
        with pytest.raises(InvalidBalanceError):
            await engine.add_credits(amount, CreditSource.BONUS)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_unknown_source(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValueError):
            await engine.add_credits(5, "lottery")


class TestReads:

    def test_snapshot_unknown_identity(self, engine: ReconciliationEngine) -> None:
        assert engine.snapshot() is None
        assert not engine.can_consume()

    @pytest.mark.asyncio
    async def test_snapshot_applies_reset_lazily(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger, clock: VirtualClock
    ) -> None:
        remote.seed(DEVICE, credits=4, quota_used=5)
        await engine.load()
        assert not engine.can_consume()

        clock.advance_days(1)

        snapshot = engine.snapshot()
        assert snapshot.quota_used == 0  # type: ignore[union-attr]
        assert snapshot.quota_day == date(2026, 3, 15)  # type: ignore[union-attr]
        assert engine.can_consume()

    @pytest.mark.asyncio
    async def test_snapshot_from_cache_after_restart(
        self, engine: ReconciliationEngine, cache: BalanceCache
    ) -> None:
        cache.save(cached_record(DEVICE, credits=7))
        assert engine.snapshot().credits == 7  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_premium_can_consume_with_zero_credits(
        self,
        engine: ReconciliationEngine,
        remote: InMemoryRemoteLedger,
        subscriptions: ScriptedSubscriptions,
    ) -> None:
        remote.seed(DEVICE, credits=0)
        await engine.load()
        assert not engine.can_consume()

        subscriptions.set_active(DEVICE)
        await engine.refresh_premium(force=True)

        assert engine.can_consume()

    @pytest.mark.asyncio
    async def test_premium_unknown_identity_can_consume(
        self,
        engine: ReconciliationEngine,
        premium_gate: PremiumGate,
        subscriptions: ScriptedSubscriptions,
    ) -> None:
        subscriptions.set_active(DEVICE)
        await premium_gate.refresh(DEVICE)

        assert engine.snapshot() is None
        assert engine.can_consume()

    @pytest.mark.asyncio
    async def test_refresh_premium_applies_quota_reset(
        self,
        engine: ReconciliationEngine,
        remote: InMemoryRemoteLedger,
        cache: BalanceCache,
        subscriptions: ScriptedSubscriptions,
        clock: VirtualClock,
    ) -> None:
        remote.seed(DEVICE, credits=4, quota_used=5)
        await engine.load()
        clock.advance_days(1)
        subscriptions.set_active(DEVICE)

        assert await engine.refresh_premium(force=True)

        stored = cache.load(DEVICE)
        assert stored.is_premium  # type: ignore[union-attr]
        assert stored.quota_used == 0  # type: ignore[union-attr]
        assert stored.quota_day == date(2026, 3, 15)  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_premium_survives_restart(
        self,
        engine: ReconciliationEngine,
        remote: InMemoryRemoteLedger,
        resolver: IdentityResolver,
        cache: BalanceCache,
        subscriptions: ScriptedSubscriptions,
        quota_clock: QuotaClock,
        clock: VirtualClock,
    ) -> None:
        remote.seed(DEVICE, credits=0)
        subscriptions.set_active(DEVICE)
        await engine.load()
        await engine.refresh_premium()
        assert cache.load(DEVICE).is_premium  # type: ignore[union-attr]

        # New process: fresh gate that has never checked, same cache and ledger
        fresh_subscriptions = ScriptedSubscriptions()
        gate = PremiumGate(fresh_subscriptions, throttle_seconds=60.0, clock=clock)
        restarted = build_engine(remote, resolver, cache, gate, quota_clock)

        record = await restarted.load()

        assert record.is_premium
        assert restarted.can_consume()
        result = await restarted.consume()
        assert result.success and result.is_premium
        assert remote.get_credits(DEVICE) == 0
        assert fresh_subscriptions.calls == 0

    @pytest.mark.asyncio
    async def test_restart_refresh_still_checks_subscription(
        self,
        remote: InMemoryRemoteLedger,
        resolver: IdentityResolver,
        cache: BalanceCache,
        quota_clock: QuotaClock,
        clock: VirtualClock,
    ) -> None:
        remote.seed(DEVICE, credits=0)
        cache.save(cached_record(DEVICE, credits=0).evolve(is_premium=True))
        lapsed = ScriptedSubscriptions()
        engine = build_engine(
            remote, resolver, cache, PremiumGate(lapsed, clock=clock), quota_clock
        )
        await engine.load()

        assert not await engine.refresh_premium()

        assert lapsed.calls == 1
        assert not cache.load(DEVICE).is_premium  # type: ignore[union-attr]
        assert not engine.can_consume()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_publish(
        self, engine: ReconciliationEngine
    ) -> None:
        def broken(record: BalanceRecord) -> None:
            raise RuntimeError("listener bug")

        received: list[BalanceRecord] = []
        engine.add_listener(broken)
        engine.add_listener(received.append)

        await engine.load()

        assert received[-1].credits == 10

    @pytest.mark.asyncio
    async def test_remove_listener(self, engine: ReconciliationEngine) -> None:
        received: list[BalanceRecord] = []
        engine.add_listener(received.append)
        engine.remove_listener(received.append)
        await engine.load()
        assert received == []


class TestIdentityChanges:

    @pytest.mark.asyncio
    async def test_sign_out_loads_fresh_identity(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        await engine.on_authenticated("P1")

        record = await engine.on_signed_out()

        assert record.identity == AnonymousIdentity("DEVICE-2")
        assert record.credits == 10
        assert engine.current_identity() == AnonymousIdentity("DEVICE-2")

    @pytest.mark.asyncio
    async def test_switch_accounts_carries_nothing(
        self, engine: ReconciliationEngine, remote: InMemoryRemoteLedger
    ) -> None:
        await engine.on_authenticated("P1")
        result = await engine.on_authenticated("P2")

        assert result.ticket is None
        assert result.record.identity == AuthenticatedIdentity("P2")
        assert result.record.credits == 10

    @pytest.mark.asyncio
    async def test_different_identities_run_concurrently(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock,
    ) -> None:
        slow = InMemoryRemoteLedger(quota_clock=quota_clock, latency=0.05)
        engine = build_engine(slow, resolver, cache, premium_gate, quota_clock)
        a, b = AuthenticatedIdentity("A"), AuthenticatedIdentity("B")

        records = await asyncio.gather(engine.load(a), engine.load(b))

        assert [r.identity for r in records] == [a, b]
        assert engine.state(a) == engine.state(b) == ReconciliationState.READY


class TestFromConfig:

    @pytest.mark.asyncio
    async def test_builds_from_config(
        self, tmp_path: Path, subscriptions: ScriptedSubscriptions, clock: VirtualClock
    ) -> None:
        set_config_value("storage.db_path", str(tmp_path / "app.db"))
        set_config_value("logging.audit_file", str(tmp_path / "audit.jsonl"))
        set_config_value("credits.starter_credits", 3)
        set_config_value("quota.daily_limit", 2)
        set_config_value("quota.timezone", "UTC")

        remote = InMemoryRemoteLedger(quota_limit=get_validated_config().quota.daily_limit)
        engine = ReconciliationEngine.from_config(remote, subscriptions, clock=clock)

        record = await engine.load()

        assert engine.starter_credits == 3
        assert engine.default_quota_limit == 2
        assert record.credits == 3
        assert (tmp_path / "app.db").exists()
        assert (tmp_path / "audit.jsonl").exists()
        assert engine.quota_clock.current_quota_day() == TODAY

    def test_negative_starter_rejected(
        self,
        resolver: IdentityResolver,
        cache: BalanceCache,
        remote: InMemoryRemoteLedger,
        premium_gate: PremiumGate,
    ) -> None:
        with pytest.raises(ValueError):
            ReconciliationEngine(resolver, cache, remote, premium_gate, starter_credits=-1)
