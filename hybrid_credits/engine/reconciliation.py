"""Reconciliation engine for credits and daily quota.

Keeps the on-device cache and the remote ledger in step for the active
identity:

- Loads publish the cached balance at once, then replace it with the remote
  one. When the remote side has no record yet it is created from the cached
  credits, or from the starter grant for a brand-new identity.
- Paid consumes are decided by the remote ledger in one atomic call. The
  cache is only used to fail fast on zero credits and is never decremented
  locally.
- Free-quota consumes fall back to an optimistic local increment when the
  remote ledger is unreachable.
- Signing in migrates the anonymous balance onto the account exactly once.

All operations for one identity are serialized by a per-identity lock;
different identities proceed independently.

Usage:
    engine = ReconciliationEngine.from_config(remote=client, subscriptions=store)
    await engine.load()
    result = await engine.consume()
    migration = await engine.on_authenticated("user-123")
    if migration.warning is not None:
        show(migration.warning.message)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..config import get_validated_config
from ..config_schema import AppConfig
from .audit_log import AuditLog
from .balance_cache import BalanceCache
from .errors import (
    ConflictError,
    InsufficientCreditsError,
    InvalidBalanceError,
    MigrationIncompleteError,
    QuotaExceededError,
    UnavailableError,
)
from .identity import IdentityResolver, IdentityStore
from .interfaces import BalanceStore, RemoteLedger, SubscriptionStatus
from .models import (
    AuthenticatedIdentity,
    BalanceRecord,
    ConsumeResult,
    CreditSource,
    Identity,
    MigrationResult,
    MigrationTicket,
)
from .premium import PremiumGate, can_consume
from .quota_clock import QuotaClock
from .state_machine import ReconciliationState, ReconciliationStateMachine

logger = logging.getLogger(__name__)

T = TypeVar("T")

BalanceListener = Callable[[BalanceRecord], None]

# Load origins that mean the remote ledger answered
REMOTE_ORIGINS = frozenset({"remote", "created"})


class ReconciliationEngine:
    """Sole writer of balance records, locally and remotely.

    Attributes:
        resolver: Decides the active identity
        cache: On-device balance store
        remote: Authoritative remote ledger
        premium_gate: Cached subscription status
        quota_clock: Quota day computation
        starter_credits: Credits granted to a brand-new identity
        default_quota_limit: Daily limit for locally seeded records
        remote_timeout: Seconds before a remote call counts as unavailable
        audit_log: Optional JSONL audit trail
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        cache: BalanceStore,
        remote: RemoteLedger,
        premium_gate: PremiumGate,
        quota_clock: QuotaClock | None = None,
        starter_credits: int = 10,
        default_quota_limit: int | None = 5,
        remote_timeout: float = 10.0,
        audit_log: AuditLog | None = None,
    ) -> None:
        if starter_credits < 0:
            raise ValueError(f"starter_credits must be non-negative, got {starter_credits}")
        self.resolver = resolver
        self.cache = cache
        self.remote = remote
        self.premium_gate = premium_gate
        self.quota_clock = quota_clock or QuotaClock()
        self.starter_credits = starter_credits
        self.default_quota_limit = default_quota_limit
        self.remote_timeout = remote_timeout
        self.audit_log = audit_log
        self._locks: dict[str, asyncio.Lock] = {}
        self._machines: dict[str, ReconciliationStateMachine] = {}
        self._published: dict[str, BalanceRecord] = {}
        self._listeners: list[BalanceListener] = []

    @classmethod
    def from_config(
        cls,
        remote: RemoteLedger,
        subscriptions: SubscriptionStatus,
        config: AppConfig | None = None,
        clock: Any = None,
        audit_log: AuditLog | None = None,
    ) -> ReconciliationEngine:
        """Build an engine and its local collaborators from config.

        Args:
            remote: Remote ledger client
            subscriptions: Subscription status collaborator
            config: Validated config (default: the global config)
            clock: Optional clock shared by the quota clock and premium gate
            audit_log: Audit trail (default: one at logging.audit_file)

        Returns:
            Configured ReconciliationEngine instance
        """
        config = config or get_validated_config()
        db_path = config.storage.db_path
        lock_timeout = config.timeouts.state_store_lock
        return cls(
            resolver=IdentityResolver(IdentityStore(db_path, lock_timeout=lock_timeout)),
            cache=BalanceCache(db_path, lock_timeout=lock_timeout),
            remote=remote,
            premium_gate=PremiumGate(
                subscriptions,
                throttle_seconds=config.premium.refresh_throttle_seconds,
                clock=clock,
            ),
            quota_clock=QuotaClock.from_timezone_name(config.quota.timezone, clock),
            starter_credits=config.credits.starter_credits,
            default_quota_limit=config.quota.daily_limit,
            remote_timeout=config.remote.timeout_seconds,
            audit_log=audit_log or AuditLog(config.logging.audit_file),
        )

    # ===== Internal helpers =====

    def _lock_for(self, identity: Identity) -> asyncio.Lock:
        lock = self._locks.get(identity.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity.key] = lock
        return lock

    def _machine(self, identity: Identity) -> ReconciliationStateMachine:
        machine = self._machines.get(identity.key)
        if machine is None:
            machine = ReconciliationStateMachine(identity.key)
            self._machines[identity.key] = machine
        return machine

    def _resolve(self, identity: Identity | None) -> Identity:
        return identity if identity is not None else self.resolver.current_identity()

    async def _call_remote(self, operation: str, call: Awaitable[T]) -> T:
        """Await a remote call under the timeout.

        Timeouts and corrupted remote data both surface as UnavailableError.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.remote_timeout)
        except asyncio.TimeoutError as e:
            raise UnavailableError(
                f"Remote {operation} timed out after {self.remote_timeout}s",
                operation=operation,
            ) from e
        except InvalidBalanceError as e:
            logger.warning("Ignoring corrupted remote data from %s: %s", operation, e)
            raise UnavailableError(
                f"Remote {operation} returned invalid data",
                operation=operation,
            ) from e

    def _check_result(self, operation: str, result: ConsumeResult) -> ConsumeResult:
        try:
            result.validate()
        except InvalidBalanceError as e:
            logger.warning("Ignoring corrupted remote result from %s: %s", operation, e)
            raise UnavailableError(
                f"Remote {operation} returned invalid data",
                operation=operation,
            ) from e
        return result

    def _with_premium(self, record: BalanceRecord) -> BalanceRecord:
        cached = self.premium_gate.cached(record.identity)
        if cached is None or cached == record.is_premium:
            return record
        return record.evolve(is_premium=cached)

    def _adopt(self, record: BalanceRecord) -> BalanceRecord:
        """Apply the lazy quota reset and the known premium status."""
        return self._with_premium(self.quota_clock.reset_if_needed(record))

    def _starter_record(self, identity: Identity) -> BalanceRecord:
        return self._with_premium(BalanceRecord(
            identity=identity,
            credits=self.starter_credits,
            quota_used=0,
            quota_limit=self.default_quota_limit,
            quota_day=self.quota_clock.current_quota_day(),
            updated_at=self.quota_clock.now(),
        ))

    def _publish(self, record: BalanceRecord) -> None:
        """Persist a record and notify listeners."""
        self.cache.save(record)
        self._published[record.identity.key] = record
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Balance listener failed for %s", record.identity.key)

    def _apply_result(self, record: BalanceRecord, result: ConsumeResult) -> BalanceRecord:
        changes: dict[str, Any] = {
            "credits": result.credits_after,
            "quota_used": result.quota_used_after,
            "quota_day": self.quota_clock.current_quota_day(),
            "updated_at": self.quota_clock.now(),
        }
        # Premium results carry no limit; keep the one we know
        if not result.is_premium:
            changes["quota_limit"] = result.quota_limit
        return record.evolve(**changes)

    # ===== Load =====

    async def _create_remote(self, identity: Identity, initial_credits: int) -> BalanceRecord:
        try:
            return await self._call_remote("create", self.remote.create(identity, initial_credits))
        except ConflictError:
            logger.debug("Remote record for %s appeared concurrently, fetching", identity.key)
            existing = await self._call_remote("fetch", self.remote.fetch(identity))
            if existing is None:
                raise UnavailableError(
                    "Remote reported a conflict but returned no record",
                    identity=identity.key,
                )
            return existing

    async def _load_locked(self, identity: Identity) -> tuple[BalanceRecord, str]:
        """Reconcile one identity. Caller holds the identity's lock.

        Returns:
            (record now in effect, origin) where origin is "remote",
            "created", "cache" or "starter"
        """
        machine = self._machine(identity)
        machine.transition_to(ReconciliationState.LOADING)

        cached = self.cache.load(identity)
        if cached is not None:
            # The remote ledger has no premium field; the cache carries it across restarts
            self.premium_gate.seed(identity, cached.is_premium)
            cached = self._adopt(cached)
            self._publish(cached)

        try:
            remote = await self._call_remote("fetch", self.remote.fetch(identity))
            if remote is None:
                seed = cached.credits if cached is not None else self.starter_credits
                logger.info("No remote record for %s, creating with %d credits", identity.key, seed)
                remote = await self._create_remote(identity, seed)
                origin = "created"
            else:
                origin = "remote"
            record = self._adopt(remote)
        except UnavailableError as e:
            if cached is not None:
                logger.warning("Remote unavailable for %s, using cached balance: %s", identity.key, e)
                record, origin = cached, "cache"
            else:
                logger.warning("Remote unavailable for %s, seeding starter balance: %s", identity.key, e)
                record, origin = self._starter_record(identity), "starter"

        self._publish(record)
        machine.transition_to(ReconciliationState.READY)
        if self.audit_log is not None:
            self.audit_log.log_balance_reconciled(record, origin)
        return record, origin

    async def _ready_record(self, identity: Identity) -> BalanceRecord:
        """Published record for an identity, loading it on first use."""
        published = self._published.get(identity.key)
        if published is None or self._machine(identity).in_state(ReconciliationState.UNINITIALIZED):
            record, _ = await self._load_locked(identity)
            return record
        record = self._adopt(published)
        if record is not published:
            self._publish(record)
        return record

    async def load(self, identity: Identity | None = None) -> BalanceRecord:
        """Reconcile the cached and remote balance for an identity.

        Never raises for an unreachable remote: the cached value (or a
        local starter record) stays in effect and the identity is ready.
        """
        identity = self._resolve(identity)
        async with self._lock_for(identity):
            record, _ = await self._load_locked(identity)
            return record

    # ===== Consume =====

    async def consume(self, identity: Identity | None = None) -> ConsumeResult:
        """Spend one credit and one unit of daily quota.

        Raises:
            InsufficientCreditsError: No credit left (possibly without a
                network round-trip)
            QuotaExceededError: Daily limit reached
            UnavailableError: Remote unreachable; nothing was spent
        """
        identity = self._resolve(identity)
        async with self._lock_for(identity):
            record = await self._ready_record(identity)
            if not record.is_premium and record.credits <= 0:
                raise InsufficientCreditsError(identity=identity.key, credits=record.credits)

            try:
                result = self._check_result(
                    "consume_with_quota",
                    await self._call_remote(
                        "consume_with_quota",
                        self.remote.consume_with_quota(identity, record.is_premium),
                    ),
                )
            except UnavailableError as e:
                logger.warning("Consume for %s not attempted, remote unavailable: %s", identity.key, e)
                raise

            self._publish(self._apply_result(record, result))
            if self.audit_log is not None:
                self.audit_log.log_credit_consumed(identity, result)
            return result

    async def consume_free_quota(self, identity: Identity | None = None) -> ConsumeResult:
        """Spend one unit of daily quota for a free operation.

        When the remote ledger is unreachable the local counter is
        incremented optimistically as long as quota remains.

        Raises:
            QuotaExceededError: Daily limit reached
        """
        identity = self._resolve(identity)
        async with self._lock_for(identity):
            record = await self._ready_record(identity)
            try:
                result = self._check_result(
                    "consume_quota",
                    await self._call_remote(
                        "consume_quota",
                        self.remote.consume_quota(identity, record.is_premium),
                    ),
                )
            except UnavailableError as e:
                return self._consume_quota_offline(record, e)

            self._publish(self._apply_result(record, result))
            if self.audit_log is not None:
                self.audit_log.log_quota_consumed(identity, result.quota_used_after, result.quota_limit)
            return result

    def _consume_quota_offline(self, record: BalanceRecord, cause: UnavailableError) -> ConsumeResult:
        identity = record.identity
        if record.is_premium:
            return ConsumeResult(True, record.credits, record.quota_used, None, is_premium=True)
        if not record.has_quota_left:
            raise QuotaExceededError(
                identity=identity.key,
                quota_used=record.quota_used,
                quota_limit=record.quota_limit,
            ) from cause

        logger.warning("Remote unavailable for %s, counting free quota locally: %s", identity.key, cause)
        updated = record.evolve(quota_used=record.quota_used + 1, updated_at=self.quota_clock.now())
        self._publish(updated)
        if self.audit_log is not None:
            self.audit_log.log_quota_consumed(identity, updated.quota_used, updated.quota_limit, offline=True)
        return ConsumeResult(True, updated.credits, updated.quota_used, updated.quota_limit)

    # ===== Credit grants =====

    async def add_credits(
        self,
        amount: int,
        source: CreditSource | str,
        identity: Identity | None = None,
    ) -> BalanceRecord:
        """Grant credits through the remote ledger.

        Nothing is added locally when the remote is unreachable; the
        caller retries.

        Raises:
            InvalidBalanceError: amount is not a positive integer
            UnavailableError: Remote unreachable
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidBalanceError(f"amount must be a positive integer, got {amount!r}")
        source = CreditSource(source)
        identity = self._resolve(identity)
        async with self._lock_for(identity):
            return await self._add_credits_locked(identity, amount, source)

    async def _add_credits_locked(
        self, identity: Identity, amount: int, source: CreditSource
    ) -> BalanceRecord:
        try:
            granted = await self._call_remote(
                "add_credits", self.remote.add_credits(identity, amount, source)
            )
        except UnavailableError as e:
            logger.warning(
                "Could not add %d %s credits to %s: %s", amount, source.value, identity.key, e
            )
            raise

        record = self._adopt(granted)
        self._publish(record)
        if self.audit_log is not None:
            self.audit_log.log_credits_granted(identity, amount, source, record.credits)
        logger.info("Added %d %s credits to %s, balance %d", amount, source.value, identity.key, record.credits)
        return record

    # ===== Identity changes =====

    async def on_authenticated(self, principal_id: str) -> MigrationResult:
        """Switch to an account and migrate the anonymous balance once.

        Never raises for a failed migration: the result carries a
        MigrationIncompleteError warning and the account keeps its own
        balance.
        """
        previous = self.resolver.on_authenticated(principal_id)
        target = AuthenticatedIdentity(principal_id)
        if previous is None:
            return MigrationResult(record=await self.load(target))

        # Lock order: anonymous identity first, then the account
        async with self._lock_for(previous):
            cached = self.cache.load(previous)
            ticket = MigrationTicket(
                from_device_id=previous.device_id,
                to_principal_id=principal_id,
                credits_at_migration=cached.credits if cached is not None else 0,
            )
            async with self._lock_for(target):
                return await self._migrate_locked(ticket)

    async def _migrate_locked(self, ticket: MigrationTicket) -> MigrationResult:
        source, target = ticket.source, ticket.target
        machine = self._machine(target)

        record, origin = await self._load_locked(target)
        if origin not in REMOTE_ORIGINS:
            return self._migration_failed(ticket, record, "remote ledger unavailable")

        machine.transition_to(ReconciliationState.MIGRATING)
        try:
            if ticket.credits_at_migration > 0:
                record = await self._add_credits_locked(
                    target, ticket.credits_at_migration, CreditSource.MIGRATION
                )
        except UnavailableError as e:
            machine.transition_to(ReconciliationState.READY)
            return self._migration_failed(ticket, record, str(e))
        machine.transition_to(ReconciliationState.READY)

        self.cache.clear(source)
        self._published.pop(source.key, None)
        self._machines.pop(source.key, None)
        self.resolver.record_migration(ticket.from_device_id, ticket.to_principal_id)
        if self.audit_log is not None:
            self.audit_log.log_migration_completed(ticket, record.credits)
        logger.info(
            "Migrated %d credits from device %s... to %s",
            ticket.credits_at_migration,
            ticket.from_device_id[:8],
            ticket.to_principal_id,
        )
        return MigrationResult(record=record, ticket=ticket)

    def _migration_failed(
        self, ticket: MigrationTicket, record: BalanceRecord, reason: str
    ) -> MigrationResult:
        warning = MigrationIncompleteError(
            from_device_id=ticket.from_device_id,
            to_principal_id=ticket.to_principal_id,
            credits=ticket.credits_at_migration,
            reason=reason,
        )
        logger.error(
            "Migration of %d credits from device %s... to %s incomplete: %s",
            ticket.credits_at_migration,
            ticket.from_device_id[:8],
            ticket.to_principal_id,
            reason,
        )
        if self.audit_log is not None:
            self.audit_log.log_migration_incomplete(ticket, reason)
        return MigrationResult(record=record, ticket=ticket, warning=warning)

    async def on_signed_out(self) -> BalanceRecord:
        """Switch to a fresh anonymous identity and load it."""
        identity = self.resolver.on_signed_out()
        return await self.load(identity)

    # ===== Premium =====

    async def refresh_premium(self, identity: Identity | None = None, force: bool = False) -> bool:
        """Refresh subscription status and merge it into the balance."""
        identity = self._resolve(identity)
        is_premium = await self.premium_gate.refresh(identity, force=force)
        async with self._lock_for(identity):
            record = self._published.get(identity.key) or self.cache.load(identity)
            if record is not None:
                updated = self._adopt(record)
                if updated.is_premium != is_premium:
                    updated = updated.evolve(is_premium=is_premium)
                if updated is not record:
                    self._publish(updated)
        return is_premium

    # ===== Reads =====

    def snapshot(self, identity: Identity | None = None) -> BalanceRecord | None:
        """Current balance with the quota reset applied, None if unknown."""
        identity = self._resolve(identity)
        record = self._published.get(identity.key) or self.cache.load(identity)
        if record is None:
            return None
        return self._adopt(record)

    def can_consume(self, identity: Identity | None = None) -> bool:
        identity = self._resolve(identity)
        if self.premium_gate.is_premium(identity):
            return True
        record = self.snapshot(identity)
        return record is not None and can_consume(record)

    def state(self, identity: Identity | None = None) -> ReconciliationState:
        return self._machine(self._resolve(identity)).current_state

    def add_listener(self, callback: BalanceListener) -> None:
        """Register a callback receiving every published record."""
        self._listeners.append(callback)

    def remove_listener(self, callback: BalanceListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def current_identity(self) -> Identity:
        return self.resolver.current_identity()
