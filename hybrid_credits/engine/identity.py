"""Identity resolution for anonymous devices and signed-in accounts.

Exactly one identity is active at a time. A device id is generated on first
launch and persisted for the lifetime of the install. Signing in moves from
the anonymous identity to an authenticated one and hands the previous
anonymous identity back so its balance can be migrated. Signing out starts
a brand-new anonymous identity instead of restoring the pre-sign-in one.

The resolver also persists which device was migrated to which principal, so
an authentication event replayed after a restart never migrates twice.

Usage:
    resolver = IdentityResolver(IdentityStore(db_path))
    identity = resolver.current_identity()
    previous = resolver.on_authenticated("user-123")
    if previous is not None:
        ...  # migrate previous -> AuthenticatedIdentity("user-123")
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Callable

from .models import AnonymousIdentity, AuthenticatedIdentity, Identity, identity_from_dict
from .sqlite_store import SQLiteStore, _with_retry

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_uuid_v1"
CURRENT_IDENTITY_KEY = "user_state_v1"
MIGRATION_KEY_PREFIX = "migrated:"


class IdentityStore(SQLiteStore):
    """Small persisted key/value table for identity state."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS identity_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
    """

    def get(self, key: str) -> str | None:
        def do_get() -> tuple[str] | None:
            with self._connect_read() as conn:
                cursor = conn.execute(
                    "SELECT value FROM identity_state WHERE key = ?", (key,)
                )
                result: tuple[str] | None = cursor.fetchone()
                return result

        row = _with_retry(do_get)
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        def do_set() -> None:
            with self._connect_write() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO identity_state (key, value) VALUES (?, ?)",
                    (key, value),
                )
                conn.commit()

        _with_retry(do_set)


def _new_device_id() -> str:
    return str(uuid.uuid4()).upper()


class IdentityResolver:
    """Decides which identity is active and persists the decision."""

    def __init__(
        self,
        store: IdentityStore,
        id_factory: Callable[[], str] = _new_device_id,
    ) -> None:
        self.store = store
        self._id_factory = id_factory

    def _device_id(self) -> str:
        """Persisted device id, generated on first use."""
        device_id = self.store.get(DEVICE_ID_KEY)
        if device_id is None:
            device_id = self._id_factory()
            self.store.set(DEVICE_ID_KEY, device_id)
            logger.info("Generated device id %s...", device_id[:8])
        return device_id

    def _persist(self, identity: Identity) -> None:
        self.store.set(CURRENT_IDENTITY_KEY, json.dumps(identity.to_dict()))

    def current_identity(self) -> Identity:
        """Return the persisted identity, creating an anonymous one if none."""
        raw = self.store.get(CURRENT_IDENTITY_KEY)
        if raw is not None:
            try:
                return identity_from_dict(json.loads(raw))
            except (ValueError, KeyError) as e:
                logger.warning("Discarding unreadable identity state: %s", e)

        identity = AnonymousIdentity(self._device_id())
        self._persist(identity)
        return identity

    def on_authenticated(self, principal_id: str) -> AnonymousIdentity | None:
        """Switch to an authenticated identity.

        Returns:
            The previous anonymous identity when its balance should be
            migrated, None when there is nothing to migrate (already signed
            in as this principal, switching accounts, or the device was
            already migrated).
        """
        if not principal_id:
            raise ValueError("principal_id must be a non-empty string")

        current = self.current_identity()
        target = AuthenticatedIdentity(principal_id)
        if current == target:
            logger.debug("Already authenticated as %s", principal_id)
            return None

        self._persist(target)

        if isinstance(current, AuthenticatedIdentity):
            logger.info(
                "Switched account %s -> %s, no balance carried",
                current.principal_id,
                principal_id,
            )
            return None

        migrated_to = self.migrated_principal(current.device_id)
        if migrated_to is not None:
            logger.info(
                "Device %s... already migrated to %s",
                current.device_id[:8],
                migrated_to,
            )
            return None

        return current

    def on_signed_out(self) -> AnonymousIdentity:
        """Switch to a freshly generated anonymous identity.

        The previous anonymous identity is not restored, so any balance it
        still holds remotely stays with it.
        """
        current = self.current_identity()
        if isinstance(current, AnonymousIdentity):
            return current

        device_id = self._id_factory()
        self.store.set(DEVICE_ID_KEY, device_id)
        identity = AnonymousIdentity(device_id)
        self._persist(identity)
        logger.info("Signed out %s, new device id %s...", current.principal_id, device_id[:8])
        return identity

    def record_migration(self, device_id: str, principal_id: str) -> None:
        """Remember that a device's balance went to a principal."""
        self.store.set(MIGRATION_KEY_PREFIX + device_id, principal_id)

    def migrated_principal(self, device_id: str) -> str | None:
        """Principal a device was migrated to, if any."""
        return self.store.get(MIGRATION_KEY_PREFIX + device_id)
