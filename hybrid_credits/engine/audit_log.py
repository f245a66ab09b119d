"""JSONL audit trail of balance changes.

Every credit grant, consume, reconciliation and migration outcome is
appended as one JSON line. Support staff reconcile incomplete migrations
from the migration_incomplete entries.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import get
from .models import BalanceRecord, ConsumeResult, CreditSource, Identity, MigrationTicket


class AuditLog:
    """Append-only JSONL event log.

    Unlike a run log, the file is never truncated: the trail must survive
    restarts.
    """

    output_path: Path
    _sequence: int  # Monotonic event counter, continued from the existing file

    def __init__(self, output_file: str | Path | None = None) -> None:
        """Initialize the audit log.

        Args:
            output_file: JSONL file path (default: logging.audit_file from config)
        """
        resolved = output_file or get("logging.audit_file") or "credits_audit.jsonl"
        self.output_path = Path(resolved)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._sequence = self._last_sequence()

    def _last_sequence(self) -> int:
        """Sequence of the last event already in the file, 0 if none."""
        if not self.output_path.exists():
            return 0
        last = 0
        with open(self.output_path) as f:
            for line in f:
                if line.strip():
                    try:
                        last = int(json.loads(line).get("sequence", last))
                    except (ValueError, TypeError, AttributeError):
                        continue
        return last

    def log(self, event_type: str, data: dict[str, Any]) -> None:
        """Append an event with timestamp and sequence number."""
        self._sequence += 1
        event: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence": self._sequence,
            "event_type": event_type,
            **data,
        }
        with open(self.output_path, "a") as f:
            f.write(json.dumps(event) + "\n")

    # ========== Balance event helpers ==========

    def log_credit_consumed(self, identity: Identity, result: ConsumeResult) -> None:
        self.log("credit_consumed", {
            "identity": identity.key,
            "credits_after": result.credits_after,
            "quota_used_after": result.quota_used_after,
            "quota_limit": result.quota_limit,
            "is_premium": result.is_premium,
        })

    def log_quota_consumed(
        self,
        identity: Identity,
        quota_used_after: int,
        quota_limit: int | None,
        offline: bool = False,
    ) -> None:
        self.log("quota_consumed", {
            "identity": identity.key,
            "quota_used_after": quota_used_after,
            "quota_limit": quota_limit,
            "offline": offline,
        })

    def log_credits_granted(
        self,
        identity: Identity,
        amount: int,
        source: CreditSource,
        balance_after: int,
    ) -> None:
        self.log("credits_granted", {
            "identity": identity.key,
            "amount": amount,
            "source": source.value,
            "balance_after": balance_after,
        })

    def log_balance_reconciled(self, record: BalanceRecord, origin: str) -> None:
        """Record which side a loaded balance came from.

        Args:
            record: Balance now in effect
            origin: "remote", "created", "cache" or "starter"
        """
        self.log("balance_reconciled", {
            "identity": record.identity.key,
            "origin": origin,
            "credits": record.credits,
            "quota_used": record.quota_used,
            "quota_day": record.quota_day.isoformat(),
        })

    def log_migration_completed(self, ticket: MigrationTicket, balance_after: int) -> None:
        self.log("migration_completed", {
            "from_device_id": ticket.from_device_id,
            "to_principal_id": ticket.to_principal_id,
            "credits_migrated": ticket.credits_at_migration,
            "balance_after": balance_after,
        })

    def log_migration_incomplete(self, ticket: MigrationTicket, reason: str) -> None:
        self.log("migration_incomplete", {
            "from_device_id": ticket.from_device_id,
            "to_principal_id": ticket.to_principal_id,
            "credits_lost": ticket.credits_at_migration,
            "reason": reason,
        })

    def read_recent(self, n: int | None = None) -> list[dict[str, Any]]:
        """Read the last N events from the log.

        N defaults to logging.default_recent from config.
        """
        if n is None:
            default_recent = get("logging.default_recent")
            n = default_recent if isinstance(default_recent, int) else 50
        if not self.output_path.exists():
            return []
        lines = [line for line in self.output_path.read_text().split("\n") if line]
        recent = lines[-n:] if len(lines) > n else lines
        return [json.loads(line) for line in recent]
