"""
ledger.py — Idempotency / status ledger.

One StatusRecord per idempotency key, kept for the life of the process.
There is no expiry: the ledger grows with every distinct key ever submitted.
That is a known limitation of an in-memory design (production: Redis with
a TTL, or a database table).
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

from mailrelay.app.dispatch.models import DeliveryStatus, StatusRecord


class StatusLedger:
    """Thread-safe key → StatusRecord map."""

    def __init__(self) -> None:
        self._records: Dict[str, StatusRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[StatusRecord]:
        with self._lock:
            return self._records.get(key)

    def record(
        self,
        key: str,
        status: DeliveryStatus,
        *,
        provider: Optional[str] = None,
        error: Optional[str] = None,
    ) -> StatusRecord:
        """Store a fresh record for ``key``, replacing any previous one."""
        entry = StatusRecord(
            idempotency_key=key,
            status=status,
            provider=provider,
            error=error,
        )
        with self._lock:
            self._records[key] = entry
        return entry

    def unsettled(self) -> int:
        """Keys still QUEUED or PROCESSING."""
        with self._lock:
            return sum(1 for r in self._records.values() if not r.status.is_terminal)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
