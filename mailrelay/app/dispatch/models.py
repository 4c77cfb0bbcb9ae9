"""
models.py — Shared data structures for the dispatch system.

Defines:
    • DeliveryStatus  — ledger state of one idempotency key
    • OutcomeStatus   — what submit() tells the caller
    • EmailRequest    — the immutable message to send
    • ProviderResult  — what a provider returns on success
    • StatusRecord    — ledger entry for one idempotency key
    • DispatchOutcome — terminal answer to one submit()

═══════════════════════════════════════════════════════════════════════════
LEDGER LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    submit ──┬── rate limited ──► QUEUED ──(drain)──► PROCESSING ─┐
             │                                                    ├─► SUCCESS
             └── admitted ─────────────────────────► PROCESSING ─┴─► FAILED

A key never leaves the ledger. Any later submit with the same key is
answered with DUPLICATE and the record as it stands at that moment.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from mailrelay.app.core.errors import AllProvidersFailed


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryStatus(str, Enum):
    """Ledger state per idempotency key."""
    PROCESSING = "processing"   # provider attempts in flight
    QUEUED     = "queued"       # deferred by the rate limiter
    SUCCESS    = "success"      # a provider accepted the message
    FAILED     = "failed"       # every provider exhausted or circuit-open

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class OutcomeStatus(str, Enum):
    """Caller-visible result of submit()."""
    DUPLICATE    = "duplicate"
    RATE_LIMITED = "rate_limited"
    SUCCESS      = "success"
    FAILED       = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def generate_idempotency_key() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EmailRequest:
    """
    An outbound email.

    Attributes
    ----------
    to : str
        Destination address.
    subject : str
    body : str
    idempotency_key : str
        Identifies one logical send. Generated when the caller omits it.
    """
    to: str
    subject: str
    body: str
    idempotency_key: str = field(default_factory=generate_idempotency_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class ProviderResult:
    """Success marker returned by a provider's send()."""
    success: bool
    provider: str
    message_id: Optional[str] = None


@dataclass(frozen=True)
class StatusRecord:
    """Ledger entry; replaced wholesale on every transition."""
    idempotency_key: str
    status: DeliveryStatus
    provider: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.provider:
            d["provider"] = self.provider
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class DispatchOutcome:
    """Terminal answer returned by submit() and by each drained request."""
    status: OutcomeStatus
    idempotency_key: str
    message: str = ""
    provider: Optional[str] = None
    original_status: Optional[StatusRecord] = None
    error: Optional[AllProvidersFailed] = None

    @classmethod
    def duplicate(cls, key: str, existing: StatusRecord) -> "DispatchOutcome":
        return cls(
            status=OutcomeStatus.DUPLICATE,
            idempotency_key=key,
            message="Email with this key already processed.",
            original_status=existing,
        )

    @classmethod
    def rate_limited(cls, key: str) -> "DispatchOutcome":
        return cls(
            status=OutcomeStatus.RATE_LIMITED,
            idempotency_key=key,
            message="Email has been queued and will be sent later.",
        )

    @classmethod
    def success(cls, key: str, provider: str) -> "DispatchOutcome":
        return cls(
            status=OutcomeStatus.SUCCESS,
            idempotency_key=key,
            message=f"Email sent via {provider}.",
            provider=provider,
        )

    @classmethod
    def failed(cls, key: str, error: AllProvidersFailed) -> "DispatchOutcome":
        return cls(
            status=OutcomeStatus.FAILED,
            idempotency_key=key,
            message=error.message,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "message": self.message,
        }
        if self.provider:
            d["provider"] = self.provider
        if self.original_status is not None:
            d["original_status"] = self.original_status.to_dict()
        if self.error is not None:
            d.update(self.error.to_dict())
        return d
