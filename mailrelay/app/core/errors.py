"""
Centralised error handling — exception hierarchy.

Provides:
    • Domain-specific exception classes
    • Consistent dict error format (for outcomes and logs)

Only AllProvidersFailed ever reaches a caller, and then only as the error
attached to a ``failed`` outcome. Transient failures and exhausted providers
are absorbed by the retry loop and the fallback walk.

Usage:
    from mailrelay.app.core.errors import (
        MailRelayError,
        ProviderTransientFailure,
        ProviderExhausted,
        AllProvidersFailed,
    )

    raise ProviderTransientFailure("ProviderA", "SMTP 421 service not available")
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class MailRelayError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Consistent error body: ``{"error": {"code", "message", "details"}}``."""
        body: Dict[str, Any] = {
            "error": {
                "code": self.error_code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details
        return body


class ConfigurationError(MailRelayError):
    """Dispatcher was wired with an unusable setup."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )


class ProviderTransientFailure(MailRelayError):
    """A single send attempt against a provider failed."""

    def __init__(self, provider: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Provider '{provider}' failed: {message}",
            error_code="PROVIDER_TRANSIENT_FAILURE",
            details={"provider": provider, **details},
        )
        self.provider = provider


class ProviderExhausted(MailRelayError):
    """A provider's full retry budget was spent without a success."""

    def __init__(
        self,
        provider: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        reason = str(last_error) if last_error else "unknown error"
        super().__init__(
            message=(
                f"Provider {provider} failed after {attempts} attempts. "
                f"Last error: {reason}"
            ),
            error_code="PROVIDER_EXHAUSTED",
            details={"provider": provider, "attempts": attempts, "last_error": reason},
        )
        self.provider = provider
        self.attempts = attempts
        self.last_error = last_error


class AllProvidersFailed(MailRelayError):
    """Every provider was exhausted or skipped with an open circuit."""

    def __init__(self, idempotency_key: str, failures: List[str]):
        super().__init__(
            message="All providers failed to send the email.",
            error_code="ALL_PROVIDERS_FAILED",
            details={"idempotency_key": idempotency_key, "failures": list(failures)},
        )
        self.idempotency_key = idempotency_key
        self.failures = list(failures)
