from __future__ import annotations

from typing import Protocol

from mailrelay.app.dispatch.models import EmailRequest, ProviderResult


class EmailProvider(Protocol):
    """Protocol for delivery providers.

    Implementations return a ProviderResult with ``success=True`` when the
    message was accepted, and raise (preferably ProviderTransientFailure)
    when it was not. Latency and failure behaviour are provider-internal.
    """

    name: str

    async def send(self, request: EmailRequest) -> ProviderResult:
        ...


__all__ = ["EmailProvider"]
