"""
providers — Interchangeable email delivery backends.

Each provider exposes:
    name                       — stable identifier used in outcomes and logs
    async send(request)        → ProviderResult, raising on failure

Providers are stateless with respect to dispatch policy. Retry, circuit
breaking and fallback live in the dispatcher.
"""
