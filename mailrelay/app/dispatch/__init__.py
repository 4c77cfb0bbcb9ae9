"""
dispatch — Idempotent, rate-limited, fault-tolerant email dispatch.

Sub-modules:
    providers/       — Interchangeable delivery backends
    dispatcher       — Core orchestration: idempotency, retry, fallback, drain
    rate_limiter     — Sliding-window admission control
    circuit_breaker  — Per-provider health gate
    delivery_queue   — FIFO for rate-limited requests
    ledger           — Idempotency key → status record
    models           — Data structures shared across the system
"""
