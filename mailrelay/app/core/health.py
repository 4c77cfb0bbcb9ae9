"""
Health check aggregation — snapshot of dispatch subsystems.

Checks:
    • One component per provider, from its circuit breaker state
    • Delivery queue backlog
    • Idempotency ledger size (grows without bound; reported, never pruned)

Returns a structured health report suitable for:
    - Liveness/readiness probes in the host process
    - Periodic log lines
    - Monitoring dashboards
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from mailrelay.app.core.config import settings

if TYPE_CHECKING:
    from mailrelay.app.dispatch.dispatcher import EmailDispatcher


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def check_providers(dispatcher: "EmailDispatcher") -> List[ComponentHealth]:
    """One component per provider, graded by circuit state."""
    components = []
    for breaker in dispatcher.circuit_breakers:
        snapshot = breaker.to_dict()
        state = snapshot["state"]
        comp = ComponentHealth(name=f"provider:{breaker.name}", details=snapshot)
        if state == "open":
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "Circuit open; provider skipped"
        elif state == "half_open":
            comp.status = HealthStatus.DEGRADED
            comp.message = "Circuit half-open; awaiting trial result"
        else:
            comp.message = "Circuit closed"
        components.append(comp)
    return components


def check_queue(dispatcher: "EmailDispatcher") -> ComponentHealth:
    """Report the deferred-request backlog."""
    size = dispatcher.queue_size
    comp = ComponentHealth(name="delivery_queue", details={"size": size})
    comp.message = f"{size} request(s) waiting" if size else "Queue empty"
    if size >= dispatcher.config.rate_limit_max_requests:
        # More than a full window behind
        comp.status = HealthStatus.DEGRADED
    return comp


def check_ledger(dispatcher: "EmailDispatcher") -> ComponentHealth:
    """Report the number of idempotency keys held, and how many are unsettled."""
    entries = len(dispatcher.ledger)
    unsettled = dispatcher.ledger.unsettled()
    return ComponentHealth(
        name="status_ledger",
        message=f"{entries} key(s) tracked, {unsettled} not yet delivered or failed",
        details={"entries": entries, "unsettled": unsettled},
    )


def run_health_check(dispatcher: "EmailDispatcher") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    providers = check_providers(dispatcher)
    report.components.extend(providers)
    report.components.append(check_queue(dispatcher))
    report.components.append(check_ledger(dispatcher))

    # Aggregate status: no usable provider is fatal, anything else degrades
    if providers and all(c.status == HealthStatus.UNHEALTHY for c in providers):
        report.status = HealthStatus.UNHEALTHY
    elif any(c.status != HealthStatus.HEALTHY for c in report.components):
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
