"""
simulated.py — Mock providers for local development and the demo driver.

    Provider     Failure rate (default)     Latency
    ─────────    ──────────────────────     ────────────
    ProviderA    PROVIDER_A_FAILURE_RATE    50–100 ms
    ProviderB    PROVIDER_B_FAILURE_RATE    70–150 ms

ProviderA is the primary (cheaper, flakier); ProviderB is the fallback.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Optional, Tuple

from mailrelay.app.core.config import settings
from mailrelay.app.core.errors import ProviderTransientFailure
from mailrelay.app.dispatch.models import EmailRequest, ProviderResult

logger = logging.getLogger(__name__)


class SimulatedProvider:
    """
    Provider that sleeps for a random latency and fails at random.

    Parameters
    ----------
    name : str
    failure_rate : float
        Probability in [0, 1] that a send raises.
    latency_seconds : (float, float)
        Uniform range of simulated network delay.
    rng : random.Random, optional
        Seedable source of randomness.
    """

    def __init__(
        self,
        name: str,
        failure_rate: float,
        latency_seconds: Tuple[float, float] = (0.05, 0.1),
        *,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be within [0, 1], got {failure_rate}")
        self.name = name
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self._rng = rng or random.Random()

    async def send(self, request: EmailRequest) -> ProviderResult:
        logger.info("[%s] Attempting to send email to %s", self.name, request.to)

        low, high = self.latency_seconds
        await asyncio.sleep(self._rng.uniform(low, high))

        # random() is in [0, 1), so a rate of 0 never fails and 1 always does
        if self._rng.random() < self.failure_rate:
            logger.warning("[%s] FAILED to send email to %s", self.name, request.to)
            raise ProviderTransientFailure(self.name, "simulated delivery failure")

        logger.info("[%s] Successfully sent email to %s", self.name, request.to)
        return ProviderResult(
            success=True,
            provider=self.name,
            message_id=f"{self.name.lower()}-{uuid.uuid4().hex[:12]}",
        )


class ProviderA(SimulatedProvider):
    def __init__(self, failure_rate: Optional[float] = None, **kwargs):
        super().__init__(
            "ProviderA",
            settings.PROVIDER_A_FAILURE_RATE if failure_rate is None else failure_rate,
            (0.05, 0.1),
            **kwargs,
        )


class ProviderB(SimulatedProvider):
    def __init__(self, failure_rate: Optional[float] = None, **kwargs):
        super().__init__(
            "ProviderB",
            settings.PROVIDER_B_FAILURE_RATE if failure_rate is None else failure_rate,
            (0.07, 0.15),
            **kwargs,
        )
