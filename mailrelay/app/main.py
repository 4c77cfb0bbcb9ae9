"""
Demonstration entry point.

Run with:
    python -m mailrelay.app.main

Walks through a successful send, an idempotent replay, and a burst that
overruns the rate limiter, then waits while the periodic drain replays the
queued emails.
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

from mailrelay.app.core.config import settings
from mailrelay.app.core.logging_config import get_logger, setup_logging
from mailrelay.app.dispatch.dispatcher import EmailDispatcher
from mailrelay.app.dispatch.models import DispatchOutcome, EmailRequest
from mailrelay.app.dispatch.providers.simulated import ProviderA, ProviderB

setup_logging()
logger = get_logger(__name__)

SAMPLE = {
    "to": "recipient@example.com",
    "subject": "Your Daily Update",
    "body": "Hello, this is your daily update.",
}


async def send_and_log(
    dispatcher: EmailDispatcher,
    to: str,
    subject: str = SAMPLE["subject"],
    idempotency_key: Optional[str] = None,
) -> DispatchOutcome:
    fields = {"to": to, "subject": subject, "body": SAMPLE["body"]}
    if idempotency_key:
        fields["idempotency_key"] = idempotency_key
    request = EmailRequest(**fields)

    logger.info("--> Sending email to %s with key: %s", request.to, request.idempotency_key)
    outcome = await dispatcher.submit(request)
    logger.info(
        "<-- Final status for key %s: %s",
        request.idempotency_key, json.dumps(outcome.to_dict(), default=str),
    )
    return outcome


async def run_demo() -> None:
    logger.info("Starting %s v%s [%s]", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)

    dispatcher = EmailDispatcher([ProviderA(), ProviderB()])
    await dispatcher.start()

    try:
        logger.info("--- 1. Successful send ---")
        await send_and_log(dispatcher, "success@example.com")

        logger.info("--- 2. Idempotency check ---")
        key = "idempotent-test-key-123"
        await send_and_log(dispatcher, "idempotent1@example.com", idempotency_key=key)
        await send_and_log(dispatcher, "idempotent2@example.com", idempotency_key=key)

        logger.info("--- 3. Rate limiting and queueing ---")
        await asyncio.gather(*(
            send_and_log(dispatcher, f"user{i}@ratelimit.com", subject=f"Email {i}")
            for i in range(1, 16)
        ))

        # Give the drain a full rate-limit window plus one cycle to catch up
        wait = settings.RATE_LIMIT_INTERVAL + settings.QUEUE_PROCESS_INTERVAL
        logger.info("--- Waiting %.0fs for the queue to drain ---", wait)
        await asyncio.sleep(wait)

        logger.info("Health: %s", json.dumps(dispatcher.health()))
    finally:
        await dispatcher.stop()
        logger.info("--- Demonstration finished ---")


if __name__ == "__main__":
    asyncio.run(run_demo())
