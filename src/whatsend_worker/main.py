"""
WhatSend Worker Service

Owns every tenant's WhatsApp session and drains the delivery queue.

Loops (one asyncio event loop):
- Startup reconciliation of previously connected tenants
- Delivery worker (bounded concurrency + rate limit)
- Control stream consumer (connect / disconnect / erase commands)
- Per-tenant session owners (inside the session manager)

Run a single worker process per deployment: sessions live in memory here.
"""

import asyncio
import logging
import os
import signal
import socket

from notifycore.db import get_sessionmaker
from notifycore.logging import setup_logging
from notifycore.redis import get_redis_client
from notifycore.settings import Settings, get_settings

from whatsend.credentials import CredentialCodec, CredentialStore
from whatsend.delivery import DeliveryQueue, DeliveryWorker, MediaFetcher, RollingRateLimiter
from whatsend.providers.base import WhatsAppCapability
from whatsend.providers.evolution import EvolutionWhatsAppCapability
from whatsend.providers.stub import StubWhatsAppCapability
from whatsend.service.billing import BillingService
from whatsend.service.control_handler import ControlHandler
from whatsend.service.erasure import ErasureService
from whatsend.service.reconciliation import Reconciler
from whatsend.session import SessionManager, SessionRegistry, StatusProjector
from whatsend.streams import ControlConsumer, ensure_control_stream

logger = logging.getLogger(__name__)

CONTROL_RECLAIM_INTERVAL_SEC = 60
CONTROL_RECLAIM_IDLE_MS = 60000


def get_capability(settings: Settings) -> WhatsAppCapability:
    """Get the configured WhatsApp capability."""
    if settings.WHATSAPP_PROVIDER == "evolution":
        if not settings.EVOLUTION_API_URL:
            raise RuntimeError("EVOLUTION_API_URL is required for the evolution provider")
        return EvolutionWhatsAppCapability(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
            keepalive_interval=settings.KEEPALIVE_INTERVAL_SECONDS,
        )
    return StubWhatsAppCapability()


def get_consumer_name(settings: Settings) -> str:
    return settings.CONTROL_CONSUMER_NAME or f"whatsend-worker-{socket.gethostname()}-{os.getpid()}"


async def run_control_loop(
    consumer: ControlConsumer,
    handler: ControlHandler,
    stopping: asyncio.Event,
    block_ms: int = 1000,
) -> None:
    """Apply control commands until shutdown is requested."""
    logger.info(f"Starting control consumer (consumer={consumer.consumer_name})")
    loop = asyncio.get_running_loop()
    next_reclaim = loop.time() + CONTROL_RECLAIM_INTERVAL_SEC

    while not stopping.is_set():
        try:
            messages = await asyncio.to_thread(consumer.read_commands, 10, block_ms)

            if loop.time() >= next_reclaim:
                next_reclaim = loop.time() + CONTROL_RECLAIM_INTERVAL_SEC
                reclaimed = await asyncio.to_thread(consumer.reclaim_pending, CONTROL_RECLAIM_IDLE_MS)
                if reclaimed:
                    logger.info(f"Reclaimed {len(reclaimed)} control commands")
                messages.extend(reclaimed)

            for msg_id, envelope in messages:
                try:
                    result = await handler.handle_envelope(envelope)
                    consumer.ack(msg_id)
                    logger.debug("Processed control command", extra={"msg_id": msg_id, "result": result})
                except Exception as e:
                    logger.error(f"Failed to process control command {msg_id}: {e}", exc_info=True)
                    # Don't ACK - will be reclaimed

        except Exception as e:
            logger.error(f"Error in control loop: {e}", exc_info=True)
            await asyncio.sleep(1)

    logger.info("Control consumer stopped")


async def main_loop() -> None:
    """Main worker loop."""
    settings = get_settings()
    session_factory = get_sessionmaker()
    redis_client = get_redis_client()

    capability = get_capability(settings)
    projector = StatusProjector(session_factory)
    sessions = SessionManager(
        capability,
        CredentialStore(session_factory, CredentialCodec(settings.CREDENTIALS_ENCRYPTION_KEY)),
        projector,
        registry=SessionRegistry(),
        reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
        ready_timeout=settings.CONNECT_READY_TIMEOUT_SECONDS,
    )
    billing = BillingService(session_factory)
    erasure = ErasureService(
        session_factory,
        history_days=settings.RETENTION_HISTORY_DAYS,
        connection_log_days=settings.RETENTION_CONNECTION_LOG_DAYS,
        queue_days=settings.RETENTION_QUEUE_DAYS,
    )
    media = MediaFetcher(timeout=settings.MEDIA_FETCH_TIMEOUT_SECONDS)
    consumer_name = get_consumer_name(settings)

    worker = DeliveryWorker(
        DeliveryQueue(
            session_factory,
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            backoff_base=settings.DELIVERY_BACKOFF_BASE_SECONDS,
        ),
        sessions,
        billing,
        media,
        RollingRateLimiter(settings.DELIVERY_RATE_LIMIT, settings.DELIVERY_RATE_PERIOD_SECONDS),
        worker_id=consumer_name,
        concurrency=settings.DELIVERY_CONCURRENCY,
        poll_interval=settings.DELIVERY_POLL_INTERVAL_SECONDS,
        reclaim_idle=settings.DELIVERY_RECLAIM_IDLE_SECONDS,
        enforce_quota=settings.DELIVERY_ENFORCE_QUOTA,
    )

    ensure_control_stream(redis_client)
    consumer = ControlConsumer(redis_client, consumer_name)
    handler = ControlHandler(sessions, erasure)

    stopping = asyncio.Event()

    def request_shutdown(signame: str) -> None:
        logger.info(f"Received {signame}, requesting shutdown...")
        stopping.set()
        worker.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_shutdown, sig.name)

    logger.info(
        f"Starting WhatSend worker "
        f"(consumer={consumer_name}, provider={settings.WHATSAPP_PROVIDER})"
    )

    reconcile_task = asyncio.create_task(
        Reconciler(sessions, projector, session_factory, delay=settings.RECONCILE_DELAY_SECONDS).run(),
        name="reconciliation",
    )
    worker_task = asyncio.create_task(worker.run(), name="delivery-worker")
    control_task = asyncio.create_task(
        run_control_loop(consumer, handler, stopping, block_ms=settings.CONTROL_BLOCK_MS),
        name="control-consumer",
    )

    await stopping.wait()

    # In-flight sends finish before sessions are closed
    await worker_task
    await control_task
    if not reconcile_task.done():
        reconcile_task.cancel()
    await asyncio.gather(reconcile_task, return_exceptions=True)

    await sessions.shutdown()
    await capability.aclose()
    await media.close()

    logger.info("WhatSend worker shut down gracefully")


def main():
    """Entry point."""
    setup_logging()
    logger.info("WhatSend worker starting...")
    asyncio.run(main_loop())


if __name__ == "__main__":
    main()
