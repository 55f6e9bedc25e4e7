"""
Outbound Delivery Worker

Claims due jobs from the delivery queue and sends them through the tenant's
session.

Features:
- Bounded concurrency (jobs in flight per process)
- Rolling rate limit on claims
- Media download with text fallback
- Retry with exponential backoff (handled by the queue)
- Reclaim of jobs abandoned by crashed workers
- Graceful shutdown: stop claiming, finish in-flight sends
"""

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from whatsend.delivery.media import MediaFetcher, MediaFetchError
from whatsend.delivery.queue import DeliveryQueue, JobSnapshot
from whatsend.delivery.rate_limit import RollingRateLimiter
from whatsend.persistence.models import JobStatus
from whatsend.providers.base import ProviderError, ProviderResponse, SessionHandle
from whatsend.service.billing import BillingService
from whatsend.session.manager import SessionManager

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """
    Consumes the delivery queue.

    Args:
        queue: Delivery queue to claim from
        sessions: Session manager supplying connected handles
        billing: Quota check / usage counting (None disables both)
        media: Media downloader
        limiter: Claim rate limiter
        worker_id: Name recorded on claimed jobs
        concurrency: Max jobs in flight
        poll_interval: Seconds to wait when nothing is due
        reclaim_idle: Seconds a job may stay processing before it is reclaimed
        ready_timeout: Wait for a connected session (None = manager default)
        enforce_quota: Check billing.can_send() before each send
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        sessions: SessionManager,
        billing: BillingService | None,
        media: MediaFetcher,
        limiter: RollingRateLimiter,
        worker_id: str,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        reclaim_idle: float = 300.0,
        ready_timeout: float | None = None,
        enforce_quota: bool = True,
    ):
        self.queue = queue
        self.sessions = sessions
        self.billing = billing
        self.media = media
        self.limiter = limiter
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.reclaim_idle = reclaim_idle
        self.ready_timeout = ready_timeout
        self.enforce_quota = enforce_quota
        self._stopping = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stop(self) -> None:
        """Stop claiming; run() returns once in-flight jobs finish."""
        self._stopping.set()

    async def run(self) -> None:
        logger.info(
            f"Starting delivery worker "
            f"(worker={self.worker_id}, concurrency={self.concurrency}, "
            f"rate={self.limiter.limit}/{self.limiter.period}s)"
        )

        loop = asyncio.get_running_loop()
        next_reclaim = loop.time()

        while not self._stopping.is_set():
            if loop.time() >= next_reclaim:
                self._reclaim()
                next_reclaim = loop.time() + max(self.reclaim_idle / 2, self.poll_interval)

            if len(self._in_flight) >= self.concurrency:
                await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                continue

            await self.limiter.acquire()
            if self._stopping.is_set():
                break

            try:
                job = self.queue.claim_next(self.worker_id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to claim delivery job: {e}", exc_info=True)
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            task = asyncio.create_task(self._run_job(job), name=f"deliver-{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight deliveries")
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        logger.info("Delivery worker stopped")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), self.poll_interval)
        except asyncio.TimeoutError:
            pass

    def _reclaim(self) -> None:
        try:
            self.queue.reclaim_stale(self.reclaim_idle)
        except SQLAlchemyError as e:
            logger.error(f"Failed to reclaim stale jobs: {e}", exc_info=True)

    async def _run_job(self, job: JobSnapshot) -> None:
        try:
            await self.process_job(job)
        except Exception as e:
            # Job stays in processing and is picked up again by the reclaim pass
            logger.error(
                f"Failed to settle delivery job: {e}",
                extra={"job_id": str(job.id), "tenant_id": job.tenant_id},
                exc_info=True,
            )

    async def process_job(self, job: JobSnapshot) -> str:
        """
        Deliver one claimed job and record the outcome.

        Returns:
            "sent", "denied", "retry" or "failed"
        """
        extra = {
            "job_id": str(job.id),
            "tenant_id": job.tenant_id,
            "category": job.category,
            "attempt": job.attempt_count + 1,
        }

        try:
            if self.enforce_quota and self.billing is not None:
                decision = self.billing.can_send(job.tenant_id, 1)
                if not decision.allowed:
                    self.queue.mark_denied(job.id, decision.reason or "Not allowed to send")
                    logger.warning(f"Delivery denied: {decision.reason}", extra=extra)
                    return "denied"

            handle = await self.sessions.ensure_connected(job.tenant_id, timeout=self.ready_timeout)
            response = await self._send(handle, job)
            if not response.success:
                raise ProviderError(
                    response.error_message or "Send failed",
                    code=response.error_code,
                    details=response.raw_response,
                )

        except Exception as e:
            error = str(e) or type(e).__name__
            if isinstance(e, ProviderError):
                extra = {**extra, "error_code": e.code, "retryable": e.retryable}
            outcome = self.queue.record_failure(job.id, error)
            if outcome.status == JobStatus.FAILED.value:
                logger.error(f"Delivery failed permanently: {error}", extra=extra)
                return "failed"
            logger.warning(
                f"Delivery failed, retrying at {outcome.not_before.isoformat()}: {error}",
                extra=extra,
            )
            return "retry"

        self.queue.record_success(job.id, response.message_id)
        logger.info("Delivered message", extra={**extra, "message_id": response.message_id})

        if self.billing is not None:
            try:
                self.billing.increment_usage(job.tenant_id, 1)
            except SQLAlchemyError as e:
                logger.error(f"Failed to count message usage: {e}", extra=extra, exc_info=True)

        return "sent"

    async def _send(self, handle: SessionHandle, job: JobSnapshot) -> ProviderResponse:
        if job.media_url:
            try:
                media = await self.media.fetch(job.media_url)
            except MediaFetchError as e:
                logger.warning(
                    f"Media unavailable, sending text only: {e}",
                    extra={"job_id": str(job.id), "media_url": job.media_url},
                )
            else:
                return await handle.send_media(job.recipient, media.data, caption=job.body, mimetype=media.mimetype)

        return await handle.send_text(job.recipient, job.body)
