"""
WhatSend API Service

FastAPI app for the storefront admin UI and order webhooks.

Responsibilities:
- Enqueue notification messages (quota checked up front)
- Expose connection status, pairing code and delivery history
- Publish connect / disconnect / erase commands to the worker
- Tenant erasure and customer redaction

Session work never happens here: the worker owns every session.
"""

import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from notifycore.logging import setup_logging
from notifycore.redis import get_redis_client
from notifycore.settings import get_settings

from whatsend.contracts.payloads import (
    CustomerRedactPayload,
    DisconnectPayload,
    EnqueueMessagePayload,
    EnqueueResponse,
)
from whatsend.delivery.queue import DeliveryQueue
from whatsend.service.billing import BillingService
from whatsend.service.erasure import ErasureService
from whatsend.session.status import StatusProjector
from whatsend.streams import ControlProducer, ensure_control_stream

setup_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(
    title="WhatSend API",
    description="WhatsApp order notifications for storefronts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies (overridable in tests)

def get_queue() -> DeliveryQueue:
    return DeliveryQueue(
        max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
        backoff_base=settings.DELIVERY_BACKOFF_BASE_SECONDS,
    )


def get_billing() -> BillingService:
    return BillingService()


def get_projector() -> StatusProjector:
    return StatusProjector()


def get_erasure() -> ErasureService:
    return ErasureService(
        history_days=settings.RETENTION_HISTORY_DAYS,
        connection_log_days=settings.RETENTION_CONNECTION_LOG_DAYS,
        queue_days=settings.RETENTION_QUEUE_DAYS,
    )


def get_producer() -> ControlProducer:
    return ControlProducer(get_redis_client(), source="api")


@app.on_event("startup")
async def startup():
    """Ensure the control stream exists on startup."""
    try:
        ensure_control_stream(get_redis_client())
        logger.info("WhatSend API started")
    except Exception as e:
        logger.error(f"Failed to initialize control stream: {e}")
        raise


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "whatsend-api"}


@app.post("/tenants/{tenant_id}/whatsapp/connect", status_code=202)
def connect(tenant_id: str, producer: ControlProducer = Depends(get_producer)):
    """Start connecting; poll the status endpoint for the pairing code."""
    msg_id = producer.publish_connect(tenant_id)
    return {"status": "accepted", "command": "connect", "message_id": msg_id}


@app.post("/tenants/{tenant_id}/whatsapp/disconnect", status_code=202)
def disconnect(
    tenant_id: str,
    payload: DisconnectPayload | None = None,
    producer: ControlProducer = Depends(get_producer),
):
    wipe = payload.wipe_credentials if payload else True
    msg_id = producer.publish_disconnect(tenant_id, wipe_credentials=wipe)
    return {"status": "accepted", "command": "disconnect", "message_id": msg_id}


@app.get("/tenants/{tenant_id}/whatsapp/status")
def whatsapp_status(tenant_id: str, projector: StatusProjector = Depends(get_projector)):
    return projector.get_status(tenant_id).to_dict()


@app.post("/tenants/{tenant_id}/messages", status_code=201, response_model=EnqueueResponse)
def enqueue_message(
    tenant_id: str,
    payload: EnqueueMessagePayload,
    queue: DeliveryQueue = Depends(get_queue),
    billing: BillingService = Depends(get_billing),
):
    """
    Queue a message for delivery.

    Rejected with 402 when the tenant's plan does not allow more messages.
    """
    decision = billing.can_send(tenant_id)
    if not decision.allowed:
        logger.info("Enqueue rejected by quota", extra={"tenant_id": tenant_id, "reason": decision.reason})
        raise HTTPException(status_code=402, detail=decision.reason)

    try:
        job_id = queue.enqueue(
            tenant_id,
            payload.recipient,
            payload.body,
            category=payload.category.value,
            priority=payload.priority,
            not_before=payload.not_before,
            media_url=payload.media_url,
            recipient_name=payload.recipient_name,
            order_id=payload.order_id,
            order_number=payload.order_number,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return EnqueueResponse(job_id=str(job_id))


@app.get("/tenants/{tenant_id}/messages/history")
def message_history(
    tenant_id: str,
    status: str | None = Query(None, description="sent or failed"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    queue: DeliveryQueue = Depends(get_queue),
):
    records = queue.history(tenant_id, status=status, limit=limit, offset=offset)
    return {"tenant_id": tenant_id, "records": records, "count": len(records)}


@app.get("/tenants/{tenant_id}/billing")
def billing_status(tenant_id: str, billing: BillingService = Depends(get_billing)):
    return billing.get_status(tenant_id).to_dict()


@app.delete("/tenants/{tenant_id}")
def erase_tenant(
    tenant_id: str,
    erasure: ErasureService = Depends(get_erasure),
    producer: ControlProducer = Depends(get_producer),
):
    """
    Erase everything stored for a tenant (app uninstalled / shop redact).

    The worker also drops the live session and erases once more afterwards.
    """
    counts = erasure.erase_tenant_data(tenant_id)
    producer.publish_erase(tenant_id)
    return {"status": "erased", "tenant_id": tenant_id, "deleted": counts}


@app.post("/tenants/{tenant_id}/customers/redact")
def redact_customer(
    tenant_id: str,
    payload: CustomerRedactPayload,
    erasure: ErasureService = Depends(get_erasure),
):
    if not payload.phone and not payload.order_ids:
        raise HTTPException(status_code=422, detail="phone or order_ids is required")

    counts = erasure.redact_customer(tenant_id, phone=payload.phone, order_ids=payload.order_ids)
    return {"status": "redacted", "tenant_id": tenant_id, "deleted": counts}


def main():
    """Entry point."""
    import uvicorn

    uvicorn.run("whatsend_api.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
