"""
WhatSend Payload Models

Pydantic models for API request bodies and control command payloads.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from whatsend.persistence.models import MessageCategory


class EnqueueMessagePayload(BaseModel):
    """A message a producer (order webhook, campaign, UI) wants delivered."""

    recipient: str = Field(..., min_length=5, description="Customer phone number")
    body: str = Field(..., min_length=1, description="Message text (caption when media is sent)")
    category: MessageCategory = Field(MessageCategory.MANUAL, description="Notification kind")
    priority: int = Field(10, ge=0, le=100, description="Lower is more urgent")
    not_before: datetime | None = Field(None, description="Do not send before this time (UTC)")
    media_url: str | None = Field(None, description="Image to send with the body as caption")
    recipient_name: str | None = Field(None, description="Customer name")
    order_id: str | None = Field(None, description="Order the message is about")
    order_number: str | None = Field(None, description="Human readable order number")


class DisconnectPayload(BaseModel):
    """Payload of DISCONNECT."""

    wipe_credentials: bool = Field(True, description="Unlink the device and forget credentials")


class CustomerRedactPayload(BaseModel):
    """Customer data erasure request."""

    phone: str | None = Field(None, description="Customer phone number")
    order_ids: list[str] = Field(default_factory=list, description="Orders to redact")


class EnqueueResponse(BaseModel):
    job_id: str
    status: str = "pending"
