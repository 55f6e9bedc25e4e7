"""
WhatSend Contracts

Control commands, their envelope, and payload models.
"""

from whatsend.contracts.envelope import ControlEnvelope
from whatsend.contracts.event_types import ControlCommand
from whatsend.contracts.payloads import (
    CustomerRedactPayload,
    DisconnectPayload,
    EnqueueMessagePayload,
    EnqueueResponse,
)

__all__ = [
    "ControlCommand",
    "ControlEnvelope",
    "CustomerRedactPayload",
    "DisconnectPayload",
    "EnqueueMessagePayload",
    "EnqueueResponse",
]
