"""
WhatsApp Capabilities

Session providers for the multi-device protocol.
Supports the Evolution API gateway (production) and Stub (development).
"""

from whatsend.providers.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    PairingChallenge,
    ProviderError,
    ProviderResponse,
    SessionEvent,
    SessionHandle,
    SessionListener,
    WhatsAppCapability,
)

__all__ = [
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsChanged",
    "PairingChallenge",
    "ProviderError",
    "ProviderResponse",
    "SessionEvent",
    "SessionHandle",
    "SessionListener",
    "WhatsAppCapability",
]
