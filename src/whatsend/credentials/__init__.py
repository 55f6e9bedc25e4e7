"""
WhatSend Credentials

Binary-safe codec and durable store for protocol credential material.
"""

from whatsend.credentials.codec import (
    CredentialCodec,
    CredentialDecodeError,
    fresh_credentials,
    is_registered,
)
from whatsend.credentials.store import CredentialStore

__all__ = [
    "CredentialCodec",
    "CredentialDecodeError",
    "CredentialStore",
    "fresh_credentials",
    "is_registered",
]
