"""
WhatsApp Capability Base

Abstract interface for the multi-device protocol client.

A capability opens one session per tenant from stored credentials, reports
what happens on that session through a listener, and sends messages through
the returned handle. Implementations: Evolution API gateway, Stub (for
development and tests).
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


class ProviderError(Exception):
    """
    Error from the WhatsApp capability.

    retryable tells whether the same call may succeed later (network, 5xx)
    or not (4xx). It is informational: the delivery queue retries every
    failed attempt until the job's max_attempts, and only logs the flag.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


# =============================================================================
# Session events
# =============================================================================


@dataclass(frozen=True)
class PairingChallenge:
    """The phone has to scan/enter this code to link the session."""

    code: str


@dataclass(frozen=True)
class ConnectionOpened:
    """The session is authenticated and can send."""

    phone_number: str | None = None


@dataclass(frozen=True)
class ConnectionClosed:
    """
    The session went away.

    logged_out is True when the phone revoked the link; the credentials are
    dead and must not be reused.
    """

    reason: str = ""
    logged_out: bool = False


@dataclass(frozen=True)
class CredentialsChanged:
    """The protocol client rotated its key material; persist it."""

    credentials: dict[str, Any]


SessionEvent = PairingChallenge | ConnectionOpened | ConnectionClosed | CredentialsChanged
SessionListener = Callable[[SessionEvent], None]


@dataclass
class ProviderResponse:
    """
    Response from the capability after sending a message.
    """

    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class SessionHandle(ABC):
    """A live (or connecting) protocol session of one tenant."""

    tenant_id: str

    @abstractmethod
    async def send_text(self, to: str, text: str) -> ProviderResponse:
        """
        Send a text message.

        Args:
            to: Recipient phone number (digits, international format)
            text: Message text

        Returns:
            ProviderResponse with message ID if successful
        """
        ...

    @abstractmethod
    async def send_media(
        self,
        to: str,
        data: bytes,
        caption: str | None = None,
        mimetype: str | None = None,
    ) -> ProviderResponse:
        """
        Send an image/media message.

        Args:
            to: Recipient phone number
            data: Raw media bytes
            caption: Text shown under the media
            mimetype: Content type of the media (e.g. "image/jpeg")

        Returns:
            ProviderResponse with message ID if successful
        """
        ...

    async def logout(self) -> None:
        """Unlink the device remotely. Default: nothing to do."""
        return None

    @abstractmethod
    async def close(self) -> None:
        """Close the session locally, keeping credentials valid."""
        ...


class WhatsAppCapability(ABC):
    """
    Abstract interface for WhatsApp session providers.

    Implementations must:
    - Deliver session events to the listener (possibly from a background task)
    - Never block the caller of open() until the connection is established
    """

    @abstractmethod
    async def open(
        self,
        tenant_id: str,
        credentials: dict[str, Any],
        listener: SessionListener,
    ) -> SessionHandle:
        """
        Open a session.

        Args:
            tenant_id: Tenant that owns the session
            credentials: Stored credentials or a fresh identity
            listener: Called with every SessionEvent of this session

        Returns:
            Handle of the new session

        Raises:
            ProviderError: The session could not be started at all
        """
        ...

    async def aclose(self) -> None:
        """Release shared resources (HTTP clients, ...)."""
        return None
