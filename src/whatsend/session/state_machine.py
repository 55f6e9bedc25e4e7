"""
Session State Machine

Pure transition function of a tenant's session lifecycle. It decides the next
state and the effects to run; the session manager runs them.

    disconnected/error --connect--> connecting --code--> awaiting_pairing
    connecting/awaiting_pairing --opened--> connected
    connecting/awaiting_pairing/connected --closed--> error (reconnect later)
                                          --logged out--> disconnected (wipe)
    any --disconnect--> disconnected
"""

from dataclasses import dataclass, field
from typing import Any

from whatsend.persistence.models import ConnectionState
from whatsend.providers.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    PairingChallenge,
)

# =============================================================================
# Control events (capability events come from providers.base)
# =============================================================================


@dataclass(frozen=True)
class ConnectRequested:
    pass


@dataclass(frozen=True)
class DisconnectRequested:
    wipe_credentials: bool = True


@dataclass(frozen=True)
class ReconnectDue:
    pass


@dataclass(frozen=True)
class OpenFailed:
    error: str


# =============================================================================
# Effects
# =============================================================================


@dataclass(frozen=True)
class OpenSession:
    """Load credentials and open a new session with the capability."""


@dataclass(frozen=True)
class CloseSession:
    logout: bool = False


@dataclass(frozen=True)
class PersistCredentials:
    credentials: dict[str, Any] = field(hash=False, compare=False)


@dataclass(frozen=True)
class WipeCredentials:
    pass


@dataclass(frozen=True)
class ProjectStatus:
    state: ConnectionState
    pairing_code: str | None = None
    error: str | None = None
    phone_number: str | None = None


@dataclass(frozen=True)
class ScheduleReconnect:
    delay: float


@dataclass(frozen=True)
class CancelReconnect:
    pass


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    effects: tuple = ()


ACTIVE_STATES = frozenset({
    ConnectionState.CONNECTING,
    ConnectionState.AWAITING_PAIRING,
    ConnectionState.CONNECTED,
})


def _start_connecting() -> Transition:
    return Transition(
        ConnectionState.CONNECTING,
        (CancelReconnect(), ProjectStatus(ConnectionState.CONNECTING), OpenSession()),
    )


def handle_event(state: ConnectionState, event: Any, reconnect_delay: float = 3.0) -> Transition:
    """
    Compute the transition for ``event`` in ``state``.

    Events that make no sense in the current state leave it unchanged and
    produce no effects.
    """
    unchanged = Transition(state)

    if isinstance(event, ConnectRequested):
        if state in ACTIVE_STATES:
            return unchanged
        return _start_connecting()

    if isinstance(event, ReconnectDue):
        if state != ConnectionState.ERROR:
            return unchanged
        return _start_connecting()

    if isinstance(event, DisconnectRequested):
        effects: list = [CancelReconnect(), CloseSession(logout=event.wipe_credentials)]
        if event.wipe_credentials:
            effects.append(WipeCredentials())
        effects.append(ProjectStatus(ConnectionState.DISCONNECTED))
        return Transition(ConnectionState.DISCONNECTED, tuple(effects))

    if isinstance(event, CredentialsChanged):
        return Transition(state, (PersistCredentials(event.credentials),))

    if isinstance(event, PairingChallenge):
        if state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
            return unchanged
        return Transition(
            ConnectionState.AWAITING_PAIRING,
            (ProjectStatus(ConnectionState.AWAITING_PAIRING, pairing_code=event.code),),
        )

    if isinstance(event, ConnectionOpened):
        if state in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTED):
            return unchanged
        return Transition(
            ConnectionState.CONNECTED,
            (CancelReconnect(), ProjectStatus(ConnectionState.CONNECTED, phone_number=event.phone_number)),
        )

    if isinstance(event, ConnectionClosed):
        if state not in ACTIVE_STATES:
            return unchanged
        if event.logged_out:
            return Transition(
                ConnectionState.DISCONNECTED,
                (
                    CancelReconnect(),
                    CloseSession(logout=False),
                    WipeCredentials(),
                    ProjectStatus(ConnectionState.DISCONNECTED, error=event.reason or "logged out"),
                ),
            )
        return Transition(
            ConnectionState.ERROR,
            (
                CloseSession(logout=False),
                ProjectStatus(ConnectionState.ERROR, error=event.reason or "connection closed"),
                ScheduleReconnect(reconnect_delay),
            ),
        )

    if isinstance(event, OpenFailed):
        if state != ConnectionState.CONNECTING:
            return unchanged
        return Transition(
            ConnectionState.ERROR,
            (ProjectStatus(ConnectionState.ERROR, error=event.error),),
        )

    return unchanged
