"""
WhatSend Sessions

Per-tenant protocol session lifecycle: state machine, registry, manager and
status projection.
"""

from whatsend.session.manager import SessionManager, SessionNotReadyError
from whatsend.session.registry import SessionRegistry
from whatsend.session.state_machine import Transition, handle_event
from whatsend.session.status import SessionStatus, StatusProjector

__all__ = [
    "SessionManager",
    "SessionNotReadyError",
    "SessionRegistry",
    "SessionStatus",
    "StatusProjector",
    "Transition",
    "handle_event",
]
