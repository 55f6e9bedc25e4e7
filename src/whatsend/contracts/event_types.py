"""
WhatSend Control Commands

Commands sent from the HTTP API / CLI to the worker process that owns the
sessions.
"""

from enum import Enum


class ControlCommand(str, Enum):
    """
    Command types on the control stream.

    - CONNECT: start (or resume) the tenant's session
    - DISCONNECT: tear the session down, optionally unlinking the device
    - ERASE: tear down with unlink, then delete all tenant data
    """

    CONNECT = "whatsapp_connect_requested"
    DISCONNECT = "whatsapp_disconnect_requested"
    ERASE = "whatsapp_tenant_erase_requested"

    def __str__(self) -> str:
        return self.value
