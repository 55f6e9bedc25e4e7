"""
WhatSend Redis Streams

Producer and consumer for session control commands.
"""

from whatsend.streams.consumer import ControlConsumer
from whatsend.streams.groups import CONTROL_GROUP, CONTROL_STREAM, ensure_control_stream
from whatsend.streams.producer import ControlProducer

__all__ = [
    "CONTROL_GROUP",
    "CONTROL_STREAM",
    "ControlConsumer",
    "ControlProducer",
    "ensure_control_stream",
]
