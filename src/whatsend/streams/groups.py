"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging

import redis

from notifycore.redis import ensure_stream_group

logger = logging.getLogger(__name__)

# Commands from the API / CLI to the session-owning worker
CONTROL_STREAM = "whatsend:control"
CONTROL_GROUP = "whatsend-sessions"
CONTROL_STREAM_MAX_LEN = 10000


def ensure_control_stream(client: redis.Redis) -> None:
    """
    Ensure the control stream and its consumer group exist.

    Should be called on startup by the API and the worker.
    """
    if ensure_stream_group(client, CONTROL_STREAM, CONTROL_GROUP, start_id="0"):
        logger.info(f"Created consumer group '{CONTROL_GROUP}' for stream '{CONTROL_STREAM}'")
    else:
        logger.debug(f"Consumer group '{CONTROL_GROUP}' already exists for '{CONTROL_STREAM}'")


def get_pending_count(client: redis.Redis, stream_name: str = CONTROL_STREAM, group_name: str = CONTROL_GROUP) -> int:
    """Get count of pending (unacknowledged) messages in a group."""
    try:
        info = client.xpending(stream_name, group_name)
        return info.get("pending", 0) if info else 0
    except redis.ResponseError:
        return 0
