"""
Control Stream Consumer

Consumes control commands from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis

from whatsend.contracts.envelope import ControlEnvelope
from whatsend.streams.groups import CONTROL_GROUP, CONTROL_STREAM

logger = logging.getLogger(__name__)


class ControlConsumer:
    """
    Consumer for reading control commands.

    Uses XREADGROUP for consumer group support and reliable delivery.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_name: str,
        group_name: str = CONTROL_GROUP,
        stream_name: str = CONTROL_STREAM,
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name
        self.stream_name = stream_name

    def read_commands(
        self,
        count: int = 10,
        block_ms: int = 1000,
    ) -> list[tuple[str, ControlEnvelope]]:
        """
        Read new commands.

        Unparseable entries are acknowledged right away so they cannot block
        the group.

        Returns:
            List of (message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {self.stream_name: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {self.stream_name}")
            raise

        if not result:
            return []

        return self._parse_entries(
            entry for _stream, entries in result for entry in entries
        )

    def ack(self, message_id: str) -> int:
        """
        Acknowledge a command as processed.

        Returns:
            Number of messages acknowledged (0 or 1)
        """
        return self.redis.xack(self.stream_name, self.group_name, message_id)

    def get_pending(
        self,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[dict[str, Any]]:
        """
        Get pending commands that have been idle too long.

        Returns:
            List of pending message info dicts
        """
        try:
            pending_info = self.redis.xpending(self.stream_name, self.group_name)
            if not pending_info or pending_info.get("pending", 0) == 0:
                return []

            pending_range = self.redis.xpending_range(
                self.stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )
        except redis.ResponseError:
            return []

        return [
            {
                "message_id": entry["message_id"],
                "consumer": entry["consumer"],
                "idle_ms": entry["time_since_delivered"],
                "delivery_count": entry["times_delivered"],
            }
            for entry in pending_range
            if entry.get("time_since_delivered", 0) >= min_idle_ms
        ]

    def reclaim_pending(
        self,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, ControlEnvelope]]:
        """
        Claim commands left unacknowledged by a dead consumer.

        Returns:
            List of (message_id, envelope) tuples
        """
        pending = self.get_pending(min_idle_ms, count)
        if not pending:
            return []

        try:
            result = self.redis.xclaim(
                self.stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_ms,
                [p["message_id"] for p in pending],
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to claim commands: {e}")
            return []

        return self._parse_entries(result)

    def _parse_entries(self, entries) -> list[tuple[str, ControlEnvelope]]:
        messages = []
        for msg_id, data in entries:
            try:
                messages.append((msg_id, ControlEnvelope.from_stream_message(msg_id, data)))
            except (AttributeError, KeyError, ValueError, TypeError) as e:
                logger.error(f"Failed to parse command {msg_id}: {e}")
                self.ack(msg_id)
        return messages
