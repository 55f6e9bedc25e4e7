"""
Control Stream Producer

Publishes session commands for the worker to Redis Streams.
"""

import logging

import redis

from whatsend.contracts.envelope import ControlEnvelope
from whatsend.contracts.event_types import ControlCommand
from whatsend.streams.groups import CONTROL_STREAM, CONTROL_STREAM_MAX_LEN

logger = logging.getLogger(__name__)


class ControlProducer:
    """
    Producer for publishing control commands.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        max_len: int = CONTROL_STREAM_MAX_LEN,
        source: str = "api",
    ):
        self.redis = redis_client
        self.max_len = max_len
        self.source = source

    def publish_connect(self, tenant_id: str) -> str:
        """
        Ask the worker to connect a tenant.

        Returns:
            Stream message ID
        """
        return self._publish(ControlEnvelope.create(ControlCommand.CONNECT, tenant_id, metadata=self._metadata()))

    def publish_disconnect(self, tenant_id: str, wipe_credentials: bool = True) -> str:
        """
        Ask the worker to disconnect a tenant.

        Returns:
            Stream message ID
        """
        envelope = ControlEnvelope.create(
            ControlCommand.DISCONNECT,
            tenant_id,
            payload={"wipe_credentials": wipe_credentials},
            metadata=self._metadata(),
        )
        return self._publish(envelope)

    def publish_erase(self, tenant_id: str) -> str:
        """
        Ask the worker to unlink and erase a tenant.

        Returns:
            Stream message ID
        """
        return self._publish(ControlEnvelope.create(ControlCommand.ERASE, tenant_id, metadata=self._metadata()))

    def _metadata(self) -> dict:
        return {"source": self.source}

    def _publish(self, envelope: ControlEnvelope) -> str:
        """Publish an envelope to the control stream."""
        msg_id = self.redis.xadd(
            CONTROL_STREAM,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )

        logger.info(
            f"Published {envelope.command} to {CONTROL_STREAM}",
            extra={
                "command_id": str(envelope.command_id),
                "tenant_id": envelope.tenant_id,
                "stream_msg_id": msg_id,
            },
        )

        return msg_id
