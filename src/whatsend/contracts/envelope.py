"""
Control Envelope

Standard wrapper for commands on the control stream.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4


@dataclass
class ControlEnvelope:
    """
    Envelope of one control command.

    Attributes:
        command_id: Unique identifier of this command
        command: ControlCommand value
        tenant_id: Tenant the command is about
        issued_at: When the command was issued (UTC)
        payload: Command-specific data
        version: Contract version
        metadata: Additional metadata (source, stream message id, ...)
    """

    command_id: UUID
    command: str
    tenant_id: str
    issued_at: datetime
    payload: dict[str, Any]
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        command: str,
        tenant_id: str,
        payload: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "ControlEnvelope":
        """Create a new envelope with auto-generated command_id and timestamp."""
        return cls(
            command_id=uuid4(),
            command=str(command),
            tenant_id=tenant_id,
            issued_at=datetime.utcnow(),
            payload=payload or {},
            metadata=metadata or {},
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "ControlEnvelope":
        """Parse a Redis Stream message into an envelope."""
        payload = json.loads(data.get("payload", "{}"))
        metadata = json.loads(data.get("metadata", "{}"))
        metadata["stream_msg_id"] = msg_id

        tenant_id = data["tenant_id"]
        if not tenant_id:
            raise ValueError("tenant_id is empty")

        return cls(
            command_id=UUID(data["command_id"]),
            command=data["command"],
            tenant_id=tenant_id,
            issued_at=(
                datetime.fromisoformat(data["issued_at"])
                if data.get("issued_at")
                else datetime.utcnow()
            ),
            version=int(data.get("version", "1")),
            payload=payload,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "command_id": str(self.command_id),
            "command": self.command,
            "tenant_id": self.tenant_id,
            "issued_at": self.issued_at.isoformat(),
            "version": self.version,
            "payload": self.payload,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "command_id": str(self.command_id),
            "command": self.command,
            "tenant_id": self.tenant_id,
            "issued_at": self.issued_at.isoformat(),
            "version": str(self.version),
            "payload": json.dumps(self.payload),
            "metadata": json.dumps(self.metadata),
        }
