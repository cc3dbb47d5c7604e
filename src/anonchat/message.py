"""
AnonChat - Message model.

A Message is the record the message store assigns an id to. Once created it
is immutable; decryption produces a copy with the plaintext payload.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping

from .errors import ErrorCode, NetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    """Represents a message in a conversation."""

    id: str
    sender_identity: str
    recipient_identity: str
    payload: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to the message store's JSON shape."""
        return {
            "id": self.id,
            "sender_id": self.sender_identity,
            "recipient_id": self.recipient_identity,
            "payload": self.payload,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Message":
        """
        Create message from the message store's JSON shape.

        Raises:
            NetworkError: If a required field is missing or has the wrong type
        """
        if not isinstance(data, Mapping):
            raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Message is not a JSON object")
        fields = {}
        for field in ("sender_id", "recipient_id", "payload", "created_at"):
            value = data.get(field)
            if not isinstance(value, str):
                raise NetworkError(
                    ErrorCode.E206_INVALID_MESSAGE,
                    f"Message field '{field}' is missing or not a string",
                    {"field": field},
                )
            fields[field] = value

        # Server ids may be numeric; the id is only ever compared as text
        message_id = data.get("id")
        if isinstance(message_id, bool) or not isinstance(message_id, (str, int)):
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE, "Message id is missing", {"field": "id"}
            )

        return Message(
            id=str(message_id),
            sender_identity=fields["sender_id"],
            recipient_identity=fields["recipient_id"],
            payload=fields["payload"],
            created_at=fields["created_at"],
        )

    def with_payload(self, payload: str) -> "Message":
        """Copy of this message carrying a different payload."""
        return replace(self, payload=payload)

    def involves(self, local_identity: str, peer_identity: str) -> bool:
        """Check whether this message belongs to the identity pair, in either direction."""
        return (
            self.sender_identity == local_identity and self.recipient_identity == peer_identity
        ) or (self.sender_identity == peer_identity and self.recipient_identity == local_identity)

    def is_outgoing(self, local_identity: str) -> bool:
        """True if the local identity sent this message."""
        return self.sender_identity == local_identity
