"""
AnonChat - Conversation session policy.

Decides, once per conversation, whether end-to-end encryption is active.
Encryption is active exactly when a non-blank peer public key is supplied;
in that case the local private key must exist, otherwise the user is told
to create a key pair before anything touches the network.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from . import crypto
from .errors import MissingKeyPairError
from .identity import KeyPairStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Keys and identities a conversation runs with.

    Attributes:
        local_identity: Identity messages are sent from
        peer_identity: Identity on the other side
        local_private_key: Local private JWK, present only when encrypting
        peer_public_key: Peer public JWK, present only when encrypting
    """

    local_identity: str
    peer_identity: str
    local_private_key: Optional[str] = None
    peer_public_key: Optional[str] = None

    @property
    def encryption_active(self) -> bool:
        return bool(self.local_private_key) and bool(self.peer_public_key)

    def __repr__(self) -> str:
        # Never leak key material into logs
        return (
            f"SessionState(local_identity={self.local_identity!r}, "
            f"peer_identity={self.peer_identity!r}, "
            f"encryption_active={self.encryption_active})"
        )


class SessionPolicy:
    """Resolves the encryption mode for a new conversation."""

    def __init__(self, keypair_store: KeyPairStore):
        self.keypair_store = keypair_store

    def resolve(
        self,
        local_identity: str,
        peer_identity: str,
        peer_public_key_input: Optional[str] = None,
    ) -> SessionState:
        """
        Build the session state for a conversation.

        Args:
            local_identity: Local identity label
            peer_identity: Peer identity label
            peer_public_key_input: Peer public JWK as typed or stored; blank
                or None means an unencrypted conversation

        Returns:
            SessionState with both keys set when encryption is active

        Raises:
            ValueError: If either identity is blank
            KeyFormatError: If the peer key is not a P-256 public JWK
            MissingKeyPairError: If encryption is requested without a local key pair
        """
        local = local_identity.strip()
        peer = peer_identity.strip()
        if not local:
            raise ValueError("Set your identity before starting a conversation")
        if not peer:
            raise ValueError("Peer identity is required")

        peer_key = (peer_public_key_input or "").strip()
        if not peer_key:
            logger.info(f"Conversation with {peer}: encryption off (no peer key)")
            return SessionState(local, peer)

        private_key = self.keypair_store.get_private_key()
        if not private_key:
            logger.warning(f"Conversation with {peer}: peer key given but no local key pair")
            raise MissingKeyPairError(details={"peer_identity": peer})

        # Reject unusable peer keys here rather than on the first message
        crypto.load_public_jwk(peer_key)

        logger.info(f"Conversation with {peer}: encryption on")
        return SessionState(local, peer, private_key, peer_key)
