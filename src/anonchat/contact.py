"""
AnonChat - Peer public key management.

Remembers the public key supplied for each peer identity so a conversation
can be re-opened without pasting the key again.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import aiofiles

from .errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerKeyRecord:
    """A peer identity and the public key (JWK) supplied for it."""

    peer_identity: str
    public_key: str


class PeerKeyStore:
    """Manages peer keys and their persistent storage."""

    def __init__(self, peer_keys_file: str):
        self.peer_keys_file = str(peer_keys_file)
        self.peer_keys: Dict[str, str] = {}  # peer identity -> public key JWK
        self._load_peer_keys()

    def _load_peer_keys(self) -> None:
        """Load peer keys from file."""
        if not os.path.exists(self.peer_keys_file):
            return
        try:
            with open(self.peer_keys_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (IOError, OSError) as e:
            logger.error(f"Failed to read peer keys file: {e}")
            raise StorageError(
                ErrorCode.E403_STORAGE_LOAD_FAILED, f"Cannot load peer keys: {e}"
            ) from e
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted peer keys file: {e}")
            # Start empty rather than refusing to open any conversation
            logger.warning("Starting with empty peer keys due to corrupted file")
            return

        if not isinstance(data, dict):
            logger.warning("Peer keys file is not a JSON object, ignoring it")
            return
        for peer, key in data.items():
            if isinstance(peer, str) and isinstance(key, str) and peer.strip() and key.strip():
                self.peer_keys[peer.strip()] = key.strip()
        logger.info(f"Loaded {len(self.peer_keys)} peer keys from {self.peer_keys_file}")

    def _serialize(self) -> str:
        return json.dumps(self.peer_keys, indent=2, ensure_ascii=False)

    def save_peer_keys(self) -> None:
        """Save peer keys to file synchronously."""
        try:
            os.makedirs(os.path.dirname(self.peer_keys_file) or ".", exist_ok=True)
            temp_file = f"{self.peer_keys_file}.tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(self._serialize())

            # Atomic rename
            os.replace(temp_file, self.peer_keys_file)
            logger.debug(f"Saved {len(self.peer_keys)} peer keys to {self.peer_keys_file}")
        except (IOError, OSError) as e:
            logger.error(f"Failed to save peer keys: {e}")
            raise StorageError(
                ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot save peer keys: {e}"
            ) from e

    async def save_peer_keys_async(self) -> None:
        """Save peer keys to file asynchronously."""
        try:
            os.makedirs(os.path.dirname(self.peer_keys_file) or ".", exist_ok=True)
            temp_file = f"{self.peer_keys_file}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(self._serialize())

            os.replace(temp_file, self.peer_keys_file)
            logger.debug(f"Saved {len(self.peer_keys)} peer keys to {self.peer_keys_file}")
        except (IOError, OSError) as e:
            logger.error(f"Failed to save peer keys: {e}")
            raise StorageError(
                ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot save peer keys: {e}"
            ) from e

    def set_peer_key(self, peer_identity: str, public_key: str) -> bool:
        """
        Store or overwrite the key for a peer.

        Returns False (and stores nothing) when either value is blank.
        """
        peer = peer_identity.strip()
        key = public_key.strip()
        if not peer or not key:
            return False
        self.peer_keys[peer] = key
        self.save_peer_keys()
        return True

    def get_peer_key(self, peer_identity: str) -> Optional[str]:
        """Get the stored key for a peer."""
        return self.peer_keys.get(peer_identity.strip())

    def get_record(self, peer_identity: str) -> Optional[PeerKeyRecord]:
        """Get a peer key as a record."""
        key = self.get_peer_key(peer_identity)
        if key is None:
            return None
        return PeerKeyRecord(peer_identity.strip(), key)

    def remove_peer_key(self, peer_identity: str) -> bool:
        """Remove a peer key. Returns True if removed, False if not found."""
        peer = peer_identity.strip()
        if peer in self.peer_keys:
            del self.peer_keys[peer]
            self.save_peer_keys()
            return True
        return False

    def replace_all(self, peer_keys: Mapping[str, str]) -> None:
        """Replace every stored key, e.g. when restoring an account file."""
        self.peer_keys = {
            peer.strip(): key.strip()
            for peer, key in peer_keys.items()
            if peer.strip() and key.strip()
        }
        self.save_peer_keys()

    def get_all_records(self) -> List[PeerKeyRecord]:
        """Get all peer keys sorted by identity."""
        return [PeerKeyRecord(peer, key) for peer, key in sorted(self.peer_keys.items())]

    def to_dict(self) -> Dict[str, str]:
        """Copy of the peer identity -> key mapping."""
        return dict(self.peer_keys)
