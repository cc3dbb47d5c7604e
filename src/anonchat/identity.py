"""
AnonChat - Local identity and key pair storage.

Manages the single local encryption key pair and the local identity label.
Both are whole-record JSON files replaced atomically on every write.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles

from . import crypto
from .errors import ErrorCode, StorageError

# Configure logging
logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _read_json(path: Path) -> Optional[Dict]:
    """Read a JSON object from disk; None when the file does not exist."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupted file (invalid JSON): {path}: {e}")
        raise StorageError(
            ErrorCode.E403_STORAGE_LOAD_FAILED, f"Corrupted file: {path.name}", {"path": str(path)}
        ) from e
    except OSError as e:
        logger.error(f"Failed to read {path}: {e}")
        raise StorageError(
            ErrorCode.E403_STORAGE_LOAD_FAILED, f"Cannot read {path.name}: {e}", {"path": str(path)}
        ) from e
    if not isinstance(data, dict):
        raise StorageError(
            ErrorCode.E403_STORAGE_LOAD_FAILED,
            f"Unexpected content in {path.name}",
            {"path": str(path)},
        )
    return data


def _write_json(path: Path, data: Dict) -> None:
    """Write a JSON object atomically (temp file then rename)."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(path.name + ".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        # Rename temp file to actual file (atomic on POSIX systems)
        os.replace(temp_file, path)
    except OSError as e:
        logger.error(f"Failed to save {path}: {e}", exc_info=True)
        raise StorageError(
            ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot save {path.name}: {e}", {"path": str(path)}
        ) from e


async def _write_json_async(path: Path, data: Dict) -> None:
    """Write a JSON object atomically using async I/O."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        json_data = json.dumps(data, indent=2, ensure_ascii=False)
        temp_file = path.with_name(path.name + ".tmp")
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json_data)
        os.replace(temp_file, path)
    except OSError as e:
        logger.error(f"Failed to save {path} (async): {e}", exc_info=True)
        raise StorageError(
            ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot save {path.name}: {e}", {"path": str(path)}
        ) from e


class KeyPairStore:
    """
    Single-slot durable store for the local key pair.

    Exactly one pair exists at a time. generate() and import_pair() replace
    the previous pair irrecoverably; writes are last-writer-wins.
    """

    def __init__(self, keypair_file: PathLike):
        self.keypair_file = Path(keypair_file)

    def _load(self) -> Optional[Dict[str, str]]:
        data = _read_json(self.keypair_file)
        if data is None:
            return None
        public_key = data.get("publicKeyJwk")
        private_key = data.get("privateKeyJwk")
        if not isinstance(public_key, str) or not isinstance(private_key, str):
            raise StorageError(
                ErrorCode.E403_STORAGE_LOAD_FAILED,
                "Key pair file is missing a key",
                {"path": str(self.keypair_file)},
            )
        return {"publicKeyJwk": public_key, "privateKeyJwk": private_key}

    def generate(self) -> crypto.KeyPair:
        """Create a fresh P-256 key pair, persist it and return it."""
        keypair = crypto.KeyPair()
        _write_json(self.keypair_file, keypair.to_dict())
        logger.info(f"Generated new key pair (fingerprint {keypair.fingerprint()[:16]})")
        return keypair

    async def generate_async(self) -> crypto.KeyPair:
        """Async variant of generate()."""
        keypair = crypto.KeyPair()
        await _write_json_async(self.keypair_file, keypair.to_dict())
        logger.info(f"Generated new key pair (fingerprint {keypair.fingerprint()[:16]})")
        return keypair

    def import_pair(self, public_key: str, private_key: str) -> None:
        """
        Persist an externally supplied pair, replacing the current one.

        The halves are stored as given; checking that they belong together
        is the caller's responsibility.
        """
        _write_json(self.keypair_file, {"publicKeyJwk": public_key, "privateKeyJwk": private_key})
        logger.info("Imported key pair")

    async def import_pair_async(self, public_key: str, private_key: str) -> None:
        """Async variant of import_pair()."""
        await _write_json_async(
            self.keypair_file, {"publicKeyJwk": public_key, "privateKeyJwk": private_key}
        )
        logger.info("Imported key pair (async)")

    def get_public_key(self) -> Optional[str]:
        """Public JWK, or None if no pair was ever generated or imported."""
        data = self._load()
        return data["publicKeyJwk"] if data else None

    def get_private_key(self) -> Optional[str]:
        """Private JWK, or None if absent."""
        data = self._load()
        return data["privateKeyJwk"] if data else None

    def exists(self) -> bool:
        """Check whether a key pair is stored."""
        return self.keypair_file.exists()

    def clear(self) -> None:
        """Erase the stored pair."""
        if self.keypair_file.exists():
            try:
                os.remove(self.keypair_file)
            except OSError as e:
                logger.error(f"Failed to delete key pair file: {e}", exc_info=True)
                raise StorageError(
                    ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot delete key pair: {e}"
                ) from e
            logger.info("Key pair cleared")


class IdentityLabelStore:
    """Persists the local identity label (the id peers send messages to)."""

    def __init__(self, profile_file: PathLike):
        self.profile_file = Path(profile_file)

    def get(self) -> str:
        """Stored label, or an empty string."""
        data = _read_json(self.profile_file) or {}
        label = data.get("myId", "")
        return label if isinstance(label, str) else ""

    def set(self, label: str) -> None:
        """Store a trimmed label; blank labels are ignored."""
        trimmed = label.strip()
        if not trimmed:
            logger.debug("Ignoring blank identity label")
            return
        _write_json(self.profile_file, {"myId": trimmed})
        logger.info(f"Identity label set: {trimmed}")
