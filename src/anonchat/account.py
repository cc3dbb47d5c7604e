"""
AnonChat - Account file export and import.

An account file carries everything needed to continue on another device:
the identity label, the key pair and the saved peer keys. It is plain JSON

    {"version": 1, "myId": ..., "publicKeyJwk": ..., "privateKeyJwk": ...,
     "peerKeys": {peer identity: public JWK}}

optionally wrapped in a password envelope (Argon2id + AES-256-GCM).
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from . import crypto
from .constants import ACCOUNT_FILE_VERSION
from .contact import PeerKeyStore
from .errors import CryptoError, ErrorCode, IdentityError, StorageError
from .identity import IdentityLabelStore, KeyPairStore

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class AccountExport:
    """Contents of an account file."""

    my_id: str
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    peer_keys: Dict[str, str] = field(default_factory=dict)
    version: int = ACCOUNT_FILE_VERSION

    @property
    def has_keypair(self) -> bool:
        return bool(self.public_key) and bool(self.private_key)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the account file JSON shape; absent parts are omitted."""
        data: Dict[str, Any] = {"version": self.version, "myId": self.my_id}
        if self.has_keypair:
            data["publicKeyJwk"] = self.public_key
            data["privateKeyJwk"] = self.private_key
        if self.peer_keys:
            data["peerKeys"] = dict(self.peer_keys)
        return data


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_account_export(
    my_id: str,
    public_key: Optional[str],
    private_key: Optional[str],
    peer_keys: Optional[Mapping[str, str]] = None,
) -> AccountExport:
    """
    Assemble an account export.

    The key pair is included only when both halves are non-blank; an empty
    peer key map is left out.
    """
    export = AccountExport(my_id=my_id.strip())
    public, private = _clean(public_key), _clean(private_key)
    if public and private:
        export.public_key = public
        export.private_key = private
    if peer_keys:
        export.peer_keys = dict(peer_keys)
    return export


def _account_from_data(data: Any) -> Optional[AccountExport]:
    if not isinstance(data, dict):
        return None
    my_id = _clean(data.get("myId"))
    if not my_id:
        return None

    peer_keys: Dict[str, str] = {}
    raw_peers = data.get("peerKeys")
    if isinstance(raw_peers, dict):
        for peer, key in raw_peers.items():
            peer, key = _clean(peer), _clean(key)
            if peer and key:
                peer_keys[peer] = key

    export = build_account_export(
        my_id, data.get("publicKeyJwk"), data.get("privateKeyJwk"), peer_keys
    )
    version = data.get("version")
    if isinstance(version, int) and not isinstance(version, bool):
        export.version = version
    return export


def parse_account_file(text: str) -> Optional[AccountExport]:
    """
    Parse and validate account file JSON.

    Returns:
        AccountExport, or None if the text is not a usable account file
        (not JSON, not an object, or no non-blank myId)
    """
    try:
        data = json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None
    return _account_from_data(data)


def export_account(path: PathLike, export: AccountExport, password: Optional[str] = None) -> None:
    """
    Write an account file atomically.

    Args:
        path: Destination file
        export: Account contents
        password: When given, the file is wrapped in a password envelope

    Raises:
        StorageError: If the file cannot be written
    """
    path = Path(path)
    data: Dict[str, Any] = export.to_dict()
    if password:
        data = crypto.encrypt_secret_file(data, password)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(path.name + ".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(temp_file, path)
    except OSError as e:
        logger.error(f"Failed to export account: {e}", exc_info=True)
        raise StorageError(
            ErrorCode.E404_STORAGE_SAVE_FAILED, f"Cannot write account file: {e}", {"path": str(path)}
        ) from e

    # Private key material leaves the device in plain form here
    if export.has_keypair and not password:
        logger.warning(f"Account file {path} contains an unprotected private key")
    logger.info(f"Account exported to: {path}")


def import_account(path: PathLike, password: Optional[str] = None) -> AccountExport:
    """
    Read and validate an account file.

    Raises:
        StorageError: If the file cannot be read or is not an account file
        CryptoError: If the file is password protected and the password is
            missing or wrong
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise StorageError(
            ErrorCode.E403_STORAGE_LOAD_FAILED, f"Cannot read account file: {e}", {"path": str(path)}
        ) from e

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if crypto.is_secret_file(data):
        if not password:
            raise CryptoError(
                ErrorCode.E102_DECRYPTION_FAILED,
                "Account file is password protected",
                {"path": str(path)},
            )
        data = crypto.decrypt_secret_file(data, password)

    export = _account_from_data(data)
    if export is None:
        raise StorageError(
            ErrorCode.E403_STORAGE_LOAD_FAILED, "Not a valid account file", {"path": str(path)}
        )
    logger.info(f"Account file read: {export.my_id} ({len(export.peer_keys)} peer keys)")
    return export


class AccountManager:
    """Moves a whole account between local storage and account files."""

    def __init__(
        self,
        keypair_store: KeyPairStore,
        label_store: IdentityLabelStore,
        peer_key_store: PeerKeyStore,
    ):
        self.keypair_store = keypair_store
        self.label_store = label_store
        self.peer_key_store = peer_key_store

    def build_export(self) -> AccountExport:
        """Snapshot local storage as an account export."""
        return build_account_export(
            self.label_store.get(),
            self.keypair_store.get_public_key(),
            self.keypair_store.get_private_key(),
            self.peer_key_store.to_dict(),
        )

    def export_to(self, path: PathLike, password: Optional[str] = None) -> AccountExport:
        """
        Export local storage to a file.

        Raises:
            IdentityError: If no identity label is set
        """
        export = self.build_export()
        if not export.my_id:
            raise IdentityError(
                ErrorCode.E301_IDENTITY_NOT_FOUND, "Set your identity before exporting"
            )
        export_account(path, export, password)
        return export

    def restore(self, export: AccountExport) -> None:
        """
        Apply an account export to local storage.

        The identity label is replaced. Peer keys and the key pair are
        replaced only when the file carries them; otherwise the local ones
        are left as they are.
        """
        self.label_store.set(export.my_id)
        if export.peer_keys:
            self.peer_key_store.replace_all(export.peer_keys)
        if export.has_keypair:
            self.keypair_store.import_pair(export.public_key, export.private_key)
        logger.info(f"Account restored for {export.my_id}")

    def import_from(self, path: PathLike, password: Optional[str] = None) -> AccountExport:
        """Read an account file and restore it."""
        export = import_account(path, password)
        self.restore(export)
        return export
