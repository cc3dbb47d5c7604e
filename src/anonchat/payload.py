"""
AnonChat - Message payload encryption.

Created for the AnonChat client.

Every message body travels as a single string. When both parties have keys
configured the string is a self-describing JSON envelope:

    {"algorithmTag": "ECDH-P256+A256GCM", "iv": [..12 bytes..], "ciphertext": [..]}

Anything else is opaque plaintext. Encryption is opportunistic: a
conversation may freely mix encrypted messages with plaintext messages sent
before keys were configured, and each message is classified on its own.

Incoming strings are parsed once into a tagged union (Plaintext or
EncryptedPayload); consumers match on the variant instead of re-parsing.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ALGORITHM_TAG,
    NONCE_SIZE,
    PAYLOAD_CIPHERTEXT_FIELD,
    PAYLOAD_IV_FIELD,
    PAYLOAD_TAG_FIELD,
    TAG_SIZE,
)
from .crypto import JwkInput, SharedSecretDeriver
from .errors import AuthenticationError, PayloadFormatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plaintext:
    """A payload that is not an encrypted envelope."""

    text: str


@dataclass(frozen=True)
class EncryptedPayload:
    """
    An envelope carrying the supported algorithm tag.

    iv and ciphertext hold the integers exactly as received; they are checked
    to be well-formed bytes of the right length only when decrypting.
    """

    algorithm_tag: str
    iv: Sequence[int]
    ciphertext: Sequence[int]

    def to_wire(self) -> str:
        """Serialize to the wire JSON form."""
        return json.dumps(
            {
                PAYLOAD_TAG_FIELD: self.algorithm_tag,
                PAYLOAD_IV_FIELD: list(self.iv),
                PAYLOAD_CIPHERTEXT_FIELD: list(self.ciphertext),
            },
            separators=(",", ":"),
        )


ParsedPayload = Union[Plaintext, EncryptedPayload]


def _byte_list(value: Any) -> Optional[bytes]:
    """Convert a sequence of 0-255 integers to bytes, or None if it is not one."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, (list, tuple)):
        return None
    for item in value:
        # bool is an int subclass; true/false are not bytes
        if not isinstance(item, int) or isinstance(item, bool) or not 0 <= item <= 255:
            return None
    return bytes(value)


def _classify(payload: str) -> ParsedPayload:
    """Tag and JSON shape only; byte contents are not inspected here."""
    try:
        data = json.loads(payload)
    except (ValueError, TypeError, RecursionError):
        return Plaintext(payload)

    if not isinstance(data, dict) or data.get(PAYLOAD_TAG_FIELD) != ALGORITHM_TAG:
        return Plaintext(payload)

    iv = data.get(PAYLOAD_IV_FIELD)
    ciphertext = data.get(PAYLOAD_CIPHERTEXT_FIELD)
    if not isinstance(iv, list) or not isinstance(ciphertext, list):
        return Plaintext(payload)

    return EncryptedPayload(ALGORITHM_TAG, tuple(iv), tuple(ciphertext))


def parse_payload(payload: str) -> ParsedPayload:
    """
    Classify a wire payload.

    Never raises. A JSON object with the supported algorithm tag and array
    valued iv and ciphertext is an EncryptedPayload, even if its bytes turn
    out to be unusable; decrypting it then fails loudly. Everything else is
    Plaintext.
    """
    if not isinstance(payload, str):
        return Plaintext(str(payload))
    return _classify(payload)


def _present(key: Optional[JwkInput]) -> bool:
    if key is None:
        return False
    if isinstance(key, str):
        return bool(key.strip())
    return bool(key)


class PayloadCodec:
    """
    Encrypts and decrypts message bodies for one local key pair and peer.

    Keys are passed per call so the same codec serves any conversation;
    symmetric keys come from the SharedSecretDeriver.
    """

    def __init__(self, deriver: Optional[SharedSecretDeriver] = None):
        self.deriver = deriver or SharedSecretDeriver()

    def encrypt(self, plaintext: str, local_private_key: JwkInput, peer_public_key: JwkInput) -> str:
        """
        Encrypt plaintext for the peer with AES-256-GCM.

        A fresh random 96-bit nonce is drawn from os.urandom on every call,
        so identical plaintexts never produce identical payloads.

        Raises:
            KeyFormatError: If either key is malformed
        """
        key = self.deriver.derive(local_private_key, peer_public_key)
        iv = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedPayload(ALGORITHM_TAG, iv, ciphertext).to_wire()

    def decrypt(self, payload: str, local_private_key: JwkInput, peer_public_key: JwkInput) -> str:
        """
        Decrypt a wire payload produced by encrypt().

        Raises:
            PayloadFormatError: If the payload is not a supported envelope or
                its iv/ciphertext are not bytes of a usable length
            AuthenticationError: If the GCM tag does not verify
            KeyFormatError: If either key is malformed
        """
        parsed = parse_payload(payload)
        if isinstance(parsed, Plaintext):
            raise PayloadFormatError("Payload is not an encrypted envelope")
        return self.decrypt_envelope(parsed, local_private_key, peer_public_key)

    def decrypt_envelope(
        self, envelope: EncryptedPayload, local_private_key: JwkInput, peer_public_key: JwkInput
    ) -> str:
        """Decrypt an already parsed envelope."""
        if envelope.algorithm_tag != ALGORITHM_TAG:
            raise PayloadFormatError(
                "Unsupported algorithm tag", {"algorithm_tag": envelope.algorithm_tag}
            )
        iv = _byte_list(envelope.iv)
        ciphertext = _byte_list(envelope.ciphertext)
        if iv is None or ciphertext is None:
            raise PayloadFormatError("Payload iv/ciphertext must be byte arrays")
        if len(iv) != NONCE_SIZE:
            raise PayloadFormatError("Payload iv has wrong length", {"length": len(iv)})
        if len(ciphertext) < TAG_SIZE:
            raise PayloadFormatError(
                "Payload ciphertext is truncated", {"length": len(ciphertext)}
            )

        key = self.deriver.derive(local_private_key, peer_public_key)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationError() from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationError("Decrypted payload is not UTF-8 text") from e

    @staticmethod
    def is_encrypted(payload: str) -> bool:
        """True for a JSON envelope carrying the supported algorithm tag."""
        return isinstance(parse_payload(payload), EncryptedPayload)

    def decrypt_if_applicable(
        self,
        payload: str,
        local_private_key: Optional[JwkInput] = None,
        peer_public_key: Optional[JwkInput] = None,
    ) -> str:
        """
        Decrypt when encryption is active and the payload is an envelope.

        Plaintext payloads and conversations without both keys pass through
        unchanged. Authentication and format failures on an envelope carrying
        the supported tag propagate; its raw JSON is never returned as text.
        """
        if not _present(local_private_key) or not _present(peer_public_key):
            return payload
        parsed = parse_payload(payload)
        if isinstance(parsed, Plaintext):
            return payload
        return self.decrypt_envelope(parsed, local_private_key, peer_public_key)

    def encrypt_if_applicable(
        self,
        plaintext: str,
        local_private_key: Optional[JwkInput] = None,
        peer_public_key: Optional[JwkInput] = None,
    ) -> str:
        """Encrypt when both keys are present, else return plaintext unchanged."""
        if not _present(local_private_key) or not _present(peer_public_key):
            return plaintext
        return self.encrypt(plaintext, local_private_key, peer_public_key)
