"""
AnonChat - Key material and key agreement.

This module implements the asymmetric half of the end-to-end encryption layer:
- EC P-256 key pair generation
- JSON Web Key (JWK) serialization so keys can be shared as text
- ECDH key agreement producing a 256-bit AES key
- Public key fingerprints for out-of-band verification
- Argon2id + AES-256-GCM envelopes for password protected files

The raw 32-byte ECDH shared secret is used directly as the AES-256-GCM key.
There is no additional KDF step, which keeps the derived key identical to
the one produced by WebCrypto's deriveBits(ECDH, 256) on the peer side.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import json
import os
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    CURVE_NAME,
    NONCE_SIZE,
    SALT_SIZE,
    SHARED_KEY_SIZE,
)
from .errors import CryptoError, ErrorCode, KeyFormatError

JwkInput = Union[str, Mapping[str, Any]]

_COORDINATE_SIZE = 32  # bytes per P-256 coordinate / scalar
_PUBLIC_KEY_OPS: list = []
_PRIVATE_KEY_OPS = ["deriveBits"]


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _int_to_b64url(value: int) -> str:
    return _b64url_encode(value.to_bytes(_COORDINATE_SIZE, "big"))


def _b64url_to_int(jwk: Mapping[str, Any], field: str) -> int:
    """Decode one fixed-size JWK member into an integer."""
    value = jwk.get(field)
    if not isinstance(value, str) or not value:
        raise KeyFormatError(f"JWK member '{field}' is missing", {"field": field})
    try:
        raw = _b64url_decode(value)
    except (ValueError, TypeError) as e:
        raise KeyFormatError(f"JWK member '{field}' is not base64url", {"field": field}) from e
    if len(raw) != _COORDINATE_SIZE:
        raise KeyFormatError(
            f"JWK member '{field}' has wrong length",
            {"field": field, "length": len(raw)},
        )
    return int.from_bytes(raw, "big")


def _parse_jwk(jwk: JwkInput) -> Dict[str, Any]:
    """Accept a JWK as JSON text or mapping and check it names an EC P-256 key."""
    if isinstance(jwk, str):
        try:
            data = json.loads(jwk)
        except (json.JSONDecodeError, TypeError) as e:
            raise KeyFormatError("Key is not valid JSON") from e
    elif isinstance(jwk, Mapping):
        data = dict(jwk)
    else:
        raise KeyFormatError("Key must be a JWK string or mapping")

    if not isinstance(data, dict):
        raise KeyFormatError("Key is not a JSON object")
    if data.get("kty") != "EC":
        raise KeyFormatError("Unsupported key type", {"kty": data.get("kty")})
    if data.get("crv") != CURVE_NAME:
        raise KeyFormatError("Unsupported curve", {"crv": data.get("crv")})
    return data


def load_public_jwk(jwk: JwkInput) -> ec.EllipticCurvePublicKey:
    """
    Load an EC P-256 public key from a JWK.

    Raises:
        KeyFormatError: If the JWK is malformed or the point is not on the curve
    """
    data = _parse_jwk(jwk)
    x = _b64url_to_int(data, "x")
    y = _b64url_to_int(data, "y")
    try:
        return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError as e:
        raise KeyFormatError("Public key point is not on the curve") from e


def load_private_jwk(jwk: JwkInput) -> ec.EllipticCurvePrivateKey:
    """
    Load an EC P-256 private key from a JWK.

    The public coordinates are optional; when present they must match 'd'.

    Raises:
        KeyFormatError: If the JWK is malformed or not a private key
    """
    data = _parse_jwk(jwk)
    if "d" not in data:
        raise KeyFormatError("JWK does not contain a private key")
    d = _b64url_to_int(data, "d")
    try:
        if "x" in data or "y" in data:
            public_numbers = ec.EllipticCurvePublicNumbers(
                _b64url_to_int(data, "x"), _b64url_to_int(data, "y"), ec.SECP256R1()
            )
            return ec.EllipticCurvePrivateNumbers(d, public_numbers).private_key()
        return ec.derive_private_key(d, ec.SECP256R1())
    except ValueError as e:
        raise KeyFormatError("Private key is invalid for P-256") from e


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> str:
    """Serialize a P-256 public key as a compact JWK string."""
    numbers = public_key.public_numbers()
    return json.dumps(
        {
            "crv": CURVE_NAME,
            "ext": True,
            "key_ops": _PUBLIC_KEY_OPS,
            "kty": "EC",
            "x": _int_to_b64url(numbers.x),
            "y": _int_to_b64url(numbers.y),
        },
        separators=(",", ":"),
    )


def private_key_to_jwk(private_key: ec.EllipticCurvePrivateKey) -> str:
    """Serialize a P-256 private key (including public coordinates) as a JWK string."""
    numbers = private_key.private_numbers()
    public_numbers = numbers.public_numbers
    return json.dumps(
        {
            "crv": CURVE_NAME,
            "d": _int_to_b64url(numbers.private_value),
            "ext": True,
            "key_ops": _PRIVATE_KEY_OPS,
            "kty": "EC",
            "x": _int_to_b64url(public_numbers.x),
            "y": _int_to_b64url(public_numbers.y),
        },
        separators=(",", ":"),
    )


class KeyPair:
    """
    Represents the local key pair used for end-to-end encryption.
    Uses EC P-256 (secp256r1) for Diffie-Hellman key agreement.

    Both halves are exposed as JWK strings so they can be persisted,
    exported to an account file, or pasted to a peer.
    """

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        if private_key is None:
            private_key = ec.generate_private_key(ec.SECP256R1())
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise KeyFormatError("Unsupported curve", {"curve": private_key.curve.name})
        self.private_key = private_key
        self.public_key = private_key.public_key()

    @property
    def public_jwk(self) -> str:
        """Public half as a JWK string."""
        return public_key_to_jwk(self.public_key)

    @property
    def private_jwk(self) -> str:
        """Private half as a JWK string."""
        return private_key_to_jwk(self.private_key)

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {"publicKeyJwk": self.public_jwk, "privateKeyJwk": self.private_jwk}

    @staticmethod
    def from_private_jwk(jwk: JwkInput) -> "KeyPair":
        """Rebuild a key pair from its private JWK."""
        return KeyPair(load_private_jwk(jwk))

    def fingerprint(self) -> str:
        """Fingerprint of the public half."""
        return generate_fingerprint(self.public_jwk)


def derive_shared_key(local_private_jwk: JwkInput, peer_public_jwk: JwkInput) -> bytes:
    """
    Perform ECDH between the local private key and the peer public key.

    The 256-bit shared secret is returned as-is and used directly as the
    AES-256-GCM key. Agreement is symmetric: A.priv with B.pub yields the
    same bytes as B.priv with A.pub.

    Raises:
        KeyFormatError: If either key is malformed or uses another curve
    """
    private_key = load_private_jwk(local_private_jwk)
    public_key = load_public_jwk(peer_public_jwk)
    try:
        shared = private_key.exchange(ec.ECDH(), public_key)
    except ValueError as e:
        raise KeyFormatError("Key agreement failed") from e
    if len(shared) != SHARED_KEY_SIZE:
        raise CryptoError(
            ErrorCode.E108_KEY_DERIVATION_FAILED,
            "Unexpected shared secret length",
            {"length": len(shared)},
        )
    return shared


def _memo_key(jwk: JwkInput) -> str:
    if isinstance(jwk, str):
        return jwk
    return json.dumps(dict(jwk), sort_keys=True)


class SharedSecretDeriver:
    """
    Derives symmetric keys for (local private key, peer public key) pairs.

    Results are memoized per instance so decrypting a long history with one
    peer performs the agreement once. The memo only ever holds keys for the
    pairs it was asked about and is dropped with the instance.
    """

    def __init__(self, memoize: bool = True):
        self.memoize = memoize
        self._cache: Dict[Tuple[str, str], bytes] = {}

    def derive(self, local_private_jwk: JwkInput, peer_public_jwk: JwkInput) -> bytes:
        """Return the AES-256 key shared with the peer."""
        if not self.memoize:
            return derive_shared_key(local_private_jwk, peer_public_jwk)

        cache_key = (_memo_key(local_private_jwk), _memo_key(peer_public_jwk))
        key = self._cache.get(cache_key)
        if key is None:
            key = derive_shared_key(local_private_jwk, peer_public_jwk)
            self._cache[cache_key] = key
        return key

    def clear(self) -> None:
        """Forget all derived keys."""
        self._cache.clear()


def generate_fingerprint(public_jwk: JwkInput) -> str:
    """
    Generate a human-readable fingerprint from a public key using SHA-256.

    The digest covers the uncompressed SEC1 point, so the same key always
    yields the same fingerprint regardless of JWK member order. Users should
    compare fingerprints through a trusted channel before trusting a peer key.

    Returns a 64-character hexadecimal fingerprint.
    """
    public_key = load_public_jwk(public_jwk)
    point = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(point)
    return digest.finalize().hex()


def _derive_password_key(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=32,
        type=Type.ID,
    )


def encrypt_secret_file(data: Dict[str, Any], password: str) -> Dict[str, str]:
    """
    Encrypt a JSON document with a password using AES-256-GCM.

    Argon2id derives the key from the password with a unique 16-byte salt;
    every call uses a fresh 12-byte nonce.
    """
    salt = os.urandom(SALT_SIZE)
    key = _derive_password_key(password, salt)

    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, json.dumps(data).encode("utf-8"), None)

    return {
        "salt": base64.b64encode(salt).decode("utf-8"),
        "nonce": base64.b64encode(nonce).decode("utf-8"),
        "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
        "version": "1.0",
    }


def is_secret_file(data: Any) -> bool:
    """Check whether a parsed JSON document is a password envelope."""
    return isinstance(data, dict) and all(
        isinstance(data.get(field), str) for field in ("salt", "nonce", "ciphertext")
    )


def decrypt_secret_file(encrypted_data: Dict[str, str], password: str) -> Dict[str, Any]:
    """
    Decrypt a password envelope produced by encrypt_secret_file.

    Raises CryptoError if:
    - Password is incorrect
    - File is corrupted
    - Authentication tag verification fails
    """
    try:
        salt = base64.b64decode(encrypted_data["salt"])
        nonce = base64.b64decode(encrypted_data["nonce"])
        ciphertext = base64.b64decode(encrypted_data["ciphertext"])
    except (KeyError, ValueError, TypeError) as e:
        raise CryptoError(ErrorCode.E102_DECRYPTION_FAILED, "Corrupted encrypted file") from e

    key = _derive_password_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, ValueError) as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Failed to decrypt file. Incorrect password or corrupted file.",
        ) from e
