"""
AnonChat - Payload encryption tests.

Tests for the wire envelope, authenticated encryption and the
opportunistic encrypt/decrypt helpers.
"""

import json

import pytest

from anonchat import crypto
from anonchat.errors import AuthenticationError, KeyFormatError, PayloadFormatError
from anonchat.payload import EncryptedPayload, PayloadCodec, Plaintext, parse_payload


@pytest.fixture
def codec() -> PayloadCodec:
    return PayloadCodec()


def _tamper(payload: str, field: str = "ciphertext", index: int = 0) -> str:
    data = json.loads(payload)
    data[field][index] ^= 0x01
    return json.dumps(data)


class TestEncryptDecrypt:
    """Round trips between two parties."""

    def test_peer_can_decrypt(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert codec.decrypt(payload, bob_keys.private_jwk, alice_keys.public_jwk) == "hi"

    def test_sender_can_decrypt_own_message(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert codec.decrypt(payload, alice_keys.private_jwk, bob_keys.public_jwk) == "hi"

    def test_unicode_and_empty_text(self, codec, alice_keys, bob_keys):
        for text in ["", "Secret with unicode: 你好世界 🔒", "x" * 10000]:
            payload = codec.encrypt(text, alice_keys.private_jwk, bob_keys.public_jwk)
            assert codec.decrypt(payload, bob_keys.private_jwk, alice_keys.public_jwk) == text

    def test_wire_format(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hello", alice_keys.private_jwk, bob_keys.public_jwk)
        data = json.loads(payload)

        assert set(data) == {"algorithmTag", "iv", "ciphertext"}
        assert data["algorithmTag"] == "ECDH-P256+A256GCM"
        assert len(data["iv"]) == 12
        # 5 bytes of text + 16-byte tag
        assert len(data["ciphertext"]) == 5 + 16
        assert all(isinstance(b, int) and 0 <= b <= 255 for b in data["iv"] + data["ciphertext"])

    def test_fresh_nonce_per_call(self, codec, alice_keys, bob_keys):
        first = json.loads(codec.encrypt("same", alice_keys.private_jwk, bob_keys.public_jwk))
        second = json.loads(codec.encrypt("same", alice_keys.private_jwk, bob_keys.public_jwk))

        assert first["iv"] != second["iv"]
        assert first["ciphertext"] != second["ciphertext"]


class TestAuthentication:
    """Tampering and wrong keys never yield plaintext."""

    def test_tampered_ciphertext(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        with pytest.raises(AuthenticationError):
            codec.decrypt(_tamper(payload), bob_keys.private_jwk, alice_keys.public_jwk)

    def test_tampered_tag(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        with pytest.raises(AuthenticationError):
            codec.decrypt(_tamper(payload, index=-1), bob_keys.private_jwk, alice_keys.public_jwk)

    def test_tampered_iv(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        with pytest.raises(AuthenticationError):
            codec.decrypt(_tamper(payload, "iv"), bob_keys.private_jwk, alice_keys.public_jwk)

    def test_wrong_key(self, codec, alice_keys, bob_keys):
        carol = crypto.KeyPair()
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        with pytest.raises(AuthenticationError):
            codec.decrypt(payload, carol.private_jwk, alice_keys.public_jwk)

    def test_failure_is_deterministic(self, codec, alice_keys, bob_keys):
        tampered = _tamper(codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk))

        for _ in range(2):
            with pytest.raises(AuthenticationError):
                codec.decrypt(tampered, bob_keys.private_jwk, alice_keys.public_jwk)

    def test_malformed_key(self, codec, alice_keys):
        with pytest.raises(KeyFormatError):
            codec.encrypt("hi", alice_keys.private_jwk, '{"kty":"EC","crv":"P-256"}')


class TestMalformedPayload:
    """decrypt() refuses anything that is not a well-formed envelope."""

    @pytest.mark.parametrize(
        "payload",
        [
            "hello",
            "[]",
            '{"foo": 1}',
            '{"algorithmTag": "X", "iv": [], "ciphertext": []}',
            '{"algorithmTag": "ECDH-P256+A256GCM", "iv": "abc", "ciphertext": [1]}',
            '{"algorithmTag": "ECDH-P256+A256GCM", "iv": [1, 2], "ciphertext": '
            + json.dumps(list(range(20)))
            + "}",
            '{"algorithmTag": "ECDH-P256+A256GCM", "iv": '
            + json.dumps([0] * 12)
            + ', "ciphertext": [1, 2, 3]}',
        ],
    )
    def test_rejected(self, codec, alice_keys, bob_keys, payload):
        with pytest.raises(PayloadFormatError):
            codec.decrypt(payload, bob_keys.private_jwk, alice_keys.public_jwk)


class TestParsePayload:
    """Classification of wire payloads."""

    def test_envelope(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        parsed = parse_payload(payload)

        assert isinstance(parsed, EncryptedPayload)
        assert len(parsed.iv) == 12
        assert parsed.to_wire() == payload

    @pytest.mark.parametrize(
        "payload",
        [
            "hello",
            "",
            '{"foo":1}',
            '"just a string"',
            "null",
            '{"algorithmTag":"X","iv":[],"ciphertext":[]}',
            '{"algorithmTag":"ECDH-P256+A256GCM","iv":"abc","ciphertext":[]}',
            "[" * 100000,
        ],
    )
    def test_plaintext(self, payload):
        parsed = parse_payload(payload)

        assert parsed == Plaintext(payload)
        assert PayloadCodec.is_encrypted(payload) is False

    def test_is_encrypted(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert PayloadCodec.is_encrypted(payload) is True

    @pytest.mark.parametrize(
        "payload",
        [
            '{"algorithmTag":"ECDH-P256+A256GCM","iv":[true,1],"ciphertext":[]}',
            '{"algorithmTag":"ECDH-P256+A256GCM","iv":[256],"ciphertext":[]}',
            '{"algorithmTag":"ECDH-P256+A256GCM","iv":[1,2],"ciphertext":[3]}',
        ],
    )
    def test_tagged_envelope_with_bad_bytes_is_encrypted(self, payload):
        """Classification goes by tag and shape; bad bytes fail at decrypt time."""
        assert isinstance(parse_payload(payload), EncryptedPayload)
        assert PayloadCodec.is_encrypted(payload) is True


class TestOpportunisticHelpers:
    """encrypt_if_applicable / decrypt_if_applicable."""

    def test_encrypt_without_keys_is_identity(self, codec, alice_keys):
        assert codec.encrypt_if_applicable("hi", None, None) == "hi"
        assert codec.encrypt_if_applicable("hi", alice_keys.private_jwk, None) == "hi"
        assert codec.encrypt_if_applicable("hi", alice_keys.private_jwk, "   ") == "hi"

    def test_encrypt_with_keys(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt_if_applicable("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert PayloadCodec.is_encrypted(payload)

    def test_decrypt_passes_plaintext_through(self, codec, alice_keys, bob_keys):
        assert codec.decrypt_if_applicable("hello", bob_keys.private_jwk, alice_keys.public_jwk) == "hello"

    def test_decrypt_without_keys_returns_envelope(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert codec.decrypt_if_applicable(payload, None, None) == payload
        assert codec.decrypt_if_applicable(payload, "", alice_keys.public_jwk) == payload

    def test_decrypt_with_keys(self, codec, alice_keys, bob_keys):
        payload = codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk)

        assert codec.decrypt_if_applicable(payload, bob_keys.private_jwk, alice_keys.public_jwk) == "hi"

    def test_authentication_failure_propagates(self, codec, alice_keys, bob_keys):
        tampered = _tamper(codec.encrypt("hi", alice_keys.private_jwk, bob_keys.public_jwk))

        with pytest.raises(AuthenticationError):
            codec.decrypt_if_applicable(tampered, bob_keys.private_jwk, alice_keys.public_jwk)

    def test_truncated_ciphertext_propagates(self, codec, alice_keys, bob_keys):
        data = json.loads(codec.encrypt("secret", alice_keys.private_jwk, bob_keys.public_jwk))
        data["ciphertext"] = data["ciphertext"][:15]

        with pytest.raises(PayloadFormatError):
            codec.decrypt_if_applicable(
                json.dumps(data), bob_keys.private_jwk, alice_keys.public_jwk
            )

    def test_short_iv_propagates(self, codec, alice_keys, bob_keys):
        data = json.loads(codec.encrypt("secret", alice_keys.private_jwk, bob_keys.public_jwk))
        data["iv"] = data["iv"][:11]

        with pytest.raises(PayloadFormatError):
            codec.decrypt_if_applicable(
                json.dumps(data), bob_keys.private_jwk, alice_keys.public_jwk
            )

    def test_out_of_range_bytes_propagate(self, codec, alice_keys, bob_keys):
        data = json.loads(codec.encrypt("secret", alice_keys.private_jwk, bob_keys.public_jwk))
        data["ciphertext"][0] = 300

        with pytest.raises(PayloadFormatError):
            codec.decrypt_if_applicable(
                json.dumps(data), bob_keys.private_jwk, alice_keys.public_jwk
            )
