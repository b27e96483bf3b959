"""
Tests for fingerprints, canonical transaction hashing and commit signing.

Fingerprint rules are SACRED GROUND: every committed alert was
fingerprinted by them.
"""

import hashlib
from datetime import datetime, timezone

import pytest

from sentinelchain.core import (
    CanonicalSerializationError,
    Hasher,
    Signer,
    SigningService,
    SIGNING_KEY_ENV,
    to_hex,
)

SHA256_EMPTY = "0xe3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
SHA256_ABC = "0xba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestFingerprint:
    """Content fingerprints of raw logs."""

    def test_known_vectors(self):
        assert Hasher.digest_hex("") == SHA256_EMPTY
        assert Hasher.digest_hex("abc") == SHA256_ABC

    def test_digest_is_32_bytes(self):
        assert len(Hasher.digest("X")) == Hasher.DIGEST_SIZE == 32

    def test_deterministic(self):
        assert Hasher.digest("Jan 1 sshd: Failed password") == Hasher.digest("Jan 1 sshd: Failed password")

    def test_one_byte_changes_digest(self):
        assert Hasher.digest("X") != Hasher.digest("Y")

    def test_whitespace_is_significant(self):
        """No normalization: a trailing newline is a different payload."""
        assert Hasher.digest("line") != Hasher.digest("line\n")
        assert Hasher.digest("a b") != Hasher.digest("a  b")

    def test_utf8_encoding(self):
        payload = "usuario: josé"
        assert Hasher.digest(payload) == hashlib.sha256(payload.encode("utf-8")).digest()

    def test_rejects_non_string(self):
        with pytest.raises(TypeError):
            Hasher.digest(b"bytes are not a payload")


class TestParseDigest:
    def test_accepts_prefixed_hex(self):
        assert Hasher.parse_digest(SHA256_ABC) == bytes.fromhex(SHA256_ABC[2:])

    def test_accepts_bare_and_uppercase_hex(self):
        assert Hasher.parse_digest(SHA256_ABC[2:].upper()) == bytes.fromhex(SHA256_ABC[2:])

    def test_accepts_raw_bytes(self):
        raw = Hasher.digest("abc")
        assert Hasher.parse_digest(raw) is raw

    def test_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            Hasher.parse_digest("0xabcd")

    def test_rejects_non_hex(self):
        with pytest.raises(ValueError):
            Hasher.parse_digest("0x" + "zz" * 32)

    def test_rejects_other_types(self):
        with pytest.raises(ValueError):
            Hasher.parse_digest(12345)


class TestIdentifiers:
    """logId digests and placeholders are identifiers, not fingerprints."""

    def test_topic_digest_is_sha256_of_log_id(self):
        assert Hasher.topic_digest("abc") == SHA256_ABC

    def test_placeholder_is_hex_of_identifier(self):
        assert Hasher.placeholder("A1") == "0x4131"

    def test_placeholder_never_equals_fingerprint(self):
        assert Hasher.placeholder("X") != Hasher.digest_hex("X")

    def test_to_hex(self):
        assert to_hex(b"\x00\xff") == "0x00ff"

    def test_matches(self):
        digest = Hasher.digest("X")
        assert Hasher.matches(digest, Hasher.digest("X"))
        assert not Hasher.matches(digest, Hasher.digest("Y"))
        assert not Hasher.matches(digest, digest[:31])


class TestCanonicalTransaction:
    """Canonical form used for transaction hashes."""

    def test_sorted_keys(self):
        assert Hasher.canonicalize({"b": 2, "a": 1}) == Hasher.canonicalize({"a": 1, "b": 2})

    def test_nulls_omitted(self):
        assert Hasher.canonicalize({"a": 1, "signer": None}) == Hasher.canonicalize({"a": 1})

    def test_version_embedded(self):
        assert '"__canon_v":1' in Hasher.canonicalize({"a": 1})

    def test_bytes_rendered_as_hex(self):
        assert '"fingerprint":"0x00ff"' in Hasher.canonicalize({"fingerprint": b"\x00\xff"})

    def test_datetime_utc_z(self):
        when = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)
        assert "2024-03-15T14:30:00.000000Z" in Hasher.canonicalize({"at": when})

    def test_naive_datetime_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize({"at": datetime(2024, 3, 15, 14, 30)})

    def test_float_banned(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize({"level": 8.0})

    def test_transaction_hash_format(self):
        tx_hash = Hasher.hash_transaction({"method": "storeLog", "args": {"logId": "A1"}})
        assert tx_hash.startswith("0x")
        assert len(tx_hash) == 66


class TestSigner:
    """Test Ed25519 signing."""

    def test_sign_and_verify(self):
        private, public = Signer.generate_keypair()
        signature = Signer.sign("0xabc", private)
        assert Signer.verify("0xabc", signature, public)

    def test_wrong_key_fails(self):
        private1, _ = Signer.generate_keypair()
        _, public2 = Signer.generate_keypair()
        assert not Signer.verify("0xabc", Signer.sign("0xabc", private1), public2)

    def test_tampered_message_fails(self):
        private, public = Signer.generate_keypair()
        assert not Signer.verify("0xdef", Signer.sign("0xabc", private), public)

    def test_garbage_signature_fails(self):
        _, public = Signer.generate_keypair()
        assert not Signer.verify("0xabc", "not-base64!!", public)

    def test_public_key_for(self):
        private, public = Signer.generate_keypair()
        assert Signer.public_key_for(private) == public


class TestSigningService:
    def test_from_private_key(self):
        private, public = Signer.generate_keypair()
        service = SigningService.from_private_key(private)
        assert service.public_key == public
        assert not service.is_ephemeral
        assert service.verify("0xabc", service.sign("0xabc"))

    def test_invalid_key_rejected(self):
        with pytest.raises(RuntimeError):
            SigningService.from_private_key("definitely not a key")

    def test_from_env(self, monkeypatch):
        private, public = Signer.generate_keypair()
        monkeypatch.setenv(SIGNING_KEY_ENV, private)
        assert SigningService.from_env().public_key == public

    def test_ephemeral_without_key(self, monkeypatch):
        monkeypatch.delenv(SIGNING_KEY_ENV, raising=False)
        assert SigningService.from_env().is_ephemeral

    def test_production_requires_key(self, monkeypatch):
        monkeypatch.delenv(SIGNING_KEY_ENV, raising=False)
        with pytest.raises(RuntimeError):
            SigningService.from_env(production=True)
