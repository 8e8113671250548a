"""
Cryptography Unit Tests
=======================

[UNIT] Tests for core/crypto.py: identities, event ids and Schnorr signatures.
"""

import hashlib

import pytest


class TestIdentity:
    """Test Identity class."""

    def test_generate_identity(self, identity):
        """Generated identity has a 32-byte x-only pubkey."""
        assert len(identity.pubkey) == 64
        bytes.fromhex(identity.pubkey)

    def test_identity_uniqueness(self, identity, requester):
        """Different identities have different pubkeys."""
        assert identity.pubkey != requester.pubkey

    def test_known_pubkey(self):
        """Secret key 3 maps to the BIP-340 reference pubkey."""
        from core.crypto import Identity

        restored = Identity.from_hex("00" * 31 + "03")
        assert restored.pubkey == (
            "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
        )

    def test_export_import(self, identity):
        """Exported key restores the same identity."""
        from core.crypto import Identity

        restored = Identity.from_hex(identity.export_hex())
        assert restored.pubkey == identity.pubkey

    def test_from_hex_rejects_short_key(self):
        """Keys that are not 32 bytes are rejected."""
        from core.crypto import Identity

        with pytest.raises(ValueError):
            Identity.from_hex("abcd")

    def test_sign_verify(self, identity):
        """Signature over an event id verifies against the pubkey."""
        from core.crypto import verify_signature

        event_id = hashlib.sha256(b"payload").hexdigest()
        sig = identity.sign(event_id)

        assert len(sig) == 128
        assert verify_signature(identity.pubkey, event_id, sig) is True

    def test_verify_wrong_key(self, identity, requester):
        """Signature does not verify for another pubkey."""
        from core.crypto import verify_signature

        event_id = hashlib.sha256(b"payload").hexdigest()
        sig = identity.sign(event_id)

        assert verify_signature(requester.pubkey, event_id, sig) is False

    def test_verify_garbage(self, identity):
        """Malformed inputs return False instead of raising."""
        from core.crypto import verify_signature

        assert verify_signature("zz", "00" * 32, "00" * 64) is False
        assert verify_signature(identity.pubkey, "00" * 32, "not-hex") is False

    def test_sign_requires_digest(self, identity):
        """Only 32-byte ids can be signed."""
        with pytest.raises(ValueError):
            identity.sign("abcd")


class TestEventId:
    """Test canonical serialization."""

    def test_canonical_serialization(self):
        """Compact JSON array in field order."""
        from core.crypto import canonical_serialize

        raw = canonical_serialize("ab", 1, 5050, [["e", "x"]], "hi")
        assert raw == b'[0,"ab",1,5050,[["e","x"]],"hi"]'

    def test_non_ascii_not_escaped(self):
        """Non-ASCII content is serialized as UTF-8."""
        from core.crypto import canonical_serialize

        raw = canonical_serialize("ab", 1, 1, [], "привет")
        assert "привет".encode("utf-8") in raw
        assert b"\\u" not in raw

    def test_event_id_is_sha256(self):
        """Event id is the sha256 of the canonical bytes."""
        from core.crypto import canonical_serialize, compute_event_id

        raw = canonical_serialize("ab", 1, 1, [], "")
        assert compute_event_id("ab", 1, 1, [], "") == hashlib.sha256(raw).hexdigest()
