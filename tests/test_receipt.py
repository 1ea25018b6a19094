# tests/test_receipt.py
"""
Unit tests for receipt signing and verification.
"""
import base64
import hashlib
import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from v402.api.models.receipt import Receipt
from v402.protocol.receipt import (
    RECEIPT_SIGNED_FIELDS,
    RECEIPT_VERSION,
    build_receipt,
    canonical_receipt_payload,
    generate_signing_keypair,
    load_private_key,
    public_key_hex,
    receipt_hash,
    response_hash,
    sign_receipt,
    verify_receipt,
)

from factories import SIGNING_PUBKEY_HEX, SIGNING_SEED_HEX


@pytest.fixture
def payload():
    return {
        "receiptId": "rcpt-1",
        "intentId": "intent-1",
        "toolId": "tool-search",
        "requestHash": "a" * 64,
        "responseHash": "b" * 64,
        "txSig": "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW",
        "payer": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
        "merchant": "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM",
        "timestamp": "2026-01-01T00:00:00.000Z",
    }


class TestCanonicalPayload:
    """Test the signed field subset."""

    def test_only_signed_fields(self, payload):
        """Unrelated fields do not change the canonical payload."""
        extended = dict(payload, amount="0.01", extra="x")
        assert canonical_receipt_payload(extended) == canonical_receipt_payload(payload)

    def test_sorted_keys(self, payload):
        """Fields are emitted key-sorted."""
        keys = list(json.loads(canonical_receipt_payload(payload)).keys())
        assert keys == sorted(RECEIPT_SIGNED_FIELDS)

    def test_receipt_hash(self, payload):
        """receipt_hash is SHA-256 of the canonical payload."""
        expected = hashlib.sha256(canonical_receipt_payload(payload).encode()).hexdigest()
        assert receipt_hash(payload) == expected


class TestKeys:
    """Test key loading."""

    def test_rfc8032_public_key(self):
        """The RFC 8032 seed yields the published public key."""
        assert public_key_hex(SIGNING_SEED_HEX) == SIGNING_PUBKEY_HEX

    def test_raw_seed_and_hex_equivalent(self):
        """A raw 32-byte seed loads the same key as its hex."""
        assert public_key_hex(bytes.fromhex(SIGNING_SEED_HEX)) == SIGNING_PUBKEY_HEX

    def test_pem_private_key(self):
        """PKCS#8 PEM keys are accepted."""
        key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(SIGNING_SEED_HEX))
        pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        assert public_key_hex(pem) == SIGNING_PUBKEY_HEX

    def test_bad_seed_rejected(self):
        """Seeds that are not 32 bytes fail."""
        with pytest.raises(ValueError):
            load_private_key("abcd")

    def test_generate_keypair(self):
        """Generated keypairs are consistent."""
        seed, pub = generate_signing_keypair()
        assert len(bytes.fromhex(seed)) == 32
        assert public_key_hex(seed) == pub


class TestSignVerify:
    """Test signature round trip."""

    def test_round_trip(self, payload):
        """A signature verifies with the matching public key."""
        signature = sign_receipt(payload, SIGNING_SEED_HEX)
        assert len(base64.b64decode(signature)) == 64
        assert verify_receipt(payload, signature, SIGNING_PUBKEY_HEX) is True

    def test_pem_public_key(self, payload):
        """Verification accepts a PEM public key."""
        signature = sign_receipt(payload, SIGNING_SEED_HEX)
        public = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(SIGNING_SEED_HEX)).public_key()
        pem = public.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        assert verify_receipt(payload, signature, pem) is True

    @pytest.mark.parametrize("field", RECEIPT_SIGNED_FIELDS)
    def test_mutated_field_fails(self, payload, field):
        """Changing any signed field invalidates the signature."""
        signature = sign_receipt(payload, SIGNING_SEED_HEX)
        tampered = dict(payload, **{field: payload[field] + "x"})
        assert verify_receipt(tampered, signature, SIGNING_PUBKEY_HEX) is False

    def test_other_key_fails(self, payload):
        """A different public key does not verify."""
        signature = sign_receipt(payload, SIGNING_SEED_HEX)
        _, other_pub = generate_signing_keypair()
        assert verify_receipt(payload, signature, other_pub) is False

    @pytest.mark.parametrize("signature,key", [
        ("not base64!", SIGNING_PUBKEY_HEX),
        (base64.b64encode(b"short").decode(), SIGNING_PUBKEY_HEX),
        (None, SIGNING_PUBKEY_HEX),
        ("AAAA", "zz"),
        ("AAAA", "abcd"),
        ("AAAA", "-----BEGIN PUBLIC KEY-----\ngarbage\n-----END PUBLIC KEY-----"),
        ("AAAA", 12345),
    ])
    def test_malformed_input_returns_false(self, payload, signature, key):
        """Malformed signatures or keys never raise."""
        assert verify_receipt(payload, signature, key) is False


class TestResponseHash:
    """Test response hashing."""

    def test_header_order_irrelevant(self):
        """Header insertion order does not change the hash."""
        h1 = response_hash(200, {"a": "1", "b": "2"}, b"ok")
        h2 = response_hash(200, {"b": "2", "a": "1"}, b"ok")
        assert h1 == h2

    def test_status_and_body_matter(self):
        """Status and body are covered."""
        base = response_hash(200, {}, b"ok")
        assert response_hash(201, {}, b"ok") != base
        assert response_hash(200, {}, b"ok!") != base

    def test_bytes_and_text_equivalent(self):
        """UTF-8 bytes hash the same as the decoded text."""
        assert response_hash(200, {}, "héllo".encode()) == response_hash(200, {}, "héllo")


class TestBuildReceipt:
    """Test full receipt construction."""

    def test_v2_fields(self, payload):
        """Built receipts carry version, signer and hash."""
        data = build_receipt(payload, SIGNING_SEED_HEX, amount="0.01", currency="USDC", block_height=42)
        receipt = Receipt(**data)
        assert receipt.version == RECEIPT_VERSION
        assert receipt.signerPubkey == SIGNING_PUBKEY_HEX
        assert receipt.receipt_hash == receipt_hash(payload)
        assert receipt.block_height == 42
        assert verify_receipt(receipt.payload(), receipt.signature, SIGNING_PUBKEY_HEX) is True

    def test_none_extras_omitted(self, payload):
        """Unset v2 extras are left out."""
        data = build_receipt(payload, SIGNING_SEED_HEX, block_height=None)
        assert "block_height" not in data
