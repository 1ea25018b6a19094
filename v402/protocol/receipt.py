# v402/protocol/receipt.py
"""
Ed25519 receipt signing and verification.

A receipt signs a fixed subset of fields rendered with stable_stringify, so
any implementation that renders the same fields verifies the same bytes.
"""
import base64
import binascii
import hashlib
import logging
from typing import Any, Dict, Mapping, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from v402.protocol.canonical import sha256_hex, stable_stringify

logger = logging.getLogger(__name__)

RECEIPT_VERSION = "2"

RECEIPT_SIGNED_FIELDS = (
    "receiptId",
    "intentId",
    "toolId",
    "requestHash",
    "responseHash",
    "txSig",
    "payer",
    "merchant",
    "timestamp",
)

KeyInput = Union[str, bytes]


def _as_mapping(payload: Any) -> Mapping[str, Any]:
    if hasattr(payload, "model_dump"):
        return payload.model_dump()
    return payload


def canonical_receipt_payload(payload: Any) -> str:
    """Stable string of the signed receipt fields; absent fields are omitted."""
    data = _as_mapping(payload)
    ordered = {}
    for key in RECEIPT_SIGNED_FIELDS:
        value = data.get(key)
        if value is not None:
            ordered[key] = str(value)
    return stable_stringify(ordered)


def receipt_hash(payload: Any) -> str:
    """SHA-256 of the canonical signed payload (v2 receipt_hash field)."""
    return sha256_hex(canonical_receipt_payload(payload))


def load_private_key(key: Union[KeyInput, Ed25519PrivateKey]) -> Ed25519PrivateKey:
    """
    Load an Ed25519 private key.

    Accepts a PEM (PKCS#8) string or bytes, a raw 32-byte seed, or a 64-char
    hex seed.

    Raises:
        ValueError: If the key is in none of those forms
    """
    if isinstance(key, Ed25519PrivateKey):
        return key

    if isinstance(key, str):
        text = key.strip()
        if text.startswith("-----"):
            loaded = serialization.load_pem_private_key(text.encode("ascii"), password=None)
            if not isinstance(loaded, Ed25519PrivateKey):
                raise ValueError("PEM key is not an Ed25519 private key")
            return loaded
        try:
            seed = bytes.fromhex(text)
        except ValueError:
            raise ValueError("Ed25519 seed must be hex or PEM")
    elif isinstance(key, (bytes, bytearray)):
        if bytes(key).lstrip().startswith(b"-----"):
            return load_private_key(bytes(key).decode("ascii"))
        seed = bytes(key)
    else:
        raise ValueError(f"Unsupported private key type: {type(key).__name__}")

    if len(seed) != 32:
        raise ValueError("Ed25519 seed must be 32 bytes")
    return Ed25519PrivateKey.from_private_bytes(seed)


def load_public_key(key: Union[KeyInput, Ed25519PublicKey]) -> Ed25519PublicKey:
    """
    Load an Ed25519 public key from PEM, 32 raw bytes or 64-char hex.

    Raises:
        ValueError: If the key is in none of those forms
    """
    if isinstance(key, Ed25519PublicKey):
        return key

    if isinstance(key, str):
        text = key.strip()
        if text.startswith("-----"):
            loaded = serialization.load_pem_public_key(text.encode("ascii"))
            if not isinstance(loaded, Ed25519PublicKey):
                raise ValueError("PEM key is not an Ed25519 public key")
            return loaded
        raw = bytes.fromhex(text)
    elif isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    else:
        raise ValueError(f"Unsupported public key type: {type(key).__name__}")

    if len(raw) != 32:
        raise ValueError("Ed25519 public key must be 32 bytes")
    return Ed25519PublicKey.from_public_bytes(raw)


def public_key_hex(private_key: Union[KeyInput, Ed25519PrivateKey]) -> str:
    """Hex of the raw public key matching a private key."""
    public = load_private_key(private_key).public_key()
    return public.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def generate_signing_keypair() -> Tuple[str, str]:
    """New Ed25519 keypair as (seed_hex, public_key_hex)."""
    private = Ed25519PrivateKey.generate()
    seed = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return seed.hex(), public_key_hex(private)


def sign_message(message: str, private_key: Union[KeyInput, Ed25519PrivateKey]) -> str:
    """Sign a UTF-8 message; returns the base64 signature."""
    signature = load_private_key(private_key).sign(message.encode("utf-8"))
    return base64.b64encode(signature).decode("ascii")


def verify_message(message: str, signature: str, public_key: Union[KeyInput, Ed25519PublicKey]) -> bool:
    """
    Verify a base64 Ed25519 signature over a UTF-8 message.

    Returns False on any malformed key, signature or mismatch; never raises.
    """
    try:
        key = load_public_key(public_key)
        raw_signature = base64.b64decode(signature, validate=True)
        key.verify(raw_signature, message.encode("utf-8"))
        return True
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError, binascii.Error):
        return False


def sign_receipt(payload: Any, private_key: Union[KeyInput, Ed25519PrivateKey]) -> str:
    """Sign the canonical receipt payload; returns the base64 signature."""
    return sign_message(canonical_receipt_payload(payload), private_key)


def verify_receipt(payload: Any, signature: str, public_key: Union[KeyInput, Ed25519PublicKey]) -> bool:
    """True iff `signature` is a valid signature of the payload by `public_key`."""
    try:
        message = canonical_receipt_payload(payload)
    except (AttributeError, TypeError) as e:
        logger.debug(f"Malformed receipt payload: {e}")
        return False
    return verify_message(message, signature, public_key)


def response_body_text(body: Union[str, bytes, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    return body


def response_hash(status: int, headers: Mapping[str, str], body: Union[str, bytes, None]) -> str:
    """SHA-256 of stable_stringify({status, headers, body})."""
    return sha256_hex(stable_stringify({
        "status": status,
        "headers": dict(headers),
        "body": response_body_text(body),
    }))


def build_receipt(
    payload: Dict[str, Any],
    private_key: Union[KeyInput, Ed25519PrivateKey],
    **extra: Any,
) -> Dict[str, Any]:
    """
    Sign a payload and return the full receipt dict.

    `extra` carries the unsigned v2 fields (amount, currency, block_height).
    """
    signature = sign_receipt(payload, private_key)
    receipt = dict(payload)
    receipt.update({
        "signature": signature,
        "signerPubkey": public_key_hex(private_key),
        "version": RECEIPT_VERSION,
        "receipt_hash": receipt_hash(payload),
    })
    receipt.update({k: v for k, v in extra.items() if v is not None})
    return receipt
