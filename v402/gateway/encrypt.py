# v402/gateway/encrypt.py
"""
AES-256-GCM protection for merchant signing keys at rest.

Layout: base64(nonce(12) | tag(16) | ciphertext).
"""
import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_LEN = 12
TAG_LEN = 16


def _load_key(encryption_key: str) -> bytes:
    try:
        key = bytes.fromhex(encryption_key)
    except (TypeError, ValueError):
        raise ValueError("V402_ENCRYPTION_KEY must be 32-byte hex")
    if len(key) != 32:
        raise ValueError("V402_ENCRYPTION_KEY must be 32-byte hex")
    return key


def encrypt_merchant_key(plaintext: str, encryption_key: str) -> str:
    """Encrypt a signing seed (hex or PEM text) for storage."""
    nonce = os.urandom(NONCE_LEN)
    # cryptography appends the tag to the ciphertext
    sealed = AESGCM(_load_key(encryption_key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LEN], sealed[-TAG_LEN:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_merchant_key(ciphertext: str, encryption_key: str) -> str:
    """
    Decrypt a stored signing key.

    Raises:
        ValueError: On a bad key, truncated input or failed authentication
    """
    key = _load_key(encryption_key)
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Invalid ciphertext encoding")
    if len(raw) < NONCE_LEN + TAG_LEN:
        raise ValueError("Invalid ciphertext")

    nonce = raw[:NONCE_LEN]
    tag = raw[NONCE_LEN:NONCE_LEN + TAG_LEN]
    body = raw[NONCE_LEN + TAG_LEN:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, body + tag, None)
    except InvalidTag:
        raise ValueError("Merchant key decryption failed (wrong key or tampered data)")
    return plaintext.decode("utf-8")
