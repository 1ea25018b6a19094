# v402/protocol/address.py
"""
Solana address helpers: program derived addresses and associated token accounts.
"""
import hashlib
from typing import List, Tuple

import base58

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

_PDA_MARKER = b"ProgramDerivedAddress"

# ed25519 curve parameters
_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def decode_address(address: str) -> bytes:
    """
    Decode a base58 Solana address to its 32 raw bytes.

    Raises:
        ValueError: If the address is not valid base58 or not 32 bytes long
    """
    raw = base58.b58decode(address)
    if len(raw) != 32:
        raise ValueError(f"Solana address must decode to 32 bytes, got {len(raw)}")
    return raw


def encode_address(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def is_on_curve(point: bytes) -> bool:
    """True when the 32 bytes decompress to a point on the ed25519 curve."""
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    y %= _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return True
    # Euler's criterion: x2 is a square iff x2^((p-1)/2) == 1
    return pow(x2, (_P - 1) // 2, _P) == 1


def find_program_address(seeds: List[bytes], program_id: str) -> Tuple[str, int]:
    """
    Find the first off-curve program derived address, trying bump seeds 255 down to 0.

    Returns:
        Tuple of (address, bump)
    """
    program = decode_address(program_id)
    for bump in range(255, -1, -1):
        candidate = hashlib.sha256(
            b"".join(seeds) + bytes([bump]) + program + _PDA_MARKER
        ).digest()
        if not is_on_curve(candidate):
            return encode_address(candidate), bump
    raise ValueError("Unable to find a viable program address bump seed")


def get_associated_token_address(
    owner: str,
    mint: str,
    token_program_id: str = TOKEN_PROGRAM_ID,
) -> str:
    """Derive the associated token account of `owner` for `mint`."""
    seeds = [
        decode_address(owner),
        decode_address(token_program_id),
        decode_address(mint),
    ]
    address, _ = find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return address
