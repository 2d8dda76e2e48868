"""Constellation (DAG) key generation and address rules.

A DAG address is ``"DAG"`` + a parity digit + the last 36 base58 characters of
``sha256(PKCS_PREFIX || 04 || X || Y)`` over the uncompressed secp256k1 public
key. The parity digit is the sum of the numeric characters of that 36-character
tail, modulo 9.
"""
from __future__ import annotations

import hashlib
import re
import secrets
from typing import Tuple

import base58
from eth_keys import keys

# DER SubjectPublicKeyInfo header for an uncompressed secp256k1 point.
PKCS_PREFIX = bytes.fromhex("3056301006072a8648ce3d020106052b8104000a034200")
ADDRESS_PREFIX = "DAG"
ADDRESS_LENGTH = 40
_TAIL_LENGTH = 36
_BASE58_TAIL_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{36}$")

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _parity(tail: str) -> int:
    return sum(int(ch) for ch in tail if ch.isdigit()) % 9


def address_from_public_key(public_key: bytes) -> str:
    if len(public_key) == 64:
        public_key = b"\x04" + public_key
    if len(public_key) != 65 or public_key[0] != 4:
        raise ValueError("DAG addresses derive from an uncompressed secp256k1 public key")
    digest = hashlib.sha256(PKCS_PREFIX + public_key).digest()
    encoded = base58.b58encode(digest).decode("ascii")
    tail = encoded[-_TAIL_LENGTH:]
    return f"{ADDRESS_PREFIX}{_parity(tail)}{tail}"


def _private_key_bytes(private_key: str) -> bytes:
    candidate = (private_key or "").strip()
    if candidate.lower().startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("DAG private keys are 32 bytes of hex")
    raw = bytes.fromhex(candidate)
    value = int.from_bytes(raw, "big")
    if not 0 < value < SECP256K1_N:
        raise ValueError("private key is outside the secp256k1 range")
    return raw


def address_from_private_key(private_key: str) -> str:
    key = keys.PrivateKey(_private_key_bytes(private_key))
    return address_from_public_key(key.public_key.to_bytes())


def generate_keypair() -> Tuple[str, str]:
    """Return ``(address, private_key_hex)`` for a fresh DAG wallet."""
    while True:
        raw = secrets.token_bytes(32)
        if 0 < int.from_bytes(raw, "big") < SECP256K1_N:
            break
    key = keys.PrivateKey(raw)
    return address_from_public_key(key.public_key.to_bytes()), raw.hex()


def is_valid_address(address: str) -> bool:
    if not isinstance(address, str) or len(address) != ADDRESS_LENGTH:
        return False
    if not address.startswith(ADDRESS_PREFIX):
        return False
    parity_char = address[3]
    tail = address[4:]
    if not parity_char.isdigit() or not _BASE58_TAIL_RE.match(tail):
        return False
    return int(parity_char) == _parity(tail)


__all__ = [
    "ADDRESS_LENGTH",
    "address_from_private_key",
    "address_from_public_key",
    "generate_keypair",
    "is_valid_address",
]
