"""Chain symbols, families and address normalisation."""
from __future__ import annotations

import re
from enum import Enum
from typing import Dict, Iterable, List

from eth_utils import is_checksum_address

from .config import NetworkConfig

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ChainFamily(str, Enum):
    EVM = "evm"
    DAG = "dag"


def chain_family(network: NetworkConfig) -> ChainFamily:
    return ChainFamily(network.family)


def is_eth_address(value: str) -> bool:
    """Format check; mixed-case input must also carry a valid EIP-55 checksum."""
    if not isinstance(value, str) or not _ETH_ADDRESS_RE.match(value):
        return False
    body = value[2:]
    if body.lower() == body or body.upper() == body:
        return True
    return is_checksum_address(value)


def normalize_eth_address(value: str) -> str:
    candidate = (value or "").strip()
    if not is_eth_address(candidate):
        raise ValueError("address must be a 0x-prefixed 20-byte hex string")
    return candidate.lower()


def unique_symbols(chains: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for chain in chains:
        if chain not in seen:
            seen[chain] = None
    return list(seen)


__all__ = [
    "ChainFamily",
    "chain_family",
    "is_eth_address",
    "normalize_eth_address",
    "unique_symbols",
]
