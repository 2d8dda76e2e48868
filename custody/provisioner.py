"""Custody wallet generation across the configured chains."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from eth_account import Account

from . import dag
from .chains import ChainFamily, chain_family, unique_symbols
from .config import NetworkConfig

logger = logging.getLogger(__name__)

KeypairGenerator = Callable[[], Tuple[str, str]]


@dataclass(frozen=True)
class ProvisionedWallet:
    chain: str
    address: str
    private_key: str = field(repr=False)

    def public(self) -> Dict[str, str]:
        return {"chain": self.chain, "address": self.address}


@dataclass(frozen=True)
class SkippedChain:
    chain: str
    reason: str


@dataclass
class ProvisioningResult:
    wallets: List[ProvisionedWallet] = field(default_factory=list)
    skipped: List[SkippedChain] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.skipped

    @property
    def chains(self) -> List[str]:
        return [wallet.chain for wallet in self.wallets]


def _generate_evm_keypair() -> Tuple[str, str]:
    account = Account.create()
    return account.address, "0x" + bytes(account.key).hex()


def _derive_evm_address(private_key: str) -> str:
    return Account.from_key(private_key).address


FAMILY_GENERATORS: Dict[ChainFamily, KeypairGenerator] = {
    ChainFamily.EVM: _generate_evm_keypair,
    ChainFamily.DAG: dag.generate_keypair,
}

FAMILY_DERIVERS: Dict[ChainFamily, Callable[[str], str]] = {
    ChainFamily.EVM: _derive_evm_address,
    ChainFamily.DAG: dag.address_from_private_key,
}


class WalletProvisioner:
    """Generates one independent keypair per requested chain.

    Unknown chains and failing generators are reported in
    :attr:`ProvisioningResult.skipped` instead of raising, so the caller decides
    whether a partial set is acceptable.
    """

    def __init__(
        self,
        networks: Mapping[str, NetworkConfig],
        generators: Optional[Mapping[ChainFamily, KeypairGenerator]] = None,
    ) -> None:
        self.networks = dict(networks)
        self._generators = dict(FAMILY_GENERATORS if generators is None else generators)

    def supported_chains(self) -> List[str]:
        return [
            symbol
            for symbol, network in self.networks.items()
            if chain_family(network) in self._generators
        ]

    def _family_for(self, chain: str) -> Optional[ChainFamily]:
        network = self.networks.get(chain)
        if network is None:
            return None
        return chain_family(network)

    def provision(self, identity_handle: str, chains: Iterable[str]) -> ProvisioningResult:
        result = ProvisioningResult()
        for chain in unique_symbols(chains):
            family = self._family_for(chain)
            generator = self._generators.get(family) if family is not None else None
            if generator is None:
                logger.warning(
                    "Skipping unsupported chain %s while provisioning %s", chain, identity_handle
                )
                result.skipped.append(SkippedChain(chain=chain, reason="unsupported chain"))
                continue
            try:
                address, private_key = generator()
            except Exception as exc:
                logger.warning(
                    "Key generation failed for %s (%s): %s",
                    chain,
                    identity_handle,
                    type(exc).__name__,
                )
                result.skipped.append(SkippedChain(chain=chain, reason="generator unavailable"))
                continue
            result.wallets.append(
                ProvisionedWallet(chain=chain, address=address, private_key=private_key)
            )

        logger.info(
            "Provisioned %s custody wallets for %s (skipped=%s)",
            len(result.wallets),
            identity_handle,
            [item.chain for item in result.skipped],
        )
        return result

    def derive_address(self, chain: str, private_key: str) -> str:
        """Re-derive the public address for ``private_key`` on ``chain``."""
        family = self._family_for(chain)
        if family is None or family not in FAMILY_DERIVERS:
            raise ValueError(f"Unsupported chain: {chain}")
        return FAMILY_DERIVERS[family](private_key)


__all__ = [
    "ProvisionedWallet",
    "ProvisioningResult",
    "SkippedChain",
    "WalletProvisioner",
]
