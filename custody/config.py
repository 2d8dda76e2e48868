"""Settings loader for the identity and custody engine."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigError

VAULT_KEY_BYTES = 32
MIN_TOKEN_SECRET_BYTES = 32


class NetworkConfig(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    family: str = Field(pattern=r"^(evm|dag)$")
    rpc_url: str = Field(min_length=1, max_length=512)
    chain_id: Optional[int] = Field(default=None, ge=1)
    fee_wallet: Optional[str] = Field(default=None, max_length=128)

    model_config = {"frozen": True}


def default_networks() -> Dict[str, NetworkConfig]:
    return {
        "ETH": NetworkConfig(
            name="Ethereum",
            family="evm",
            rpc_url="https://mainnet.infura.io/v3/default",
            chain_id=1,
        ),
        "BNB": NetworkConfig(
            name="Binance Smart Chain",
            family="evm",
            rpc_url="https://bsc-dataseed.binance.org/",
            chain_id=56,
        ),
        "AVAX": NetworkConfig(
            name="Avalanche",
            family="evm",
            rpc_url="https://api.avax.network/ext/bc/C/rpc",
            chain_id=43114,
        ),
        "Base": NetworkConfig(
            name="Base",
            family="evm",
            rpc_url="https://mainnet.base.org",
            chain_id=8453,
        ),
        "DAG": NetworkConfig(
            name="Constellation",
            family="dag",
            rpc_url="https://l1-lb-mainnet.constellationnetwork.io",
        ),
    }


def _split_list(value: str) -> List[str]:
    parts = re.split(r"[\s,]+", value.strip())
    return [part for part in parts if part]


def decode_vault_key(raw: Optional[str]) -> bytes:
    """Resolve the configured vault secret into exactly 32 key bytes.

    Accepts 64 hex characters (optionally ``0x``-prefixed) or a raw string whose
    UTF-8 encoding is 32 bytes long.
    """
    if raw is None or not raw.strip():
        raise ConfigError("Vault encryption key is not configured")
    candidate = raw.strip()
    hex_candidate = candidate[2:] if candidate.lower().startswith("0x") else candidate
    if len(hex_candidate) == VAULT_KEY_BYTES * 2 and re.fullmatch(r"[0-9a-fA-F]+", hex_candidate):
        return bytes.fromhex(hex_candidate)
    key = candidate.encode("utf-8")
    if len(key) != VAULT_KEY_BYTES:
        raise ConfigError(
            f"Vault encryption key must be exactly {VAULT_KEY_BYTES} bytes (got {len(key)})"
        )
    return key


class CustodySettings(BaseSettings):
    vault_encryption_key: Optional[str] = Field(default=None, repr=False)
    token_signing_secret: Optional[str] = Field(default=None, repr=False)
    token_algorithm: str = Field(default="HS256")
    token_ttl_seconds: int = Field(default=3600)

    app_name: str = Field(default="HyperMatrix", min_length=1, max_length=64)
    default_chains: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["Base", "DAG", "ETH", "BNB", "AVAX"]
    )
    networks: Dict[str, NetworkConfig] = Field(default_factory=default_networks)

    challenge_ttl_seconds: int = Field(default=300)
    challenge_clock_skew_seconds: int = Field(default=30)
    challenge_single_use: bool = Field(default=False)
    require_full_provisioning: bool = Field(default=False)

    store_path: Path = Field(default=Path("/app/data/custody.json"))
    revoked_tokens_path: Path = Field(default=Path("/app/data/revoked_tokens.json"))
    challenge_nonces_path: Path = Field(default=Path("/app/data/challenge_nonces.json"))
    audit_log_path: Path = Field(default=Path("/app/data/audit/identities.log"))

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8090)
    api_root_path: str = Field(default="")
    auth_rate_limit_per_minute: int = Field(default=30)

    model_config = SettingsConfigDict(
        env_prefix="CUSTODY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    @field_validator("default_chains", mode="before")
    @classmethod
    def parse_default_chains(cls, value):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return _split_list(value)
        return value

    @field_validator("token_algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        if value not in {"HS256", "HS384", "HS512"}:
            raise ValueError("token_algorithm must be an HMAC algorithm (HS256/HS384/HS512)")
        return value

    @field_validator(
        "token_ttl_seconds",
        "challenge_ttl_seconds",
        "api_port",
        "auth_rate_limit_per_minute",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("challenge_clock_skew_seconds")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Value must not be negative")
        return value

    @model_validator(mode="after")
    def validate_secrets_and_chains(self) -> "CustodySettings":
        decode_vault_key(self.vault_encryption_key)
        secret = (self.token_signing_secret or "").strip()
        if not secret:
            raise ValueError("token_signing_secret is not configured")
        if len(secret.encode("utf-8")) < MIN_TOKEN_SECRET_BYTES:
            raise ValueError(
                f"token_signing_secret must be at least {MIN_TOKEN_SECRET_BYTES} bytes"
            )
        if not self.default_chains:
            raise ValueError("default_chains must name at least one chain")
        unknown = [chain for chain in self.default_chains if chain not in self.networks]
        if unknown:
            raise ValueError(f"default_chains references unconfigured networks: {unknown}")
        return self

    @property
    def vault_key(self) -> bytes:
        return decode_vault_key(self.vault_encryption_key)


def load_settings(**overrides) -> CustodySettings:
    """Build settings once at startup; any problem is a fatal ``ConfigError``."""
    try:
        return CustodySettings(**overrides)
    except ConfigError:
        raise
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "CustodySettings",
    "NetworkConfig",
    "VAULT_KEY_BYTES",
    "decode_vault_key",
    "default_networks",
    "load_settings",
]
