"""Identity records: handles, authenticating wallets and custody wallets."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import DuplicateIdentityError
from .store import DocumentStore, DuplicateKeyError, Insert

logger = logging.getLogger(__name__)

IDENTITIES = "identities"
CUSTODY_KEYS = "custody_keys"
AUTH_ADDRESS_INDEX = "auth_address"

HANDLE_RE = re.compile(r"^[A-Za-z0-9_.#-]{3,32}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def handle_key(handle: str) -> str:
    return handle.strip().lower()


def is_valid_handle(handle: str) -> bool:
    return isinstance(handle, str) and bool(HANDLE_RE.match(handle))


def auth_index_value(chain: str, address: str) -> str:
    # Hex (EVM) addresses are case-insensitive; base58 DAG addresses are not.
    if address[:2].lower() == "0x":
        address = address.lower()
    return f"{chain}:{address}"


def _auth_index(document: Mapping[str, Any]) -> Iterable[str]:
    auth_wallet = document.get("auth_wallet") or {}
    if not isinstance(auth_wallet, dict):
        return []
    return [
        auth_index_value(chain, address)
        for chain, address in auth_wallet.items()
        if isinstance(address, str) and address
    ]


@dataclass(frozen=True)
class CustodyWallet:
    chain: str
    address: str

    def as_dict(self) -> Dict[str, str]:
        return {"chain": self.chain, "address": self.address}


@dataclass(frozen=True)
class CustodyKeyRecord:
    chain: str
    address: str
    encrypted_private_key: str = field(repr=False)

    def as_dict(self) -> Dict[str, str]:
        return {
            "chain": self.chain,
            "address": self.address,
            "encrypted_private_key": self.encrypted_private_key,
        }


@dataclass(frozen=True)
class Identity:
    handle: str
    auth_wallet: Dict[str, str]
    custody_wallets: List[CustodyWallet]
    created_at: str
    last_seen_at: Optional[str] = None
    sign_in_count: int = 0

    def public_wallets(self) -> List[Dict[str, str]]:
        return [wallet.as_dict() for wallet in self.custody_wallets]

    def to_document(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "auth_wallet": dict(self.auth_wallet),
            "custody_wallets": self.public_wallets(),
            "created_at": self.created_at,
            "last_seen_at": self.last_seen_at,
            "sign_in_count": self.sign_in_count,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Identity":
        wallets = [
            CustodyWallet(chain=str(item["chain"]), address=str(item["address"]))
            for item in document.get("custody_wallets") or []
            if isinstance(item, dict) and item.get("chain") and item.get("address")
        ]
        return cls(
            handle=str(document["handle"]),
            auth_wallet={str(k): str(v) for k, v in (document.get("auth_wallet") or {}).items()},
            custody_wallets=wallets,
            created_at=str(document.get("created_at") or ""),
            last_seen_at=document.get("last_seen_at"),
            sign_in_count=int(document.get("sign_in_count") or 0),
        )


class IdentityLedger:
    """Idempotent lookup and exactly-once creation of player identities.

    Handles compare case-insensitively. Authenticating addresses are unique per
    chain across all identities, enforced by a unique index on the store, so the
    uniqueness check and the insert are one atomic step.
    """

    def __init__(self, store: DocumentStore, audit_log_path: Optional[Path] = None) -> None:
        self.store = store
        self.audit_log_path = audit_log_path
        self.store.ensure_unique_index(IDENTITIES, AUTH_ADDRESS_INDEX, _auth_index)

    def _write_audit_event(self, event: str, handle: str, payload: Dict[str, Any]) -> None:
        if not self.audit_log_path:
            return
        try:
            self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "timestamp": isoformat(utcnow()),
                "event": event,
                "handle": handle,
                **payload,
            }
            with self.audit_log_path.open("a", encoding="utf-8") as handle_:
                json.dump(entry, handle_, separators=(",", ":"))
                handle_.write("\n")
        except Exception as exc:  # pragma: no cover - audit logging best effort
            logger.error("Failed to append audit log for %s: %s", event, exc)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def exists(self, handle: str) -> Optional[Identity]:
        if not handle:
            return None
        document = self.store.find_one(IDENTITIES, handle_key(handle))
        return Identity.from_document(document) if document else None

    def exists_by_auth_address(self, address: str, chain: str) -> Optional[Identity]:
        if not address or not chain:
            return None
        found = self.store.find_by_index(IDENTITIES, AUTH_ADDRESS_INDEX, auth_index_value(chain, address))
        if found is None:
            return None
        return Identity.from_document(found[1])

    def key_records(self, handle: str) -> List[CustodyKeyRecord]:
        document = self.store.find_one(CUSTODY_KEYS, handle_key(handle))
        if not document:
            return []
        return [
            CustodyKeyRecord(
                chain=str(item["chain"]),
                address=str(item["address"]),
                encrypted_private_key=str(item["encrypted_private_key"]),
            )
            for item in document.get("wallets") or []
            if isinstance(item, dict)
        ]

    def count(self) -> int:
        return self.store.count(IDENTITIES)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        handle: str,
        auth_wallet: Mapping[str, str],
        custody_wallets: Sequence[CustodyWallet],
        key_records: Optional[Sequence[CustodyKeyRecord]] = None,
    ) -> Identity:
        """Persist a new identity (and its key records) in one atomic write.

        Raises :class:`DuplicateIdentityError` if the handle or any
        authenticating address is already registered; nothing is written in
        that case.
        """
        if not is_valid_handle(handle):
            raise ValueError("handle is not valid")
        if not auth_wallet:
            raise ValueError("auth_wallet must contain at least one address")

        identity = Identity(
            handle=handle,
            auth_wallet=dict(auth_wallet),
            custody_wallets=list(custody_wallets),
            created_at=isoformat(utcnow()),
        )
        key = handle_key(handle)
        inserts = [Insert(collection=IDENTITIES, key=key, document=identity.to_document())]
        if key_records:
            inserts.append(
                Insert(
                    collection=CUSTODY_KEYS,
                    key=key,
                    document={
                        "handle": handle,
                        "wallets": [record.as_dict() for record in key_records],
                    },
                )
            )

        try:
            self.store.insert_many(inserts)
        except DuplicateKeyError as exc:
            duplicate_field = "auth_address" if exc.index == AUTH_ADDRESS_INDEX else "handle"
            self._write_audit_event(
                "identity_rejected",
                handle,
                {"reason": f"duplicate {duplicate_field}"},
            )
            raise DuplicateIdentityError(
                f"Identity {duplicate_field} already registered",
                field=duplicate_field,
            ) from exc

        self._write_audit_event(
            "identity_created",
            handle,
            {
                "auth_chains": sorted(identity.auth_wallet),
                "custody_chains": [wallet.chain for wallet in identity.custody_wallets],
            },
        )
        logger.info(
            "Registered identity %s with %s custody wallets",
            handle,
            len(identity.custody_wallets),
        )
        return identity

    def record_sign_in(self, handle: str) -> Identity:
        def bump(document: Mapping[str, Any]) -> Dict[str, Any]:
            return {
                "last_seen_at": isoformat(utcnow()),
                "sign_in_count": int(document.get("sign_in_count") or 0) + 1,
            }

        try:
            updated = self.store.modify(IDENTITIES, handle_key(handle), bump)
        except KeyError:
            raise KeyError(f"Unknown identity {handle}") from None
        return Identity.from_document(updated)


__all__ = [
    "CustodyKeyRecord",
    "CustodyWallet",
    "Identity",
    "IdentityLedger",
    "auth_index_value",
    "is_valid_handle",
]
