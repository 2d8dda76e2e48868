"""End-to-end sign-in and registration flow."""
from __future__ import annotations

import logging
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .auth import AuthScheme, Authenticator, normalize_subject_address
from .config import CustodySettings
from .errors import (
    AuthenticationFailure,
    CustodyError,
    DuplicateIdentityError,
    FailureReason,
    PersistenceError,
    ProvisioningError,
    ValidationError,
    VaultError,
)
from .identities import (
    CustodyKeyRecord,
    CustodyWallet,
    Identity,
    IdentityLedger,
    is_valid_handle,
)
from .provisioner import ProvisionedWallet, WalletProvisioner
from .store import DocumentStore
from .tokens import SessionTokenIssuer
from .vault import KeyVault

logger = logging.getLogger(__name__)

GENERATED_HANDLE_PREFIX = "temp_name#"
MAX_HANDLE_ATTEMPTS = 8
_SCOPE_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


@dataclass(frozen=True)
class AuthRequest:
    subject_address: str
    scheme: Any
    scope_context: str
    signed_proof: Optional[str] = None
    nonce: Optional[str] = None
    requested_handle: Optional[str] = None


class AuthResponse(ABC):
    status: str = ""

    @abstractmethod
    def as_dict(self) -> Dict[str, Any]:
        """JSON-safe body for the HTTP layer."""


@dataclass(frozen=True)
class AwaitingSignature(AuthResponse):
    message: str
    nonce: str
    status: str = field(default="awaiting_signature", init=False)

    def as_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "nonce": self.nonce}


@dataclass(frozen=True)
class Success(AuthResponse):
    token: str = field(repr=False)
    handle: str
    custody_wallets: List[Dict[str, str]]
    created: bool = False
    status: str = field(default="success", init=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "token": self.token,
            "handle": self.handle,
            "custody_wallets": [dict(item) for item in self.custody_wallets],
            "created": self.created,
        }


@dataclass(frozen=True)
class Failure(AuthResponse):
    reason: FailureReason
    status: str = field(default="failure", init=False)

    def as_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "reason": self.reason.value}


def generate_handle() -> str:
    return f"{GENERATED_HANDLE_PREFIX}{secrets.randbelow(100000):05d}"


class IdentityCustodyEngine:
    """Sequences challenge, verification, provisioning, persistence and token minting.

    Every error below this class is mapped onto :class:`FailureReason`; callers
    only ever see an :class:`AuthResponse`.
    """

    def __init__(
        self,
        settings: CustodySettings,
        *,
        vault: KeyVault,
        provisioner: WalletProvisioner,
        ledger: IdentityLedger,
        authenticator: Authenticator,
        tokens: SessionTokenIssuer,
    ) -> None:
        self.settings = settings
        self.vault = vault
        self.provisioner = provisioner
        self.ledger = ledger
        self.authenticator = authenticator
        self.tokens = tokens
        self.default_chains = list(settings.default_chains)
        self.require_full_provisioning = settings.require_full_provisioning

    @classmethod
    def from_settings(cls, settings: CustodySettings) -> "IdentityCustodyEngine":
        # Vault first: a bad secret must abort before any state is touched.
        vault = KeyVault.from_settings(settings)
        tokens = SessionTokenIssuer.from_settings(settings)
        store = DocumentStore(settings.store_path)
        return cls(
            settings,
            vault=vault,
            provisioner=WalletProvisioner(settings.networks),
            ledger=IdentityLedger(store, audit_log_path=settings.audit_log_path),
            authenticator=Authenticator.from_settings(settings),
            tokens=tokens,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def authenticate(self, request: AuthRequest) -> AuthResponse:
        try:
            return self._authenticate(request)
        except VaultError as exc:
            logger.critical("Vault integrity failure during authentication: %s", exc)
            return Failure(exc.reason)
        except CustodyError as exc:
            logger.info("Authentication request failed (%s): %s", exc.reason.value, exc)
            return Failure(exc.reason)
        except Exception:
            logger.exception("Unexpected error while authenticating")
            return Failure(FailureReason.INTERNAL_ERROR)

    def custody_summary(self, handle: str) -> Optional[Dict[str, Any]]:
        identity = self.ledger.exists(handle)
        if identity is None:
            return None
        return {"handle": identity.handle, "custody_wallets": identity.public_wallets()}

    def reveal_custody_keys(self, handle: str) -> List[ProvisionedWallet]:
        """Decrypt an identity's custody keys in-process.

        Each key must re-derive the address stored beside it; anything else is
        an integrity failure.
        """
        wallets: List[ProvisionedWallet] = []
        for record in self.ledger.key_records(handle):
            try:
                private_key = self.vault.decrypt(record.encrypted_private_key)
            except VaultError:
                logger.critical("Custody key for %s on %s failed to decrypt", handle, record.chain)
                raise
            try:
                derived = self.provisioner.derive_address(record.chain, private_key)
            except ValueError as exc:
                logger.critical("Custody key for %s on %s is unusable", handle, record.chain)
                raise VaultError("Custody key material is unusable") from exc
            if derived.lower() != record.address.lower():
                logger.critical(
                    "Custody key for %s on %s does not match stored address", handle, record.chain
                )
                raise VaultError("Custody key does not match its address")
            wallets.append(
                ProvisionedWallet(chain=record.chain, address=record.address, private_key=private_key)
            )
        return wallets

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------
    def _validate(self, request: AuthRequest) -> tuple[AuthScheme, str, str, Optional[str]]:
        scheme = AuthScheme.parse(request.scheme)
        scope = str(request.scope_context or "").strip()
        if not _SCOPE_RE.match(scope):
            raise ValidationError("scope_context is missing or malformed")
        address = normalize_subject_address(scheme, request.subject_address)
        handle = request.requested_handle
        if handle is not None:
            handle = handle.strip()
            if not is_valid_handle(handle):
                raise ValidationError("requested_handle is malformed")
        return scheme, address, scope, handle or None

    def _authenticate(self, request: AuthRequest) -> AuthResponse:
        scheme, address, scope, requested_handle = self._validate(request)

        if scheme.requires_signature:
            if not request.signed_proof:
                challenge = self.authenticator.issue_challenge(address)
                return AwaitingSignature(message=challenge.message, nonce=challenge.nonce)
            if not request.nonce:
                raise ValidationError("nonce is required with a signed proof")

        if not self.authenticator.verify_challenge(
            scheme, address, request.signed_proof, request.nonce
        ):
            raise AuthenticationFailure(f"Proof rejected for {address} ({scheme.value})")

        auth_chain = scheme.auth_chain
        existing = self.ledger.exists_by_auth_address(address, auth_chain)
        if existing is not None:
            return self._sign_in(existing, scope)

        if requested_handle and self.ledger.exists(requested_handle) is not None:
            return Failure(FailureReason.ALREADY_REGISTERED)

        # Re-check right before the expensive part; create() is still the real guard.
        existing = self.ledger.exists_by_auth_address(address, auth_chain)
        if existing is not None:
            return self._sign_in(existing, scope)

        return self._register(address, auth_chain, scope, requested_handle)

    def _sign_in(self, identity: Identity, scope: str) -> Success:
        identity = self.ledger.record_sign_in(identity.handle)
        token = self.tokens.issue(identity.handle, identity.auth_wallet, scope)
        logger.info("Signed in %s (scope=%s)", identity.handle, scope)
        return Success(
            token=token,
            handle=identity.handle,
            custody_wallets=identity.public_wallets(),
            created=False,
        )

    def _register(
        self,
        address: str,
        auth_chain: str,
        scope: str,
        requested_handle: Optional[str],
    ) -> AuthResponse:
        handle = requested_handle or self._unused_handle()
        result = self.provisioner.provision(handle, self.default_chains)
        if not result.wallets:
            raise ProvisioningError("No custody wallets could be provisioned")
        if not result.complete:
            if self.require_full_provisioning:
                raise ProvisioningError(
                    f"Provisioning skipped chains: {[item.chain for item in result.skipped]}"
                )
            logger.warning(
                "Registering %s with a partial custody set; skipped %s",
                handle,
                [(item.chain, item.reason) for item in result.skipped],
            )

        custody_wallets = [CustodyWallet(chain=w.chain, address=w.address) for w in result.wallets]
        key_records = [
            CustodyKeyRecord(
                chain=w.chain,
                address=w.address,
                encrypted_private_key=self.vault.encrypt(w.private_key),
            )
            for w in result.wallets
        ]
        auth_wallet = {auth_chain: address}

        for _ in range(MAX_HANDLE_ATTEMPTS):
            try:
                identity = self.ledger.create(handle, auth_wallet, custody_wallets, key_records)
            except DuplicateIdentityError as exc:
                if exc.field == "auth_address":
                    winner = self.ledger.exists_by_auth_address(address, auth_chain)
                    if winner is None:
                        raise PersistenceError("Identity vanished after duplicate insert") from exc
                    logger.info("Lost registration race for %s; signing in as %s", address, winner.handle)
                    return self._sign_in(winner, scope)
                if requested_handle:
                    return Failure(FailureReason.ALREADY_REGISTERED)
                handle = self._unused_handle()
                continue

            token = self.tokens.issue(identity.handle, identity.auth_wallet, scope)
            return Success(
                token=token,
                handle=identity.handle,
                custody_wallets=identity.public_wallets(),
                created=True,
            )

        raise PersistenceError("Could not allocate a unique handle")

    def _unused_handle(self) -> str:
        for _ in range(MAX_HANDLE_ATTEMPTS):
            candidate = generate_handle()
            if self.ledger.exists(candidate) is None:
                return candidate
        raise PersistenceError("Could not allocate a unique handle")


__all__ = [
    "AuthRequest",
    "AuthResponse",
    "AwaitingSignature",
    "Failure",
    "IdentityCustodyEngine",
    "Success",
    "generate_handle",
]
