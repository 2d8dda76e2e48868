"""Challenge issuance and wallet-ownership verification."""
from __future__ import annotations

import json
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from . import dag
from .chains import normalize_eth_address
from .config import CustodySettings
from .errors import FailureReason, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATE = "Sign this message to authenticate with {app_name}: {address} - {nonce}"
_NONCE_RE = re.compile(r"^(\d{10,16}):([0-9a-f]{16})$")


class AuthScheme(str, Enum):
    EXTERNAL_SIGNATURE = "external_signature"
    ADDRESS_OWNERSHIP_PROOF = "address_ownership_proof"

    @classmethod
    def parse(cls, tag: Any) -> "AuthScheme":
        if isinstance(tag, cls):
            return tag
        candidate = str(tag or "").strip().lower().replace("-", "_")
        scheme = _SCHEME_ALIASES.get(candidate)
        if scheme is None:
            raise ValidationError(
                f"Unsupported auth scheme: {tag!r}",
                reason=FailureReason.UNSUPPORTED_SCHEME,
            )
        return scheme

    @property
    def requires_signature(self) -> bool:
        return self is AuthScheme.EXTERNAL_SIGNATURE

    @property
    def auth_chain(self) -> str:
        """Chain symbol the authenticating address is recorded under."""
        return "ETH" if self is AuthScheme.EXTERNAL_SIGNATURE else "DAG"


_SCHEME_ALIASES: Dict[str, AuthScheme] = {
    "external_signature": AuthScheme.EXTERNAL_SIGNATURE,
    "metamask": AuthScheme.EXTERNAL_SIGNATURE,
    "address_ownership_proof": AuthScheme.ADDRESS_OWNERSHIP_PROOF,
    "stargazer": AuthScheme.ADDRESS_OWNERSHIP_PROOF,
}


def normalize_subject_address(scheme: AuthScheme, address: Any) -> str:
    """Return the canonical form of ``address`` for ``scheme``.

    EVM addresses are lower-cased; DAG addresses are case sensitive and only
    checked for format and parity.
    """
    candidate = str(address or "").strip()
    if scheme is AuthScheme.EXTERNAL_SIGNATURE:
        try:
            return normalize_eth_address(candidate)
        except ValueError as exc:
            raise ValidationError(
                "Subject address is not a valid EVM address",
                reason=FailureReason.INVALID_ADDRESS,
            ) from exc
    if not dag.is_valid_address(candidate):
        raise ValidationError(
            "Subject address is not a valid DAG address",
            reason=FailureReason.INVALID_ADDRESS,
        )
    return candidate


def render_challenge_message(address: str, nonce: str, app_name: str) -> str:
    return MESSAGE_TEMPLATE.format(app_name=app_name, address=address, nonce=nonce)


def make_nonce(now_ms: int) -> str:
    return f"{now_ms}:{secrets.token_hex(8)}"


def parse_nonce(nonce: str) -> int:
    """Return the issue time (ms since epoch) embedded in ``nonce``."""
    match = _NONCE_RE.match((nonce or "").strip())
    if not match:
        raise ValueError("nonce is malformed")
    return int(match.group(1))


@dataclass(frozen=True)
class Challenge:
    subject_address: str
    nonce: str
    message: str
    expires_at_ms: int


class ChallengeNonceStore:
    """Single-use challenge nonces, bound to the subject they were issued for."""

    def __init__(self, path: Path, ttl_seconds: int = 300) -> None:
        self.path = path
        self.ttl_seconds = max(int(ttl_seconds), 30)
        self._lock = threading.Lock()
        self._nonces: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                data = {}
        if isinstance(data, dict):
            self._nonces = data

    def _persist(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(self._nonces, handle, indent=2, sort_keys=True)
            tmp.replace(self.path)
        except OSError as exc:
            logger.error("Failed to persist challenge nonces %s: %s", self.path, exc)
            raise PersistenceError("Challenge nonce store write failed") from exc

    def _sweep(self, now: int) -> None:
        expired = [
            value
            for value, record in self._nonces.items()
            if not isinstance(record.get("expires_at"), int) or record["expires_at"] <= now
        ]
        for value in expired:
            self._nonces.pop(value, None)

    def register(self, nonce: str, subject_address: str, *, now: Optional[int] = None) -> None:
        current = int(time.time()) if now is None else now
        with self._lock:
            self._sweep(current)
            self._nonces[nonce] = {
                "subject": subject_address,
                "expires_at": current + self.ttl_seconds,
            }
            try:
                self._persist()
            except PersistenceError:
                self._nonces.pop(nonce, None)
                raise

    def consume(self, nonce: str, subject_address: str, *, now: Optional[int] = None) -> bool:
        current = int(time.time()) if now is None else now
        with self._lock:
            record = self._nonces.pop(nonce, None)
            if record is None:
                return False
            try:
                self._persist()
            except PersistenceError:
                self._nonces[nonce] = record
                raise
            expires_at = record.get("expires_at")
            if not isinstance(expires_at, int) or expires_at <= current:
                return False
            return record.get("subject") == subject_address

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)


class Authenticator:
    """Issues challenges and checks wallet-ownership proofs.

    One verifier per :class:`AuthScheme`. Verification never raises for a bad
    proof; it returns ``False`` and logs why.
    """

    def __init__(
        self,
        settings: CustodySettings,
        nonce_store: Optional[ChallengeNonceStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_name = settings.app_name
        self.ttl_seconds = settings.challenge_ttl_seconds
        self.clock_skew_seconds = settings.challenge_clock_skew_seconds
        self.nonce_store = nonce_store
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: CustodySettings) -> "Authenticator":
        store = None
        if settings.challenge_single_use:
            store = ChallengeNonceStore(settings.challenge_nonces_path, settings.challenge_ttl_seconds)
        return cls(settings, nonce_store=store)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue_challenge(self, subject_address: str) -> Challenge:
        if not subject_address:
            raise ValueError("subject_address is required")
        now_ms = self._now_ms()
        nonce = make_nonce(now_ms)
        if self.nonce_store is not None:
            self.nonce_store.register(nonce, subject_address, now=now_ms // 1000)
        return Challenge(
            subject_address=subject_address,
            nonce=nonce,
            message=render_challenge_message(subject_address, nonce, self.app_name),
            expires_at_ms=now_ms + self.ttl_seconds * 1000,
        )

    def verify(
        self,
        scheme: AuthScheme,
        subject_address: str,
        signature: Optional[str],
        message: Optional[str],
    ) -> bool:
        if not subject_address:
            raise ValueError("subject_address is required")
        if scheme is AuthScheme.ADDRESS_OWNERSHIP_PROOF:
            if not dag.is_valid_address(subject_address):
                logger.info("Rejected ownership proof: address fails DAG format check")
                return False
            return True

        if not signature or not message:
            raise ValueError("signature and message are required for external signatures")
        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as exc:
            logger.info("Rejected signature: recovery failed (%s)", type(exc).__name__)
            return False
        if recovered.lower() != subject_address.lower():
            logger.info("Rejected signature: recovered signer does not match subject")
            return False
        return True

    def verify_challenge(
        self,
        scheme: AuthScheme,
        subject_address: str,
        signature: Optional[str],
        nonce: Optional[str],
    ) -> bool:
        """Verify a proof over the challenge rendered for ``(address, nonce)``."""
        if not scheme.requires_signature:
            return self.verify(scheme, subject_address, None, None)
        if not nonce:
            raise ValueError("nonce is required for external signatures")
        try:
            issued_ms = parse_nonce(nonce)
        except ValueError:
            logger.info("Rejected challenge: malformed nonce")
            return False

        now_ms = self._now_ms()
        if issued_ms > now_ms + self.clock_skew_seconds * 1000:
            logger.info("Rejected challenge: nonce issued in the future")
            return False
        if now_ms - issued_ms > self.ttl_seconds * 1000:
            logger.info("Rejected challenge: nonce expired")
            return False

        message = render_challenge_message(subject_address, nonce, self.app_name)
        if not self.verify(scheme, subject_address, signature, message):
            return False
        if self.nonce_store is not None and not self.nonce_store.consume(
            nonce, subject_address, now=now_ms // 1000
        ):
            logger.info("Rejected challenge: nonce unknown or already used")
            return False
        return True


__all__ = [
    "AuthScheme",
    "Authenticator",
    "Challenge",
    "ChallengeNonceStore",
    "normalize_subject_address",
    "parse_nonce",
    "render_challenge_message",
]
