"""Session tokens handed to game backends after a successful sign-in."""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import jwt

from .config import MIN_TOKEN_SECRET_BYTES, CustodySettings
from .errors import ConfigError, PersistenceError

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "handle", "scope", "iat", "exp", "jti"]


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"
    REVOKED = "revoked"


@dataclass(frozen=True)
class TokenVerification:
    status: TokenStatus
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return self.status is TokenStatus.VALID

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status.value}
        if self.valid:
            payload["claims"] = dict(self.claims)
        return payload


class RevokedTokenStore:
    """JSON-backed deny list of token ids, each kept until the token would expire anyway."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._revoked: Dict[str, int] = {}
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
            self._revoked = {str(k): int(v) for k, v in data.items() if isinstance(v, int)}

    def _persist(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(self._revoked, handle, indent=2, sort_keys=True)
            tmp.replace(self.path)
        except OSError as exc:
            logger.error("Failed to persist revoked tokens %s: %s", self.path, exc)
            raise PersistenceError("Revoked token store write failed") from exc

    def _sweep(self, now: int) -> None:
        for jti in [jti for jti, expires_at in self._revoked.items() if expires_at <= now]:
            self._revoked.pop(jti, None)

    def add(self, jti: str, expires_at: int) -> None:
        with self._lock:
            self._sweep(int(time.time()))
            previous = self._revoked.get(jti)
            self._revoked[jti] = int(expires_at)
            try:
                self._persist()
            except PersistenceError:
                if previous is None:
                    self._revoked.pop(jti, None)
                else:
                    self._revoked[jti] = previous
                raise

    def contains(self, jti: str) -> bool:
        with self._lock:
            return jti in self._revoked


class SessionTokenIssuer:
    def __init__(
        self,
        secret: Optional[str],
        algorithm: str = "HS256",
        ttl_seconds: int = 3600,
        revoked_store: Optional[RevokedTokenStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret or not secret.strip():
            raise ConfigError("Token signing secret is not configured")
        if len(secret.encode("utf-8")) < MIN_TOKEN_SECRET_BYTES:
            raise ConfigError(f"Token signing secret must be at least {MIN_TOKEN_SECRET_BYTES} bytes")
        if ttl_seconds <= 0:
            raise ConfigError("Token TTL must be positive")
        self._secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self.revoked_store = revoked_store
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: CustodySettings) -> "SessionTokenIssuer":
        return cls(
            settings.token_signing_secret,
            algorithm=settings.token_algorithm,
            ttl_seconds=settings.token_ttl_seconds,
            revoked_store=RevokedTokenStore(settings.revoked_tokens_path),
        )

    def __repr__(self) -> str:
        return f"SessionTokenIssuer(algorithm={self.algorithm!r}, ttl_seconds={self.ttl_seconds})"

    def issue(self, handle: str, auth_wallet: Mapping[str, str], scope_context: str) -> str:
        if not handle:
            raise ValueError("handle is required")
        if not scope_context:
            raise ValueError("scope_context is required")
        now = int(self._clock())
        payload: Dict[str, Any] = {
            "sub": handle,
            "handle": handle,
            "auth_wallet": dict(auth_wallet),
            "scope": scope_context,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def _decode(self, token: str, *, verify_exp: bool = True) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self.algorithm],
            options={"require": REQUIRED_CLAIMS, "verify_exp": verify_exp},
        )

    def verify(self, token: str) -> TokenVerification:
        if not token:
            return TokenVerification(TokenStatus.INVALID)
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            return TokenVerification(TokenStatus.EXPIRED)
        except jwt.InvalidTokenError as exc:
            logger.debug("Token rejected: %s", type(exc).__name__)
            return TokenVerification(TokenStatus.INVALID)
        if self.revoked_store is not None and self.revoked_store.contains(str(claims["jti"])):
            return TokenVerification(TokenStatus.REVOKED)
        return TokenVerification(TokenStatus.VALID, claims)

    def revoke(self, token: str) -> bool:
        """Deny-list ``token`` until it expires. Returns ``False`` for tokens we never signed."""
        if self.revoked_store is None:
            raise ConfigError("Token revocation is not configured")
        try:
            claims = self._decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            return False
        self.revoked_store.add(str(claims["jti"]), int(claims["exp"]))
        logger.info("Revoked session token for %s", claims.get("handle"))
        return True


__all__ = [
    "RevokedTokenStore",
    "SessionTokenIssuer",
    "TokenStatus",
    "TokenVerification",
]
