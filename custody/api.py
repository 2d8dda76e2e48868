"""HTTP boundary for wallet sign-in, session tokens and custody lookups."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import AuthScheme, normalize_subject_address
from .engine import AuthRequest, Failure, IdentityCustodyEngine
from .errors import FailureReason, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

FAILURE_STATUS: Dict[FailureReason, int] = {
    FailureReason.AUTHENTICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    FailureReason.ALREADY_REGISTERED: status.HTTP_409_CONFLICT,
    FailureReason.INVALID_ADDRESS: status.HTTP_400_BAD_REQUEST,
    FailureReason.UNSUPPORTED_SCHEME: status.HTTP_400_BAD_REQUEST,
    FailureReason.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    FailureReason.PROVISIONING_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class RateLimiter:
    """Simple sliding-window rate limiter."""

    def __init__(self, max_calls: int, window_seconds: int) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_prune = time.monotonic()

    def _prune(self, cutoff: float) -> None:
        stale = [key for key, queue in self._events.items() if not queue or queue[-1] < cutoff]
        for key in stale:
            del self._events[key]

    def allow(self, *keys: str) -> bool:
        """Record one call against every key, or against none if any key is exhausted."""
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_prune >= self.window_seconds:
                self._prune(cutoff)
                self._last_prune = now
            queues = []
            for key in keys:
                queue = self._events.get(key, deque())
                while queue and queue[0] < cutoff:
                    queue.popleft()
                if len(queue) >= self.max_calls:
                    return False
                queues.append((key, queue))
            for key, queue in queues:
                queue.append(now)
                self._events[key] = queue
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class AuthPayload(BaseModel):
    subject_address: str = Field(min_length=1, max_length=128)
    scheme: str = Field(min_length=1, max_length=64)
    signed_proof: Optional[str] = Field(default=None, max_length=512)
    nonce: Optional[str] = Field(default=None, max_length=64)
    requested_handle: Optional[str] = Field(default=None, max_length=64)


class TokenPayload(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class CustodyWalletModel(BaseModel):
    chain: str
    address: str


class CustodySummaryResponse(BaseModel):
    handle: str
    custody_wallets: List[CustodyWalletModel]


def create_app(engine: IdentityCustodyEngine, settings: Any) -> FastAPI:
    app = FastAPI(title="Wallet Identity & Custody", version="1.0.0")

    auth_limiter = RateLimiter(
        max_calls=int(getattr(settings, "auth_rate_limit_per_minute", 30) or 30),
        window_seconds=60,
    )

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {"status": "ok", "identities": engine.ledger.count()}

    def limiter_keys(payload: AuthPayload, client_ip: Optional[str]) -> List[str]:
        keys: List[str] = []
        if client_ip:
            keys.append(f"ip:{client_ip}")
        # Only well-formed addresses get their own bucket; anything else is
        # refused by the engine and limited by IP alone.
        try:
            scheme = AuthScheme.parse(payload.scheme)
            keys.append(f"addr:{normalize_subject_address(scheme, payload.subject_address)}")
        except ValidationError:
            pass
        return keys

    @app.post("/{scope}/auth")
    async def authenticate(scope: str, payload: AuthPayload, request: Request) -> JSONResponse:
        client_ip = request.client.host if request.client else None
        keys = limiter_keys(payload, client_ip)
        if keys and not auth_limiter.allow(*keys):
            logger.warning("Rate limited authentication attempt (%s)", ", ".join(keys))
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many authentication attempts; slow down",
            )

        response = engine.authenticate(
            AuthRequest(
                subject_address=payload.subject_address,
                scheme=payload.scheme,
                scope_context=scope,
                signed_proof=payload.signed_proof,
                nonce=payload.nonce,
                requested_handle=payload.requested_handle,
            )
        )
        status_code = status.HTTP_200_OK
        if isinstance(response, Failure):
            status_code = FAILURE_STATUS.get(response.reason, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(status_code=status_code, content=response.as_dict())

    @app.post("/tokens/verify")
    async def verify_token(payload: TokenPayload) -> Dict[str, Any]:
        return engine.tokens.verify(payload.token).as_dict()

    @app.post("/tokens/revoke")
    async def revoke_token(payload: TokenPayload) -> Dict[str, Any]:
        try:
            revoked = engine.tokens.revoke(payload.token)
        except PersistenceError:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=FailureReason.SERVICE_UNAVAILABLE.value,
            ) from None
        if not revoked:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid token")
        return {"revoked": True}

    @app.get("/identities/{handle}/custody", response_model=CustodySummaryResponse)
    async def custody_summary(handle: str) -> CustodySummaryResponse:
        summary = engine.custody_summary(handle)
        if summary is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown identity")
        return CustodySummaryResponse(
            handle=summary["handle"],
            custody_wallets=[CustodyWalletModel(**item) for item in summary["custody_wallets"]],
        )

    return app


def run_api(app: FastAPI, settings: Any) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["RateLimiter", "create_app", "run_api"]
