"""Error taxonomy shared by the identity and custody components."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Closed set of reasons a caller may see in a failure response."""

    AUTHENTICATION_FAILED = "authentication failed"
    ALREADY_REGISTERED = "already registered"
    INVALID_ADDRESS = "invalid address"
    UNSUPPORTED_SCHEME = "unsupported scheme"
    INVALID_REQUEST = "invalid request"
    PROVISIONING_FAILED = "provisioning failed"
    SERVICE_UNAVAILABLE = "service unavailable"
    INTERNAL_ERROR = "internal error"


class CustodyError(Exception):
    """Base class; carries the caller-safe reason and an HTTP-ish status code."""

    reason: FailureReason = FailureReason.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[FailureReason] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason
        if status_code is not None:
            self.status_code = status_code


class ConfigError(CustodyError):
    """Missing or malformed startup configuration. Fatal."""


class ValidationError(CustodyError):
    reason = FailureReason.INVALID_REQUEST
    status_code = 400


class AuthenticationFailure(CustodyError):
    reason = FailureReason.AUTHENTICATION_FAILED
    status_code = 401


class DuplicateIdentityError(CustodyError):
    """Raised when a handle or authenticating address is already claimed."""

    reason = FailureReason.ALREADY_REGISTERED
    status_code = 409

    def __init__(self, message: str, *, field: str = "handle") -> None:
        super().__init__(message)
        self.field = field


class VaultError(CustodyError):
    """Encrypted key material could not be decoded. Treated as an integrity alarm."""


class PersistenceError(CustodyError):
    reason = FailureReason.SERVICE_UNAVAILABLE
    status_code = 503


class ProvisioningError(CustodyError):
    reason = FailureReason.PROVISIONING_FAILED
    status_code = 503


__all__ = [
    "AuthenticationFailure",
    "ConfigError",
    "CustodyError",
    "DuplicateIdentityError",
    "FailureReason",
    "PersistenceError",
    "ProvisioningError",
    "ValidationError",
    "VaultError",
]
