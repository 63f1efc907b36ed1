"""
Error kinds raised across the sync stack.

Every failure is a SyncError subclass carrying a kind enum, so the
orchestration layer can turn it into a structured SyncResult instead of
letting a bare exception reach the caller.

    NetworkError    : transient, retried
    AuthError       : surfaces as "requires re-authentication"
    IntegrityError  : never retried
    StorageError    : only not_found is retried
    ConflictError   : never retried
    OperationError  : engine state (in progress, cancelled)
"""

import asyncio
import enum
from typing import Any, Optional


class NetworkErrorKind(str, enum.Enum):
    no_connectivity = "no_connectivity"
    timeout = "timeout"
    server_error = "server_error"
    rate_limited = "rate_limited"
    dns_failure = "dns_failure"
    connection_refused = "connection_refused"


class AuthErrorKind(str, enum.Enum):
    token_expired = "token_expired"
    invalid_credentials = "invalid_credentials"
    account_disabled = "account_disabled"
    permission_denied = "permission_denied"


class IntegrityErrorKind(str, enum.Enum):
    checksum_mismatch = "checksum_mismatch"
    corrupted_data = "corrupted_data"
    version_mismatch = "version_mismatch"
    encryption_failed = "encryption_failed"
    decryption_failed = "decryption_failed"


class StorageErrorKind(str, enum.Enum):
    insufficient_space = "insufficient_space"
    not_found = "not_found"
    access_denied = "access_denied"
    quota_exceeded = "quota_exceeded"


class ConflictErrorKind(str, enum.Enum):
    unresolvable = "unresolvable"
    multiple = "multiple"
    invalid_resolution = "invalid_resolution"


class OperationErrorKind(str, enum.Enum):
    already_in_progress = "already_in_progress"
    invalid_state = "invalid_state"
    cancelled = "cancelled"


class BreakerErrorKind(str, enum.Enum):
    circuit_open = "circuit_open"


# Base delays (seconds) for network failures, before the attempt multiplier.
NETWORK_RETRY_DELAYS: dict[NetworkErrorKind, float] = {
    NetworkErrorKind.no_connectivity: 60.0,
    NetworkErrorKind.timeout: 30.0,
    NetworkErrorKind.server_error: 120.0,
    NetworkErrorKind.rate_limited: 300.0,
    NetworkErrorKind.connection_refused: 15.0,
    NetworkErrorKind.dns_failure: 30.0,
}
DEFAULT_ERROR_DELAY = 30.0
MIN_ERROR_DELAY = 1.0
MAX_ERROR_DELAY = 300.0
MAX_DELAY_MULTIPLIER = 16


class SyncError(Exception):
    """Base class. ``kind`` is one of the *ErrorKind enums."""

    category = "sync"

    def __init__(
        self,
        kind: enum.Enum,
        message: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.kind = kind
        self.message = message or kind.value.replace("_", " ")
        self.context = dict(context or {})
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return False

    @property
    def requires_reauth(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r}, {self.message!r})"


class NetworkError(SyncError):
    category = "network"

    def __init__(
        self,
        kind: NetworkErrorKind,
        message: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(kind, message, context)
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return True


class AuthError(SyncError):
    category = "auth"

    @property
    def requires_reauth(self) -> bool:
        return True


class IntegrityError(SyncError):
    category = "integrity"


class UnsupportedAlgorithm(IntegrityError):
    def __init__(self, algorithm: str):
        super().__init__(
            IntegrityErrorKind.version_mismatch,
            f"Unsupported encryption algorithm: {algorithm}",
            {"algorithm": algorithm},
        )
        self.algorithm = algorithm


class AuthenticationFailed(IntegrityError):
    def __init__(self, message: str = "Authentication tag verification failed", context=None):
        super().__init__(IntegrityErrorKind.decryption_failed, message, context)


class StorageError(SyncError):
    category = "storage"

    @property
    def retryable(self) -> bool:
        return self.kind == StorageErrorKind.not_found

    @property
    def requires_reauth(self) -> bool:
        return self.kind == StorageErrorKind.access_denied


class KeyStorageError(StorageError):
    """Secret storage failed while reading or writing key material."""

    category = "key_storage"

    @property
    def retryable(self) -> bool:
        return False

    @property
    def requires_reauth(self) -> bool:
        return False


class ConflictError(SyncError):
    category = "conflict"


class OperationError(SyncError):
    category = "operation"


class CircuitOpenError(SyncError):
    category = "circuit"

    def __init__(self, name: str, retry_after: float):
        super().__init__(
            BreakerErrorKind.circuit_open,
            f"Circuit breaker '{name}' is open",
            {"breaker": name, "retry_after": round(retry_after, 3)},
        )
        self.retry_after = retry_after


# ── Classification helpers ──────────────────────────────────────────────

def is_retryable(error: BaseException) -> bool:
    """Default retry predicate used by RetryPolicy."""
    if isinstance(error, SyncError):
        return error.retryable
    return isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError))


def error_delay(error: BaseException, attempt: int) -> Optional[float]:
    """Error-specific delay in seconds, or None when the generic formula applies."""
    if not isinstance(error, NetworkError):
        return None
    if error.retry_after is not None:
        return max(MIN_ERROR_DELAY, min(MAX_ERROR_DELAY, error.retry_after))
    base = NETWORK_RETRY_DELAYS.get(error.kind, DEFAULT_ERROR_DELAY)
    multiplier = max(1, min(MAX_DELAY_MULTIPLIER, 2 ** max(attempt - 1, 0)))
    return max(MIN_ERROR_DELAY, min(MAX_ERROR_DELAY, base * multiplier))


def error_from_status(status: int, message: str = "", context: Optional[dict] = None) -> SyncError:
    """Map an HTTP status code from a remote endpoint to an error kind."""
    ctx = {"status": status, **(context or {})}
    if status == 401:
        return AuthError(AuthErrorKind.token_expired, message or None, ctx)
    if status == 403:
        return AuthError(AuthErrorKind.permission_denied, message or None, ctx)
    if status == 404:
        return StorageError(StorageErrorKind.not_found, message or None, ctx)
    if status == 408:
        return NetworkError(NetworkErrorKind.timeout, message or None, ctx)
    if status == 429:
        return NetworkError(NetworkErrorKind.rate_limited, message or None, ctx)
    if status == 507:
        return StorageError(StorageErrorKind.insufficient_space, message or None, ctx)
    if status >= 500:
        return NetworkError(NetworkErrorKind.server_error, message or None, ctx)
    return OperationError(
        OperationErrorKind.invalid_state,
        message or f"Unexpected response status {status}",
        ctx,
    )
