from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import secrets
import time
from typing import Any


class BackupErrorType(str, Enum):
    DATABASE_CONNECTION = "DATABASE_CONNECTION"
    BACKUP_CREATION = "BACKUP_CREATION"
    FILE_SYSTEM = "FILE_SYSTEM"
    VALIDATION = "VALIDATION"
    PERMISSION = "PERMISSION"
    DISK_SPACE = "DISK_SPACE"
    TIMEOUT = "TIMEOUT"
    CORRUPTION = "CORRUPTION"
    REGISTRY = "REGISTRY"
    COMPRESSION = "COMPRESSION"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


class ErrorSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def serializable_context(value: Any) -> Any:
    # Error contexts carry raw exceptions and paths; reduce them to JSON-safe values.
    if isinstance(value, dict):
        return {str(key): serializable_context(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serializable_context(item) for item in value]
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _generate_error_id() -> str:
    # Millisecond prefix keeps ids roughly sortable in the error log.
    return f"backup_error_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class BackupError(Exception):
    """Base error for backup operations; untyped failures normalize to UNKNOWN."""

    error_type: BackupErrorType = BackupErrorType.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        error_type: BackupErrorType | None = None,
        severity: ErrorSeverity | None = None,
        is_retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        if error_type is not None:
            self.error_type = error_type
        if severity is not None:
            self.severity = severity
        if is_retryable is not None:
            self.is_retryable = is_retryable
        self.id = _generate_error_id()
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": type(self).__name__,
            "message": self.message,
            "errorType": self.error_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "context": serializable_context(self.context),
            "isRetryable": self.is_retryable,
        }


class DatabaseConnectionError(BackupError):
    """Source database unreachable or refused the connection."""

    error_type = BackupErrorType.DATABASE_CONNECTION
    severity = ErrorSeverity.HIGH
    is_retryable = True


class BackupCreationError(BackupError):
    """The dump utility failed to produce a dump."""

    error_type = BackupErrorType.BACKUP_CREATION
    severity = ErrorSeverity.HIGH
    is_retryable = True


class FileSystemError(BackupError):
    error_type = BackupErrorType.FILE_SYSTEM
    severity = ErrorSeverity.MEDIUM
    is_retryable = True


class ValidationError(BackupError):
    """Invalid input or a backup file that failed integrity checks."""

    error_type = BackupErrorType.VALIDATION
    severity = ErrorSeverity.MEDIUM
    is_retryable = False


class PermissionDeniedError(BackupError):
    error_type = BackupErrorType.PERMISSION
    severity = ErrorSeverity.HIGH
    is_retryable = False


class DiskSpaceError(BackupError):
    error_type = BackupErrorType.DISK_SPACE
    severity = ErrorSeverity.CRITICAL
    is_retryable = False


class BackupTimeoutError(BackupError):
    """An operation exceeded its deadline (the dump invocation in practice)."""

    error_type = BackupErrorType.TIMEOUT
    severity = ErrorSeverity.HIGH
    is_retryable = True


class CorruptionError(BackupError):
    error_type = BackupErrorType.CORRUPTION
    severity = ErrorSeverity.CRITICAL
    is_retryable = False


class RegistryError(BackupError):
    """Registry document could not be read, written, or lacked the requested record."""

    error_type = BackupErrorType.REGISTRY
    severity = ErrorSeverity.MEDIUM
    is_retryable = True


class CompressionError(BackupError):
    error_type = BackupErrorType.COMPRESSION
    severity = ErrorSeverity.MEDIUM
    is_retryable = True


class NetworkError(BackupError):
    error_type = BackupErrorType.NETWORK
    severity = ErrorSeverity.MEDIUM
    is_retryable = True


ERROR_CLASSES: dict[BackupErrorType, type[BackupError]] = {
    cls.error_type: cls
    for cls in (
        DatabaseConnectionError,
        BackupCreationError,
        FileSystemError,
        ValidationError,
        PermissionDeniedError,
        DiskSpaceError,
        BackupTimeoutError,
        CorruptionError,
        RegistryError,
        CompressionError,
        NetworkError,
        BackupError,
    )
}
