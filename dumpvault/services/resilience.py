from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import errno
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from dumpvault.core.config import get_settings
from dumpvault.core.errors import (
    BackupCreationError,
    BackupError,
    BackupErrorType,
    BackupTimeoutError,
    CompressionError,
    DatabaseConnectionError,
    DiskSpaceError,
    FileSystemError,
    PermissionDeniedError,
    RegistryError,
    ValidationError,
)
from dumpvault.services.error_log import ErrorLogStore

if TYPE_CHECKING:
    from dumpvault.services.storage import BackupStorage


logger = logging.getLogger(__name__)


DEFAULT_RETRYABLE_ERRORS = frozenset(
    {
        BackupErrorType.DATABASE_CONNECTION,
        BackupErrorType.BACKUP_CREATION,
        BackupErrorType.FILE_SYSTEM,
        BackupErrorType.TIMEOUT,
        BackupErrorType.REGISTRY,
        BackupErrorType.COMPRESSION,
        BackupErrorType.NETWORK,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset[BackupErrorType] = DEFAULT_RETRYABLE_ERRORS

    def delay_ms(self, attempt: int) -> float:
        # Exponential backoff capped at max_delay_ms; attempt is 1-based.
        return min(self.base_delay_ms * self.backoff_multiplier ** (attempt - 1), self.max_delay_ms)


DEFAULT_RETRY_POLICY = RetryPolicy()


# Normalization rules, evaluated in order. Best-effort: unmatched errors become UNKNOWN.
_ERRNO_RULES: tuple[tuple[frozenset[int], type[BackupError]], ...] = (
    (frozenset({errno.ECONNREFUSED, errno.ECONNRESET}), DatabaseConnectionError),
    (frozenset({errno.ENOENT}), FileSystemError),
    (frozenset({errno.EACCES, errno.EPERM}), PermissionDeniedError),
    (frozenset({errno.ENOSPC}), DiskSpaceError),
    (frozenset({errno.ETIMEDOUT}), BackupTimeoutError),
)

_MESSAGE_RULES: tuple[tuple[tuple[str, ...], type[BackupError]], ...] = (
    (("econnrefused", "connection"), DatabaseConnectionError),
    (("enoent", "file not found", "no such file"), FileSystemError),
    (("eacces", "permission"), PermissionDeniedError),
    (("enospc", "disk space", "no space left"), DiskSpaceError),
    (("timeout", "timed out", "etimedout"), BackupTimeoutError),
    (("pg_dump", "backup creation"), BackupCreationError),
    (("validation", "checksum"), ValidationError),
    (("registry", "metadata"), RegistryError),
    (("compression", "gzip"), CompressionError),
)


def _classify(raw: BaseException, message: str) -> type[BackupError]:
    if isinstance(raw, OSError) and raw.errno is not None:
        for codes, error_cls in _ERRNO_RULES:
            if raw.errno in codes:
                return error_cls
    if isinstance(raw, (TimeoutError, asyncio.TimeoutError)):
        return BackupTimeoutError
    lowered = message.lower()
    for markers, error_cls in _MESSAGE_RULES:
        if any(marker in lowered for marker in markers):
            return error_cls
    return BackupError


def normalize_error(raw: BaseException | Any, context: dict[str, Any] | None = None) -> BackupError:
    """Map an arbitrary failure onto the backup error taxonomy.

    Typed errors are returned unchanged. Everything else is classified by errno
    and message substrings, which is heuristic and never exhaustive. This
    function does not raise.
    """
    if isinstance(raw, BackupError):
        return raw
    try:
        message = str(raw) if raw is not None else ""
        message = message or type(raw).__name__ or "Unknown error"
        error_context = {**(context or {}), "original_error": raw}
        error_cls = _classify(raw, message) if isinstance(raw, BaseException) else _classify(Exception(message), message)
        normalized = error_cls(message, error_context)
    except Exception:  # noqa: BLE001 - normalization must always produce an error object
        normalized = BackupError("Unknown error", dict(context or {}))
    if isinstance(raw, BaseException):
        normalized.__cause__ = raw
    return normalized


@dataclass(frozen=True)
class Recovered:
    # Fallback completed; nothing for the caller to re-run.
    strategy: str
    detail: Any = None


@dataclass(frozen=True)
class RetryWithOverride:
    # Fallback completed; caller should re-run the original operation with these overrides.
    strategy: str
    overrides: dict[str, Any] = field(default_factory=dict)


FallbackOutcome = Union[Recovered, RetryWithOverride]
FallbackAction = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class FallbackStrategy:
    error_type: BackupErrorType
    strategy: str
    description: str
    action: FallbackAction


class FallbackRegistry:
    """Recovery actions keyed by error type, tried in registration order."""

    def __init__(self, strategies: list[FallbackStrategy] | None = None) -> None:
        self._strategies: list[FallbackStrategy] = list(strategies or [])

    def register(self, strategy: FallbackStrategy) -> None:
        self._strategies.append(strategy)

    def for_type(self, error_type: BackupErrorType) -> list[FallbackStrategy]:
        return [strategy for strategy in self._strategies if strategy.error_type == error_type]

    def __len__(self) -> int:
        return len(self._strategies)


def default_fallback_registry(
    storage: BackupStorage | None = None,
    *,
    alternate_directory: Path | str | None = None,
) -> FallbackRegistry:
    # Install the stock recoveries for disk space, compression, permission and connection failures.
    registry = FallbackRegistry()

    if storage is not None:

        async def _cleanup_old_backups() -> Any:
            return await storage.cleanup_old_backups()

        registry.register(
            FallbackStrategy(
                error_type=BackupErrorType.DISK_SPACE,
                strategy="cleanup_old_backups",
                description="Remove backups past retention to free disk space",
                action=_cleanup_old_backups,
            )
        )

    async def _uncompressed() -> dict[str, Any]:
        return {"compress": False}

    registry.register(
        FallbackStrategy(
            error_type=BackupErrorType.COMPRESSION,
            strategy="fallback_uncompressed",
            description="Create the backup without compression",
            action=_uncompressed,
        )
    )

    async def _alternative_directory() -> dict[str, Any]:
        target = Path(alternate_directory or get_settings().backup_fallback_dir).resolve()
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        return {"directory": str(target)}

    registry.register(
        FallbackStrategy(
            error_type=BackupErrorType.PERMISSION,
            strategy="alternative_directory",
            description="Retry against an alternate directory",
            action=_alternative_directory,
        )
    )

    async def _longer_timeout() -> dict[str, Any]:
        return {"timeout_ms": 60000}

    registry.register(
        FallbackStrategy(
            error_type=BackupErrorType.DATABASE_CONNECTION,
            strategy="connection_retry",
            description="Reconnect with a longer timeout",
            action=_longer_timeout,
        )
    )
    return registry


class ErrorHandler:
    """Retry executor with exponential backoff, error logging and per-type fallbacks."""

    def __init__(
        self,
        *,
        error_log: ErrorLogStore | None = None,
        fallbacks: FallbackRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.error_log = error_log or ErrorLogStore()
        self.fallbacks = fallbacks if fallbacks is not None else FallbackRegistry()
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_name: str,
        context: dict[str, Any] | None = None,
        policy: RetryPolicy | None = None,
        *,
        use_fallbacks: bool = True,
    ) -> Any:
        # Returns the operation's result, or a FallbackOutcome when a fallback recovered the failure.
        # Nested pipeline steps pass use_fallbacks=False so recovery runs once, at the outermost call.
        policy = policy or DEFAULT_RETRY_POLICY
        context = context or {}
        max_attempts = max(policy.max_attempts, 1)
        last_error: BackupError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await operation()
            except Exception as exc:  # noqa: BLE001 - every failure is normalized and classified
                error = normalize_error(exc, context)
                last_error = error
                await self.error_log.log_error(error, attempt, operation_name)

                if error.error_type not in policy.retryable_errors or attempt == max_attempts:
                    outcome = None
                    if use_fallbacks:
                        outcome = await self._try_fallbacks(error, operation_name, context)
                    if outcome is not None:
                        await self.error_log.log_resolution(error, attempt, outcome.strategy)
                        return outcome
                    if error is exc:
                        raise
                    raise error from exc

                delay_ms = policy.delay_ms(attempt)
                logger.warning(
                    "backup_retry_scheduled operation=%s attempt=%s max_attempts=%s delay_ms=%s",
                    operation_name,
                    attempt,
                    max_attempts,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)
            else:
                if last_error is not None:
                    await self.error_log.log_resolution(last_error, attempt, "retry_success")
                return result

        # Unreachable: the final attempt either returns or raises above.
        raise last_error if last_error is not None else BackupError(f"{operation_name} did not run")

    async def _try_fallbacks(
        self,
        error: BackupError,
        operation_name: str,
        context: dict[str, Any],
    ) -> FallbackOutcome | None:
        for strategy in self.fallbacks.for_type(error.error_type):
            logger.info(
                "backup_fallback_attempt operation=%s strategy=%s description=%s",
                operation_name,
                strategy.strategy,
                strategy.description,
            )
            try:
                result = await strategy.action()
            except Exception as exc:  # noqa: BLE001 - a failed fallback falls through to the next one
                logger.warning("backup_fallback_failed strategy=%s", strategy.strategy, exc_info=exc)
                fallback_error = normalize_error(
                    exc,
                    {**context, "fallback_strategy": strategy.strategy, "original_error_id": error.id},
                )
                await self.error_log.log_error(fallback_error, 1, f"fallback_{strategy.strategy}")
                continue
            if isinstance(result, dict):
                return RetryWithOverride(strategy=strategy.strategy, overrides=result)
            return Recovered(strategy=strategy.strategy, detail=result)
        return None
