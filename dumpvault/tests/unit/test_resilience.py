from __future__ import annotations

from pathlib import Path

import pytest

from dumpvault.core.errors import (
    BackupError,
    BackupErrorType,
    CompressionError,
    DatabaseConnectionError,
    DiskSpaceError,
    FileSystemError,
    PermissionDeniedError,
)
from dumpvault.services.error_log import ErrorLogStore
from dumpvault.services.resilience import (
    ErrorHandler,
    FallbackRegistry,
    FallbackStrategy,
    Recovered,
    RetryPolicy,
    RetryWithOverride,
    default_fallback_registry,
    normalize_error,
)


def _handler(tmp_path: Path, delays: list[float], fallbacks: FallbackRegistry | None = None) -> ErrorHandler:
    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    return ErrorHandler(
        error_log=ErrorLogStore(tmp_path / "errors.json"),
        fallbacks=fallbacks,
        sleep=fake_sleep,
    )


def test_normalize_error_passes_typed_errors_through() -> None:
    error = DiskSpaceError("disk full")
    assert normalize_error(error) is error


def test_normalize_error_classifies_by_errno_and_message() -> None:
    refused = normalize_error(ConnectionRefusedError(111, "Connection refused"))
    assert isinstance(refused, DatabaseConnectionError)
    assert refused.is_retryable

    no_space = normalize_error(RuntimeError("write failed: No space left on device"))
    assert isinstance(no_space, DiskSpaceError)
    assert not no_space.is_retryable

    denied = normalize_error(PermissionError(13, "Permission denied"))
    assert isinstance(denied, PermissionDeniedError)

    missing = normalize_error(RuntimeError("ENOENT: no such file or directory"))
    assert isinstance(missing, FileSystemError)


def test_normalize_error_falls_back_to_unknown_with_context() -> None:
    raw = ValueError("something odd")
    error = normalize_error(raw, {"step": "parse"})
    assert type(error) is BackupError
    assert error.error_type == BackupErrorType.UNKNOWN
    assert error.context["step"] == "parse"
    assert error.context["original_error"] is raw


def test_retry_policy_delay_is_exponential_and_capped() -> None:
    policy = RetryPolicy()
    assert policy.delay_ms(1) == 1000
    assert policy.delay_ms(2) == 2000
    assert policy.delay_ms(3) == 4000
    assert policy.delay_ms(10) == 30000


@pytest.mark.asyncio
async def test_non_retryable_error_runs_once(tmp_path: Path) -> None:
    calls = {"count": 0}
    delays: list[float] = []

    async def fill_disk() -> None:
        calls["count"] += 1
        raise DiskSpaceError("disk full")

    handler = _handler(tmp_path, delays)
    with pytest.raises(DiskSpaceError):
        await handler.execute_with_retry(fill_disk, "fill_disk")
    assert calls["count"] == 1
    assert delays == []


@pytest.mark.asyncio
async def test_retryable_error_succeeds_on_second_attempt(tmp_path: Path) -> None:
    calls = {"count": 0}
    delays: list[float] = []

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise FileSystemError("transient write failure")
        return "ok"

    handler = _handler(tmp_path, delays)
    result = await handler.execute_with_retry(flaky, "flaky", policy=RetryPolicy(max_attempts=2))
    assert result == "ok"
    assert calls["count"] == 2
    assert delays == [1.0]

    entries = await handler.error_log.read_entries()
    assert len(entries) == 1
    assert entries[0].resolved is True
    assert entries[0].resolution_strategy == "retry_success"


@pytest.mark.asyncio
async def test_retryable_error_exhausts_attempts(tmp_path: Path) -> None:
    calls = {"count": 0}
    delays: list[float] = []

    async def always_fails() -> None:
        calls["count"] += 1
        raise RuntimeError("pg_dump exited unexpectedly")

    handler = _handler(tmp_path, delays)
    with pytest.raises(BackupError) as excinfo:
        await handler.execute_with_retry(always_fails, "dump", policy=RetryPolicy(max_attempts=3))
    assert excinfo.value.error_type == BackupErrorType.BACKUP_CREATION
    assert calls["count"] == 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_compression_fallback_returns_override(tmp_path: Path) -> None:
    delays: list[float] = []

    async def compress() -> None:
        raise CompressionError("gzip stream broke")

    handler = _handler(tmp_path, delays, default_fallback_registry())
    outcome = await handler.execute_with_retry(compress, "compress", policy=RetryPolicy(max_attempts=2))
    assert outcome == RetryWithOverride(strategy="fallback_uncompressed", overrides={"compress": False})

    entries = await handler.error_log.read_entries()
    assert any(entry.resolution_strategy == "fallback_uncompressed" for entry in entries)


@pytest.mark.asyncio
async def test_permission_fallback_creates_alternate_directory(tmp_path: Path) -> None:
    delays: list[float] = []
    alternate = tmp_path / "alternate"

    async def write() -> None:
        raise PermissionDeniedError("permission denied")

    handler = _handler(tmp_path, delays, default_fallback_registry(alternate_directory=alternate))
    outcome = await handler.execute_with_retry(write, "write")
    assert isinstance(outcome, RetryWithOverride)
    assert outcome.overrides == {"directory": str(alternate.resolve())}
    assert alternate.is_dir()


@pytest.mark.asyncio
async def test_failed_fallback_moves_to_next_strategy(tmp_path: Path) -> None:
    delays: list[float] = []

    async def broken_action() -> None:
        raise RuntimeError("cleanup crashed")

    async def working_action() -> None:
        return None

    fallbacks = FallbackRegistry(
        [
            FallbackStrategy(BackupErrorType.DISK_SPACE, "broken", "always fails", broken_action),
            FallbackStrategy(BackupErrorType.DISK_SPACE, "working", "frees space", working_action),
        ]
    )

    async def fill_disk() -> None:
        raise DiskSpaceError("disk full")

    handler = _handler(tmp_path, delays, fallbacks)
    outcome = await handler.execute_with_retry(fill_disk, "fill_disk")
    assert outcome == Recovered(strategy="working", detail=None)

    entries = await handler.error_log.read_entries()
    fallback_entries = [entry for entry in entries if entry.context.get("fallback_strategy") == "broken"]
    assert len(fallback_entries) == 1


@pytest.mark.asyncio
async def test_fallbacks_can_be_disabled_for_nested_steps(tmp_path: Path) -> None:
    delays: list[float] = []

    async def compress() -> None:
        raise CompressionError("gzip stream broke")

    handler = _handler(tmp_path, delays, default_fallback_registry())
    with pytest.raises(CompressionError):
        await handler.execute_with_retry(
            compress,
            "compress",
            policy=RetryPolicy(max_attempts=1),
            use_fallbacks=False,
        )
