from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
import errno
import gzip
import logging
import os
from pathlib import Path
import re
import shutil
import time
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

import psutil
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from dumpvault.core.config import get_settings
from dumpvault.core.errors import (
    BackupCreationError,
    BackupError,
    BackupErrorType,
    BackupTimeoutError,
    CompressionError,
    DiskSpaceError,
    FileSystemError,
    PermissionDeniedError,
    RegistryError,
    ValidationError,
)
from dumpvault.domain.models import (
    BackupOptions,
    BackupRecord,
    BackupResult,
    BatchValidationResult,
    CorruptedBackup,
    CorruptionReport,
    DatabaseInfo,
    IntegrityCheckResult,
    ValidationResult,
    ValidationSummary,
    success_rate,
    utc_now,
)
from dumpvault.services.resilience import (
    ErrorHandler,
    Recovered,
    RetryPolicy,
    RetryWithOverride,
    default_fallback_registry,
    normalize_error,
)
from dumpvault.services.storage import BackupStorage
from dumpvault.services.validator import BackupValidator


logger = logging.getLogger(__name__)

FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.sql(\.gz)?$")
DEFAULT_PG_PORT = 5432

OPTIONS_POLICY = RetryPolicy(max_attempts=1)
DIRECTORY_POLICY = RetryPolicy()
DUMP_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=5000,
    retryable_errors=frozenset(
        {
            BackupErrorType.DATABASE_CONNECTION,
            BackupErrorType.TIMEOUT,
            BackupErrorType.BACKUP_CREATION,
        }
    ),
)
COMPRESSION_POLICY = RetryPolicy(max_attempts=2, base_delay_ms=1000, max_delay_ms=5000)
DATABASE_INFO_POLICY = RetryPolicy(max_attempts=2, base_delay_ms=1000, max_delay_ms=5000)
REGISTRY_POLICY = RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=5000)
CREATE_POLICY = RetryPolicy(max_attempts=3, base_delay_ms=2000)

ProgressSink = Callable[[str, float, str, str], None]
DumpProgress = Callable[[float], None]
DatabaseInfoProvider = Callable[[], Awaitable[DatabaseInfo]]


class DumpRunner(Protocol):
    async def __call__(
        self,
        options: BackupOptions,
        output_path: Path,
        on_progress: DumpProgress,
        *,
        connect_timeout_s: int | None = None,
    ) -> None: ...


def build_pg_dump_command(db_url: str, options: BackupOptions) -> tuple[list[str], dict[str, str]]:
    """Translate a database URL and content flags into pg_dump arguments.

    The password is returned in the environment mapping and never appears in
    the argument list.
    """
    try:
        parsed = make_url(db_url)
    except ArgumentError as exc:
        raise ValidationError("Invalid database URL", {"error": exc}) from exc
    if "+" in parsed.drivername:
        parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
    if not parsed.database:
        raise ValidationError("Invalid database URL: missing database name")

    args = [
        "--host",
        parsed.host or "localhost",
        "--port",
        str(parsed.port or DEFAULT_PG_PORT),
        "--username",
        parsed.username or "",
        "--dbname",
        parsed.database,
        "--verbose",
        "--no-password",
    ]
    if not options.include_schema:
        args.append("--data-only")
    elif not options.include_data:
        args.append("--schema-only")
    if options.include_schema:
        args.extend(["--create", "--clean"])

    env = {"PGPASSWORD": parsed.password or ""}
    return args, env


class PgDumpRunner:
    """Run pg_dump as a subprocess, streaming stdout straight into the output file."""

    def __init__(
        self,
        *,
        pg_dump_path: str | None = None,
        database_url: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self.pg_dump_path = pg_dump_path or settings.pg_dump_path
        self.database_url = database_url or settings.database_url
        self.timeout_s = timeout_s or settings.pg_dump_timeout_s

    async def __call__(
        self,
        options: BackupOptions,
        output_path: Path,
        on_progress: DumpProgress,
        *,
        connect_timeout_s: int | None = None,
    ) -> None:
        args, extra_env = build_pg_dump_command(self.database_url, options)
        env = {**os.environ, **extra_env}
        if connect_timeout_s:
            env["PGCONNECT_TIMEOUT"] = str(connect_timeout_s)

        stderr_lines: list[str] = []
        with output_path.open("wb") as output_handle:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.pg_dump_path,
                    *args,
                    stdout=output_handle,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except OSError as exc:
                raise BackupCreationError(
                    f"Failed to execute pg_dump: {exc}",
                    {"filepath": str(output_path), "error": exc},
                ) from exc

            async def _pump_stderr() -> int:
                # pg_dump --verbose reports each table as a COPY line; use them as coarse progress.
                estimate = 0.0
                if proc.stderr is None:
                    raise BackupCreationError("pg_dump produced no stderr stream")
                async for raw in proc.stderr:
                    line = raw.decode("utf-8", errors="ignore")
                    stderr_lines.append(line)
                    if "COPY" in line:
                        estimate = min(estimate + 5, 90)
                        on_progress(estimate)
                return await proc.wait()

            try:
                returncode = await asyncio.wait_for(_pump_stderr(), timeout=self.timeout_s)
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                raise BackupTimeoutError(
                    f"Timeout: pg_dump exceeded {self.timeout_s} seconds",
                    {"filepath": str(output_path)},
                ) from exc

        if returncode != 0:
            stderr = "".join(stderr_lines).strip()
            # Classify the failure (connection, timeout, permission) from pg_dump's own message.
            raise normalize_error(
                RuntimeError(f"pg_dump failed with exit code {returncode}: {stderr}"),
                {"filepath": str(output_path)},
            )


async def _settings_database_info() -> DatabaseInfo:
    settings = get_settings()
    return DatabaseInfo(version=settings.database_version, schema_version=settings.schema_version)


def _timestamp_filename(now: datetime | None = None) -> str:
    stamp = (now or utc_now()).strftime("%Y-%m-%d_%H-%M-%S")
    return f"backup_{stamp}.sql"


def _ensure_directory(directory: Path) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except PermissionError as exc:
        raise PermissionDeniedError(
            f"Permission denied creating directory: {directory}",
            {"directory": str(directory), "error": exc},
        ) from exc
    except OSError as exc:
        if exc.errno in {errno.EACCES, errno.EPERM}:
            raise PermissionDeniedError(
                f"Permission denied creating directory: {directory}",
                {"directory": str(directory), "error": exc},
            ) from exc
        raise FileSystemError(
            f"Failed to create directory: {directory}",
            {"directory": str(directory), "error": exc},
        ) from exc


def _gzip_file(source: Path) -> Path:
    # Stream into a sibling .gz and drop the uncompressed dump once complete.
    target = source.with_name(source.name + ".gz")
    with source.open("rb") as input_handle, gzip.open(target, "wb") as gzip_handle:
        shutil.copyfileobj(input_handle, gzip_handle, 1024 * 1024)
    source.unlink()
    return target


def _unlink_if_present(path: Path) -> None:
    path.unlink(missing_ok=True)


class BackupService:
    """Creates, inspects and removes database dumps tracked in the backup registry."""

    def __init__(
        self,
        storage: BackupStorage,
        validator: BackupValidator,
        errors: ErrorHandler | None = None,
        *,
        dump_runner: DumpRunner | None = None,
        progress: ProgressSink | None = None,
        database_info: DatabaseInfoProvider | None = None,
    ) -> None:
        self.storage = storage
        self.validator = validator
        self.errors = errors or ErrorHandler(fallbacks=default_fallback_registry(storage))
        self.dump_runner: DumpRunner = dump_runner or PgDumpRunner()
        self._progress = progress
        self._database_info = database_info or _settings_database_info

    def _report(self, backup_id: str, percent: float, message: str, status: str = "in_progress") -> None:
        if self._progress is None:
            return
        try:
            self._progress(backup_id, percent, message, status)
        except Exception as exc:  # noqa: BLE001 - observers must not break the pipeline
            logger.warning("backup_progress_sink_failed backup_id=%s", backup_id, exc_info=exc)

    def _validate_options(self, options: BackupOptions) -> None:
        if options.filename is not None and not FILENAME_PATTERN.match(options.filename):
            raise ValidationError(
                "Invalid filename. Use only letters, numbers, hyphens and underscores, ending in .sql or .sql.gz",
                {"filename": options.filename},
            )
        if options.directory is not None and not (
            os.path.isabs(options.directory) or options.directory.startswith("./")
        ):
            raise ValidationError(
                "Directory must be an absolute path or relative to the current directory (./)",
                {"directory": options.directory},
            )
        if not options.include_data and not options.include_schema:
            raise ValidationError(
                "At least one of include_data or include_schema must be true",
                {"include_data": options.include_data, "include_schema": options.include_schema},
            )

    def _check_disk_space(self, directory: Path) -> None:
        min_free_gb = get_settings().backup_min_free_gb
        try:
            free_gb = psutil.disk_usage(str(directory)).free / (1024**3)
        except OSError as exc:
            logger.warning("backup_disk_space_unavailable directory=%s", directory, exc_info=exc)
            return
        if free_gb < min_free_gb:
            raise DiskSpaceError(
                f"Insufficient disk space: {free_gb:.2f}GB available, {min_free_gb}GB required",
                {"directory": str(directory), "free_gb": free_gb, "min_free_gb": min_free_gb},
            )

    async def _run_pipeline(
        self,
        backup_id: str,
        options: BackupOptions,
        connect_timeout_s: int | None,
    ) -> BackupResult:
        started = time.monotonic()
        self._report(backup_id, 0, "Starting backup")
        context = {"backup_id": backup_id}
        artifacts: list[Path] = []
        try:
            await self.errors.execute_with_retry(
                _as_async(self._validate_options, options),
                "validate_backup_options",
                context,
                OPTIONS_POLICY,
                use_fallbacks=False,
            )
            self._report(backup_id, 10, "Validating parameters")

            filename = options.filename or _timestamp_filename()
            directory = Path(options.directory or get_settings().backup_files_dir).resolve()
            await self.errors.execute_with_retry(
                lambda: asyncio.to_thread(_ensure_directory, directory),
                "ensure_backup_directory",
                {**context, "directory": str(directory)},
                DIRECTORY_POLICY,
                use_fallbacks=False,
            )
            filepath = directory / filename

            self._report(backup_id, 20, "Checking disk space")
            await asyncio.to_thread(self._check_disk_space, directory)

            self._report(backup_id, 30, "Running pg_dump")

            def _dump_progress(percent: float) -> None:
                self._report(backup_id, 30 + percent * 0.4, "Creating backup")

            artifacts.append(filepath)
            await self.errors.execute_with_retry(
                lambda: self.dump_runner(
                    options,
                    filepath,
                    _dump_progress,
                    connect_timeout_s=connect_timeout_s,
                ),
                "pg_dump",
                {**context, "filepath": str(filepath)},
                DUMP_POLICY,
                use_fallbacks=False,
            )

            self._report(backup_id, 70, "Calculating checksum")
            stat = await asyncio.to_thread(filepath.stat)
            checksum = await self.validator.calculate_checksum(filepath)

            self._report(backup_id, 80, "Validating integrity")
            validation = await self.validator.validate_backup(filepath, checksum)
            if not validation.is_valid:
                logger.error(
                    "backup_validation_rejected backup_id=%s filepath=%s errors=%s",
                    backup_id,
                    filepath,
                    validation.errors,
                )
                raise ValidationError(
                    f"Created backup failed validation: {', '.join(validation.errors)}",
                    {"filepath": str(filepath), "errors": validation.errors},
                )
            if validation.warnings:
                logger.info("backup_validation_warnings backup_id=%s warnings=%s", backup_id, validation.warnings)

            final_path = filepath
            final_size = stat.st_size
            if options.compress and not filepath.name.endswith(".gz"):
                self._report(backup_id, 85, "Compressing file")
                artifacts.append(filepath.with_name(filepath.name + ".gz"))
                final_path = await self.errors.execute_with_retry(
                    lambda: self._compress(filepath),
                    "compress_backup",
                    {**context, "filepath": str(filepath)},
                    COMPRESSION_POLICY,
                    use_fallbacks=False,
                )
                final_size = (await asyncio.to_thread(final_path.stat)).st_size
                # The registry checksum always describes the file it points at.
                checksum = await self.validator.calculate_checksum(final_path)

            self._report(backup_id, 95, "Saving metadata")
            duration = int((time.monotonic() - started) * 1000)
            db_info: DatabaseInfo = await self.errors.execute_with_retry(
                self._database_info,
                "database_info",
                context,
                DATABASE_INFO_POLICY,
                use_fallbacks=False,
            )
            record = BackupRecord(
                id=backup_id,
                filename=final_path.name,
                filepath=str(final_path),
                size=final_size,
                checksum=checksum,
                created_at=utc_now(),
                created_by=options.created_by,
                status="success",
                duration=duration,
                database_version=db_info.version,
                schema_version=db_info.schema_version,
            )
            await self.errors.execute_with_retry(
                lambda: self.storage.add_backup(record),
                "save_backup_metadata",
                context,
                REGISTRY_POLICY,
                use_fallbacks=False,
            )
        except Exception as exc:
            self._report(backup_id, 0, str(exc) or type(exc).__name__, "failed")
            await self._discard_artifacts(backup_id, artifacts)
            raise

        self._report(backup_id, 100, "Backup completed", "completed")
        logger.info(
            "backup_created backup_id=%s filepath=%s size=%s duration_ms=%s",
            backup_id,
            final_path,
            final_size,
            duration,
        )
        return BackupResult(
            success=True,
            id=backup_id,
            filename=record.filename,
            filepath=record.filepath,
            size=final_size,
            checksum=checksum,
            duration=duration,
        )

    async def _discard_artifacts(self, backup_id: str, artifacts: list[Path]) -> None:
        # Unregistered dump files from a failed run are never reachable by cleanup.
        for path in artifacts:
            try:
                await asyncio.to_thread(_unlink_if_present, path)
            except OSError as exc:
                logger.warning("backup_artifact_remove_failed backup_id=%s path=%s", backup_id, path, exc_info=exc)

    async def _compress(self, filepath: Path) -> Path:
        try:
            return await asyncio.to_thread(_gzip_file, filepath)
        except OSError as exc:
            raise CompressionError(
                f"Compression failed: {exc}",
                {"filepath": str(filepath), "error": exc},
            ) from exc

    async def create_backup(self, options: BackupOptions | None = None) -> BackupResult:
        """Create a dump, validate it and register it.

        Never raises: exhausted retries and unrecoverable failures come back as
        a result with ``success=False``. A fallback that asks for different
        options (no compression, another directory, a longer connect timeout)
        re-runs the pipeline once with those overrides.
        """
        options = options or BackupOptions()
        backup_id = str(uuid4())
        context = {"backup_id": backup_id, "options": options}
        connect_timeout_s: int | None = None
        try:
            outcome = await self.errors.execute_with_retry(
                lambda: self._run_pipeline(backup_id, options, connect_timeout_s),
                "create_backup",
                context,
                CREATE_POLICY,
            )
            if isinstance(outcome, RetryWithOverride):
                options, connect_timeout_s = _apply_overrides(options, outcome.overrides)
                logger.info(
                    "backup_rerun_with_override backup_id=%s strategy=%s overrides=%s",
                    backup_id,
                    outcome.strategy,
                    outcome.overrides,
                )
                outcome = await self.errors.execute_with_retry(
                    lambda: self._run_pipeline(backup_id, options, connect_timeout_s),
                    "create_backup",
                    {**context, "fallback_strategy": outcome.strategy},
                    CREATE_POLICY,
                )
            if isinstance(outcome, BackupResult):
                return outcome
            if isinstance(outcome, Recovered):
                message = f"Backup failed; recovered via {outcome.strategy}, retry the backup"
            else:
                message = "Backup failed; fallback requested another retry"
            return _failed_result(backup_id, message)
        except Exception as exc:  # noqa: BLE001 - callers always receive a structured result
            error = normalize_error(exc)
            logger.error("backup_create_failed backup_id=%s error=%s", backup_id, error.message)
            return _failed_result(backup_id, error.message)

    async def list_backups(self) -> list[BackupRecord]:
        return await self.storage.list_backups()

    async def validate_backup(self, filepath: str, expected_checksum: str | None = None) -> bool:
        result = await self.validator.validate_backup(filepath, expected_checksum)
        return result.is_valid

    async def get_backup_validation_details(
        self,
        filepath: str,
        expected_checksum: str | None = None,
    ) -> ValidationResult:
        return await self.validator.validate_backup(filepath, expected_checksum)

    async def validate_multiple_backups(self, backup_ids: list[str]) -> BatchValidationResult:
        paths: list[str] = []
        checksums: dict[str, str] = {}
        for backup_id in backup_ids:
            record = await self.storage.get_backup(backup_id)
            if record is None:
                continue
            paths.append(record.filepath)
            checksums[record.filepath] = record.checksum
        if not paths:
            raise RegistryError("No valid backups found for validation", {"backup_ids": backup_ids})
        results = await self.validator.validate_multiple_backups(paths, checksums)
        return BatchValidationResult(
            results=results,
            report=self.validator.generate_validation_report(results),
        )

    async def run_integrity_check(self) -> IntegrityCheckResult:
        try:
            backups = await self.storage.list_backups()
        except BackupError as exc:
            logger.error("backup_integrity_check_failed", exc_info=exc)
            return IntegrityCheckResult(
                success=False,
                message=f"Integrity check failed: {exc.message}",
                results={},
                summary=ValidationSummary(total=0, valid=0, invalid=0, success_rate=0.0),
            )
        if not backups:
            return IntegrityCheckResult(
                success=True,
                message="No backups found to verify",
                results={},
                summary=ValidationSummary(total=0, valid=0, invalid=0, success_rate=0.0),
            )

        logger.info("backup_integrity_check_started count=%s", len(backups))
        checksums = {record.filepath: record.checksum for record in backups}
        results = await self.validator.validate_multiple_backups(list(checksums), checksums)
        total = len(results)
        valid = sum(1 for result in results.values() if result.is_valid)
        for record in backups:
            result = results.get(record.filepath)
            if result is not None and not result.is_valid:
                logger.warning(
                    "backup_integrity_failed backup_id=%s filename=%s errors=%s",
                    record.id,
                    record.filename,
                    result.errors,
                )
        return IntegrityCheckResult(
            success=valid == total,
            message=f"Integrity check complete: {valid}/{total} backups valid",
            results=results,
            summary=ValidationSummary(
                total=total,
                valid=valid,
                invalid=total - valid,
                success_rate=success_rate(valid, total),
            ),
            report=self.validator.generate_validation_report(results),
        )

    async def detect_corrupted_backups(self) -> CorruptionReport:
        backups = await self.storage.list_backups()
        corrupted: list[CorruptedBackup] = []
        for record in backups:
            if await self.validator.detect_file_corruption(record.filepath):
                corrupted.append(
                    CorruptedBackup(
                        id=record.id,
                        filename=record.filename,
                        created_at=record.created_at,
                        size=record.size,
                    )
                )
        return CorruptionReport(
            corrupted_count=len(corrupted),
            total_count=len(backups),
            corrupted_backups=corrupted,
        )

    async def delete_backup(self, backup_id: str) -> bool:
        # File removal is best-effort; the registry entry always goes.
        record = await self.storage.get_backup(backup_id)
        if record is None:
            return False
        try:
            await asyncio.to_thread(_unlink_if_present, Path(record.filepath))
        except OSError as exc:
            logger.warning("backup_file_remove_failed backup_id=%s", backup_id, exc_info=exc)
        try:
            await self.storage.remove_backup(backup_id)
        except RegistryError as exc:
            logger.error("backup_delete_failed backup_id=%s", backup_id, exc_info=exc)
            return False
        logger.info("backup_deleted backup_id=%s", backup_id)
        return True

    async def get_backup_info(self, backup_id: str) -> BackupRecord | None:
        return await self.storage.get_backup(backup_id)


def _as_async(func: Callable[..., Any], *args: Any) -> Callable[[], Awaitable[Any]]:
    async def _call() -> Any:
        return func(*args)

    return _call


def _apply_overrides(options: BackupOptions, overrides: dict[str, Any]) -> tuple[BackupOptions, int | None]:
    updated = options
    if "compress" in overrides:
        updated = replace(updated, compress=bool(overrides["compress"]))
    if "directory" in overrides:
        updated = replace(updated, directory=str(overrides["directory"]))
    connect_timeout_s = None
    if "timeout_ms" in overrides:
        connect_timeout_s = max(int(overrides["timeout_ms"]) // 1000, 1)
    return updated, connect_timeout_s


def _failed_result(backup_id: str, message: str) -> BackupResult:
    return BackupResult(
        success=False,
        id=backup_id,
        filename="",
        filepath="",
        size=0,
        checksum="",
        duration=0,
        error=message,
    )
