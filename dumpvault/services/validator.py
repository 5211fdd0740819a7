from __future__ import annotations

import asyncio
import gzip
import hashlib
import logging
import os
from pathlib import Path
import re
import time
import zlib

from dumpvault.core.errors import ValidationError
from dumpvault.domain.models import (
    ChecksumValidation,
    SqlStructureValidation,
    ValidationResult,
    success_rate,
)


logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".sql", ".sql.gz")
MIN_BACKUP_SIZE = 100
LARGE_FILE_BYTES = 1024 * 1024 * 1024
BATCH_SIZE = 3
_CHUNK_SIZE = 1024 * 1024

_CREATE_TABLE = re.compile(r"CREATE TABLE", re.IGNORECASE)
_INSERT_INTO = re.compile(r"INSERT INTO", re.IGNORECASE)
_COPY_FROM = re.compile(r"COPY .* FROM", re.IGNORECASE)
_DUMP_HEADER = re.compile(r"-- PostgreSQL database dump", re.IGNORECASE)
_DUMP_COMPLETE = re.compile(r"-- PostgreSQL database dump complete", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _md5_file(path: Path) -> str:
    # Stream the file so multi-gigabyte dumps never load into memory.
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _read_dump_text(path: Path) -> str:
    # Decompress transparently so structure checks see SQL either way.
    if path.name.lower().endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as handle:
            return handle.read()
    return path.read_text(encoding="utf-8", errors="replace")


def _is_corrupted_sync(path: Path) -> bool:
    name = path.name.lower()
    try:
        if name.endswith(".sql"):
            content = path.read_text(encoding="utf-8", errors="replace")
            if _CONTROL_CHARS.search(content):
                return True
            return not content.strip()
        if name.endswith(".gz"):
            try:
                with gzip.open(path, "rb") as handle:
                    handle.read(1024)
            except (OSError, EOFError, zlib.error):
                return True
            return False
        return False
    except OSError:
        # Unreadable files are treated as corrupted.
        return True


class BackupValidator:
    """Integrity checks for dump files: checksum, SQL markers and corruption heuristics."""

    async def calculate_checksum(self, path: Path | str) -> str:
        try:
            return await asyncio.to_thread(_md5_file, Path(path))
        except OSError as exc:
            raise ValidationError(
                f"Failed to calculate checksum: {exc}",
                {"filepath": str(path), "error": exc},
            ) from exc

    def validate_checksum(self, actual: str, expected: str) -> ChecksumValidation:
        # Hex digests compare case-insensitively.
        actual_normalized = actual.lower()
        expected_normalized = expected.lower()
        return ChecksumValidation(
            matches=actual_normalized == expected_normalized,
            expected=expected_normalized,
            actual=actual_normalized,
        )

    async def validate_sql_structure(self, path: Path | str) -> SqlStructureValidation:
        try:
            content = await asyncio.to_thread(_read_dump_text, Path(path))
        except (OSError, EOFError, zlib.error) as exc:
            raise ValidationError(
                f"Failed to validate SQL structure: {exc}",
                {"filepath": str(path), "error": exc},
            ) from exc
        table_count = len(_CREATE_TABLE.findall(content))
        insert_count = len(_INSERT_INTO.findall(content))
        copy_count = len(_COPY_FROM.findall(content))
        return SqlStructureValidation(
            has_create_statements=table_count > 0,
            has_insert_statements=insert_count > 0,
            has_copy_statements=copy_count > 0,
            has_valid_header=bool(_DUMP_HEADER.search(content)),
            has_valid_footer=bool(_DUMP_COMPLETE.search(content)),
            table_count=table_count,
            estimated_records=insert_count + copy_count,
        )

    async def detect_file_corruption(self, path: Path | str) -> bool:
        return await asyncio.to_thread(_is_corrupted_sync, Path(path))

    def _check_access(self, path: Path) -> list[str]:
        # Existence, read permission and extension; any error here short-circuits validation.
        if not path.exists():
            return [f"File not found: {path}"]
        if not os.access(path, os.R_OK):
            return [f"Permission denied accessing file: {path}"]
        name = path.name.lower()
        if not any(name.endswith(ext) for ext in SUPPORTED_EXTENSIONS):
            return [
                f"Unsupported file extension: {path.suffix.lower()}. "
                f"Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
            ]
        return []

    async def _check_structure(self, path: Path, errors: list[str], warnings: list[str]) -> None:
        try:
            structure = await self.validate_sql_structure(path)
        except ValidationError as exc:
            errors.append(f"Structure validation failed: {exc.message}")
            return
        if not structure.has_valid_header:
            warnings.append("PostgreSQL dump header not found in backup")
        if not (
            structure.has_create_statements
            or structure.has_insert_statements
            or structure.has_copy_statements
        ):
            errors.append("Backup contains neither data nor table structure")
        if structure.table_count == 0:
            warnings.append("No tables found in backup")
        if not structure.has_valid_footer:
            warnings.append("Dump completion footer not found")
        if structure.table_count > 0:
            warnings.append(f"Backup contains {structure.table_count} table(s)")
        if structure.estimated_records > 0:
            warnings.append(f"Estimated {structure.estimated_records} data operation(s)")

    async def validate_backup(
        self,
        path: Path | str,
        expected_checksum: str | None = None,
    ) -> ValidationResult:
        """Run every integrity check and collect all findings.

        Only a missing or unreadable file stops the pipeline early; every other
        check runs so the result lists all problems at once.
        """
        started = time.monotonic()
        target = Path(path)
        errors: list[str] = []
        warnings: list[str] = []
        checksum = ""
        size = 0
        try:
            access_errors = await asyncio.to_thread(self._check_access, target)
            if access_errors:
                return ValidationResult(
                    is_valid=False,
                    checksum="",
                    size=0,
                    errors=access_errors,
                    warnings=[],
                    validation_time=_elapsed_ms(started),
                )

            size = (await asyncio.to_thread(target.stat)).st_size
            if size == 0:
                errors.append("Backup file is empty")
            elif size < MIN_BACKUP_SIZE:
                errors.append(f"Backup file too small: {size} bytes (minimum: {MIN_BACKUP_SIZE} bytes)")
            if size > LARGE_FILE_BYTES:
                warnings.append(f"Large file detected: {size / LARGE_FILE_BYTES:.2f}GB")

            checksum = await self.calculate_checksum(target)
            if expected_checksum:
                comparison = self.validate_checksum(checksum, expected_checksum)
                if not comparison.matches:
                    errors.append(
                        f"Checksum mismatch. Expected: {comparison.expected}, Got: {comparison.actual}"
                    )

            await self._check_structure(target, errors, warnings)

            if await self.detect_file_corruption(target):
                errors.append("File appears to be corrupted or incomplete")
        except Exception as exc:  # noqa: BLE001 - unexpected failures become validation errors
            logger.warning("backup_validation_failed path=%s", target, exc_info=exc)
            errors.append(f"Validation failed: {exc}")

        result = ValidationResult(
            is_valid=not errors,
            checksum=checksum,
            size=size,
            errors=errors,
            warnings=warnings,
            validation_time=_elapsed_ms(started),
        )
        logger.info(
            "backup_validated path=%s valid=%s errors=%s warnings=%s duration_ms=%s",
            target,
            result.is_valid,
            len(errors),
            len(warnings),
            result.validation_time,
        )
        return result

    async def validate_multiple_backups(
        self,
        paths: list[str],
        expected_checksums: dict[str, str] | None = None,
    ) -> dict[str, ValidationResult]:
        # Bound concurrent reads to a small batch so large dumps do not pile up in memory.
        expected_checksums = expected_checksums or {}
        results: dict[str, ValidationResult] = {}
        for start in range(0, len(paths), BATCH_SIZE):
            batch = paths[start : start + BATCH_SIZE]
            batch_results = await asyncio.gather(
                *(self.validate_backup(path, expected_checksums.get(path)) for path in batch)
            )
            results.update(zip(batch, batch_results))
        return results

    def generate_validation_report(self, results: dict[str, ValidationResult]) -> str:
        lines = ["=== BACKUP VALIDATION REPORT ===", ""]
        total_files = len(results)
        valid_files = 0
        total_errors = 0
        total_warnings = 0

        for filepath, result in results.items():
            if result.is_valid:
                valid_files += 1
            total_errors += len(result.errors)
            total_warnings += len(result.warnings)

            lines.append(f"File: {os.path.basename(filepath)}")
            lines.append(f"Status: {'VALID' if result.is_valid else 'INVALID'}")
            lines.append(f"Size: {result.size / 1024 / 1024:.2f} MB")
            lines.append(f"Checksum: {result.checksum}")
            lines.append(f"Validation time: {result.validation_time}ms")
            if result.errors:
                lines.append("Errors:")
                lines.extend(f"  - {error}" for error in result.errors)
            if result.warnings:
                lines.append("Warnings:")
                lines.extend(f"  - {warning}" for warning in result.warnings)
            lines.append("")

        lines.append("=== SUMMARY ===")
        lines.append(f"Total files: {total_files}")
        lines.append(f"Valid files: {valid_files}")
        lines.append(f"Invalid files: {total_files - valid_files}")
        lines.append(f"Total errors: {total_errors}")
        lines.append(f"Total warnings: {total_warnings}")
        lines.append(f"Success rate: {success_rate(valid_files, total_files):.1f}%")
        return "\n".join(lines)
