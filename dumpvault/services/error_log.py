from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
import json
import logging
import os
from pathlib import Path
import traceback

from dumpvault.core.config import get_settings
from dumpvault.core.errors import BackupError, BackupErrorType, ErrorSeverity
from dumpvault.domain.models import ErrorLogEntry, utc_now


logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.ERROR,
}


@dataclass(frozen=True)
class ErrorStats:
    total_errors: int
    resolved_errors: int
    unresolved_errors: int
    errors_by_type: dict[BackupErrorType, int]
    errors_by_severity: dict[ErrorSeverity, int]
    most_common_errors: list[tuple[BackupErrorType, int]]


class ErrorLogStore:
    """Durable JSON document of handled errors, newest first, capped by entry count.

    The whole document is rewritten on every change. Writes from one store
    instance are serialized; separate processes sharing the file are not.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int | None = None) -> None:
        settings = get_settings()
        self._path = Path(path or settings.error_log_file)
        self._max_entries = max_entries or settings.error_log_max_entries
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_sync(self) -> list[ErrorLogEntry]:
        if not self._path.exists():
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            return [ErrorLogEntry.from_dict(item) for item in payload]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            # An unreadable log restarts empty rather than blocking error handling.
            logger.warning("error_log_read_failed path=%s", self._path, exc_info=exc)
            return []

    def _write_sync(self, entries: list[ErrorLogEntry]) -> None:
        recent = sorted(entries, key=lambda entry: entry.timestamp, reverse=True)[: self._max_entries]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(
            json.dumps([entry.to_dict() for entry in recent], indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)

    async def read_entries(self) -> list[ErrorLogEntry]:
        return await asyncio.to_thread(self._read_sync)

    async def log_error(self, error: BackupError, attempt_number: int, operation_name: str) -> None:
        # Record one failed attempt; failures to persist are reported and swallowed.
        level = _SEVERITY_LEVELS.get(error.severity, logging.WARNING)
        logger.log(
            level,
            "backup_error type=%s id=%s attempt=%s operation=%s message=%s",
            error.error_type.value,
            error.id,
            attempt_number,
            operation_name,
            error.message,
        )
        stack = "".join(traceback.format_exception(error)) if error.__traceback__ else None
        entry = ErrorLogEntry(
            id=error.id,
            timestamp=error.timestamp,
            error_type=error.error_type,
            severity=error.severity,
            message=error.message,
            context={**error.context, "operationName": operation_name, "attemptNumber": attempt_number},
            attempt_number=attempt_number,
            resolved=False,
            stack=stack,
        )
        try:
            async with self._lock:
                entries = await asyncio.to_thread(self._read_sync)
                entries.append(entry)
                await asyncio.to_thread(self._write_sync, entries)
        except Exception as exc:  # noqa: BLE001 - error logging must never fail the caller
            logger.error("error_log_write_failed id=%s path=%s", error.id, self._path, exc_info=exc)

    async def log_resolution(self, error: BackupError, final_attempt: int, strategy: str) -> None:
        # Mark a previously logged error as resolved by retry or fallback.
        try:
            async with self._lock:
                entries = await asyncio.to_thread(self._read_sync)
                for entry in entries:
                    if entry.id == error.id:
                        entry.resolved = True
                        entry.resolution_strategy = strategy
                        await asyncio.to_thread(self._write_sync, entries)
                        break
            logger.info(
                "backup_error_resolved id=%s strategy=%s attempt=%s",
                error.id,
                strategy,
                final_attempt,
            )
        except Exception as exc:  # noqa: BLE001 - error logging must never fail the caller
            logger.error("error_log_resolution_failed id=%s", error.id, exc_info=exc)

    async def get_error_logs(
        self,
        *,
        error_type: BackupErrorType | None = None,
        severity: ErrorSeverity | None = None,
        resolved: bool | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[ErrorLogEntry]:
        entries = await self.read_entries()
        if error_type is not None:
            entries = [entry for entry in entries if entry.error_type == error_type]
        if severity is not None:
            entries = [entry for entry in entries if entry.severity == severity]
        if resolved is not None:
            entries = [entry for entry in entries if entry.resolved == resolved]
        if start_date is not None:
            entries = [entry for entry in entries if entry.timestamp >= start_date]
        if end_date is not None:
            entries = [entry for entry in entries if entry.timestamp <= end_date]
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        if limit:
            entries = entries[:limit]
        return entries

    async def get_error_stats(self, days: int = 7) -> ErrorStats:
        # Aggregate over a trailing window so stale incidents do not dominate.
        cutoff = utc_now() - timedelta(days=days)
        recent = [entry for entry in await self.read_entries() if entry.timestamp >= cutoff]
        by_type = Counter(entry.error_type for entry in recent)
        by_severity = Counter(entry.severity for entry in recent)
        resolved = sum(1 for entry in recent if entry.resolved)
        return ErrorStats(
            total_errors=len(recent),
            resolved_errors=resolved,
            unresolved_errors=len(recent) - resolved,
            errors_by_type=dict(by_type),
            errors_by_severity=dict(by_severity),
            most_common_errors=by_type.most_common(5),
        )

    async def cleanup_old_logs(self, days_to_keep: int = 30) -> int:
        cutoff = utc_now() - timedelta(days=days_to_keep)
        async with self._lock:
            entries = await asyncio.to_thread(self._read_sync)
            kept = [entry for entry in entries if entry.timestamp >= cutoff]
            removed = len(entries) - len(kept)
            if removed > 0:
                await asyncio.to_thread(self._write_sync, kept)
        return removed

    async def generate_error_report(self, days: int = 7) -> str:
        stats = await self.get_error_stats(days)
        recent_errors = await self.get_error_logs(limit=10)

        lines = [f"=== BACKUP ERROR REPORT ({days} days) ===", ""]
        lines.append("SUMMARY:")
        lines.append(f"Total errors: {stats.total_errors}")
        lines.append(f"Resolved errors: {stats.resolved_errors}")
        lines.append(f"Unresolved errors: {stats.unresolved_errors}")
        if stats.total_errors > 0:
            resolution_rate = f"{stats.resolved_errors / stats.total_errors * 100:.1f}"
        else:
            resolution_rate = "0"
        lines.append(f"Resolution rate: {resolution_rate}%")
        lines.append("")

        lines.append("ERRORS BY TYPE:")
        for error_type, count in stats.errors_by_type.items():
            lines.append(f"  {error_type.value}: {count}")
        lines.append("")

        lines.append("ERRORS BY SEVERITY:")
        for severity, count in stats.errors_by_severity.items():
            lines.append(f"  {severity.value}: {count}")
        lines.append("")

        lines.append("MOST COMMON ERRORS:")
        for error_type, count in stats.most_common_errors:
            lines.append(f"  {error_type.value}: {count} occurrences")
        lines.append("")

        if recent_errors:
            lines.append("RECENT ERRORS:")
            for entry in recent_errors[:5]:
                lines.append(f"  [{entry.timestamp.isoformat()}] {entry.error_type.value}: {entry.message}")
                if not entry.resolved:
                    lines.append("    Status: NOT RESOLVED")

        return "\n".join(lines)
