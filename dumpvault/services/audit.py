from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import json
import logging
from pathlib import Path
import secrets
import time
from typing import Any

from dumpvault.core.config import get_settings
from dumpvault.domain.models import AuditEntry, parse_timestamp, utc_now


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"
SYSTEM_ACTOR = "system"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _generate_audit_id() -> str:
    return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


@dataclass(frozen=True)
class AuditActor:
    id: str
    email: str
    role: str


SYSTEM = AuditActor(id=SYSTEM_ACTOR, email=SYSTEM_ACTOR, role=SYSTEM_ACTOR)


@dataclass(frozen=True)
class AuditFilter:
    user_id: str | None = None
    operation: str | None = None
    success: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.operation and entry.operation != self.operation:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


@dataclass(frozen=True)
class AuditStats:
    total_operations: int
    successful_operations: int
    failed_operations: int
    operations_by_type: dict[str, int] = field(default_factory=dict)
    recent_activity: list[AuditEntry] = field(default_factory=list)


def create_audit_entry(
    operation: str,
    user: AuditActor,
    success: bool,
    *,
    resource: str | None = None,
    error: str | None = None,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditEntry:
    # Build an unstamped entry; log_operation assigns the id and timestamp.
    return AuditEntry(
        id="",
        timestamp=utc_now(),
        user_id=user.id,
        user_email=user.email,
        user_role=user.role,
        operation=operation,
        success=success,
        resource=resource,
        error=error,
        metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )


class BackupAuditLogger:
    """Append-only NDJSON trail of backup operations, rotated by size."""

    def __init__(
        self,
        audit_file: Path | str | None = None,
        *,
        max_log_size: int | None = None,
        max_log_files: int | None = None,
    ) -> None:
        settings = get_settings()
        self.audit_file = Path(audit_file or settings.audit_log_file)
        self.max_log_size = max_log_size or settings.audit_max_log_size_bytes
        self.max_log_files = max_log_files or settings.audit_max_log_files

    def _rotated_files(self) -> list[Path]:
        # Rotation stamps sort lexically, so newest generations come first.
        return sorted(
            self.audit_file.parent.glob(f"{self.audit_file.name}.*"),
            key=lambda path: path.name,
            reverse=True,
        )

    def _rotate_if_needed(self) -> None:
        try:
            size = self.audit_file.stat().st_size
        except FileNotFoundError:
            return
        if size <= self.max_log_size:
            return
        stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        rotated = self.audit_file.with_name(f"{self.audit_file.name}.{stamp}")
        self.audit_file.rename(rotated)
        logger.info("audit_log_rotated path=%s rotated=%s", self.audit_file, rotated)
        for stale in self._rotated_files()[self.max_log_files :]:
            try:
                stale.unlink()
            except OSError as exc:
                logger.warning("audit_log_prune_failed path=%s", stale, exc_info=exc)

    def _append_sync(self, line: str) -> None:
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed()
        with self.audit_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _read_lines_sync(self) -> list[str]:
        if not self.audit_file.exists():
            return []
        return [line for line in self.audit_file.read_text(encoding="utf-8").splitlines() if line.strip()]

    @staticmethod
    def _parse_line(line: str) -> AuditEntry | None:
        try:
            return AuditEntry.from_dict(json.loads(line))
        except (ValueError, KeyError, TypeError):
            logger.warning("audit_log_malformed_line line=%s", line[:200])
            return None

    async def log_operation(self, entry: AuditEntry) -> None:
        # Best effort: audit failures are reported but never fail the audited operation.
        stamped = replace(
            entry,
            id=_generate_audit_id(),
            timestamp=utc_now(),
            metadata=sanitize_metadata(entry.metadata) if entry.metadata is not None else None,
        )
        try:
            line = json.dumps(stamped.to_dict(), default=str)
            await asyncio.to_thread(self._append_sync, line)
        except Exception as exc:  # noqa: BLE001 - audit writes are best-effort
            logger.warning(
                "audit_event_write_failed operation=%s user_id=%s",
                entry.operation,
                entry.user_id,
                exc_info=exc,
            )
            return
        logger.info(
            "backup_audit operation=%s user=%s success=%s",
            stamped.operation,
            stamped.user_email,
            stamped.success,
        )

    async def log_system(
        self,
        operation: str,
        metadata: dict[str, Any] | None = None,
        *,
        success: bool = True,
        error: str | None = None,
        resource: str | None = None,
    ) -> None:
        await self.log_operation(
            create_audit_entry(
                operation,
                SYSTEM,
                success,
                resource=resource,
                error=error,
                metadata=metadata,
            )
        )

    async def get_audit_entries(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        audit_filter = audit_filter or AuditFilter()
        try:
            lines = await asyncio.to_thread(self._read_lines_sync)
        except OSError as exc:
            logger.error("audit_log_read_failed path=%s", self.audit_file, exc_info=exc)
            return []
        entries = [entry for entry in map(self._parse_line, lines) if entry is not None]
        entries = [entry for entry in entries if audit_filter.matches(entry)]
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        if audit_filter.limit and audit_filter.limit > 0:
            entries = entries[: audit_filter.limit]
        return entries

    async def get_audit_stats(self) -> AuditStats:
        entries = await self.get_audit_entries()
        successful = sum(1 for entry in entries if entry.success)
        return AuditStats(
            total_operations=len(entries),
            successful_operations=successful,
            failed_operations=len(entries) - successful,
            operations_by_type=dict(Counter(entry.operation for entry in entries)),
            recent_activity=entries[:10],
        )

    def _cleanup_sync(self, cutoff: datetime) -> int:
        # Keep surviving lines verbatim so retained entries are untouched.
        lines = self._read_lines_sync()
        kept: list[str] = []
        for line in lines:
            try:
                timestamp = parse_timestamp(json.loads(line)["timestamp"])
            except (ValueError, KeyError, TypeError):
                kept.append(line)
                continue
            if timestamp >= cutoff:
                kept.append(line)
        removed = len(lines) - len(kept)
        if removed > 0:
            content = "".join(f"{line}\n" for line in kept)
            self.audit_file.write_text(content, encoding="utf-8")
        return removed

    async def cleanup_old_entries(self, days_to_keep: int = 90) -> int:
        cutoff = utc_now() - timedelta(days=days_to_keep)
        try:
            removed = await asyncio.to_thread(self._cleanup_sync, cutoff)
        except OSError as exc:
            logger.error("audit_log_cleanup_failed path=%s", self.audit_file, exc_info=exc)
            return 0
        if removed:
            logger.info("audit_log_cleanup removed=%s days_to_keep=%s", removed, days_to_keep)
        return removed
