from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import json
import logging
import os
from pathlib import Path
from typing import Any

from dumpvault.core.config import get_settings
from dumpvault.core.errors import RegistryError
from dumpvault.domain.models import (
    BackupRecord,
    BackupStats,
    BackupStatus,
    CleanupResult,
    CleanupSimulation,
    FullCleanupResult,
    Registry,
    RegistrySettings,
    RegistryValidation,
    utc_now,
)


logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "registry.json"
_RECORD_FIELDS = {
    "filename",
    "filepath",
    "size",
    "checksum",
    "created_at",
    "created_by",
    "status",
    "duration",
    "database_version",
    "schema_version",
}


def _unlink(path: str) -> None:
    os.unlink(path)


class BackupStorage:
    """Registry of backup records persisted as one JSON document.

    Every mutation reads the whole document, changes it and writes it back
    through a temporary file and ``os.replace``. Concurrent writers are not
    coordinated, so two overlapping mutations can drop one update.
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        *,
        registry_file: str = REGISTRY_FILENAME,
        files_dir: Path | str | None = None,
        max_backups: int | None = None,
        retention_days: int | None = None,
    ) -> None:
        settings = get_settings()
        self.base_dir = Path(base_dir or settings.backup_directory)
        self.registry_path = self.base_dir / registry_file
        self.files_dir = Path(files_dir or settings.backup_files_dir)
        self._max_backups = settings.backup_max_backups if max_backups is None else max_backups
        self._retention_days = settings.backup_retention_days if retention_days is None else retention_days

    def _empty_registry(self) -> Registry:
        return Registry(
            backups=[],
            last_cleanup=utc_now(),
            settings=RegistrySettings(
                max_backups=self._max_backups,
                retention_days=self._retention_days,
                default_directory=str(self.files_dir),
            ),
        )

    def _initialize_sync(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        if not self.registry_path.exists():
            self._write_sync(self._empty_registry())
            logger.info("backup_registry_created path=%s", self.registry_path)

    def _read_sync(self) -> Registry:
        try:
            payload = json.loads(self.registry_path.read_text(encoding="utf-8"))
            return Registry.from_dict(payload)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise RegistryError(
                f"Failed to read backup registry: {exc}",
                {"registry_path": str(self.registry_path), "error": exc},
            ) from exc

    def _write_sync(self, registry: Registry) -> None:
        tmp_path = self.registry_path.with_name(self.registry_path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(registry.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, self.registry_path)
        except OSError as exc:
            raise RegistryError(
                f"Failed to write backup registry: {exc}",
                {"registry_path": str(self.registry_path), "error": exc},
            ) from exc

    async def initialize(self) -> None:
        # Create the base directory and an empty registry when absent.
        await asyncio.to_thread(self._initialize_sync)

    async def _read(self) -> Registry:
        await self.initialize()
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, registry: Registry) -> None:
        await asyncio.to_thread(self._write_sync, registry)

    async def add_backup(self, record: BackupRecord) -> None:
        registry = await self._read()
        if any(existing.id == record.id for existing in registry.backups):
            raise RegistryError(f"Backup with ID {record.id} already exists", {"backup_id": record.id})
        registry.backups.append(record)
        await self._write(registry)
        logger.info("backup_registered backup_id=%s filename=%s", record.id, record.filename)

    async def update_backup(self, backup_id: str, **fields: Any) -> BackupRecord:
        unknown = set(fields) - _RECORD_FIELDS
        if unknown:
            raise RegistryError(
                f"Unknown backup fields: {', '.join(sorted(unknown))}",
                {"backup_id": backup_id},
            )
        registry = await self._read()
        for record in registry.backups:
            if record.id == backup_id:
                for name, value in fields.items():
                    setattr(record, name, value)
                await self._write(registry)
                return record
        raise RegistryError(f"Backup with ID {backup_id} not found", {"backup_id": backup_id})

    async def remove_backup(self, backup_id: str) -> None:
        registry = await self._read()
        remaining = [record for record in registry.backups if record.id != backup_id]
        if len(remaining) == len(registry.backups):
            raise RegistryError(f"Backup with ID {backup_id} not found", {"backup_id": backup_id})
        registry.backups = remaining
        await self._write(registry)
        logger.info("backup_unregistered backup_id=%s", backup_id)

    async def get_backup(self, backup_id: str) -> BackupRecord | None:
        registry = await self._read()
        return next((record for record in registry.backups if record.id == backup_id), None)

    async def list_backups(
        self,
        *,
        status: BackupStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[BackupRecord]:
        # Always newest-first so pagination is stable for operators.
        backups = (await self._read()).backups
        if status is not None:
            backups = [record for record in backups if record.status == status]
        if start_date is not None:
            backups = [record for record in backups if record.created_at >= start_date]
        if end_date is not None:
            backups = [record for record in backups if record.created_at <= end_date]
        backups.sort(key=lambda record: record.created_at, reverse=True)
        if offset:
            backups = backups[offset:]
        if limit:
            backups = backups[:limit]
        return backups

    async def search_backups(self, term: str) -> list[BackupRecord]:
        needle = term.lower()
        backups = (await self._read()).backups
        return [
            record
            for record in backups
            if needle in record.filename.lower()
            or (record.created_by is not None and needle in record.created_by.lower())
        ]

    async def get_backup_stats(self) -> BackupStats:
        backups = (await self._read()).backups
        created = [record.created_at for record in backups]
        return BackupStats(
            total=len(backups),
            successful=sum(1 for record in backups if record.status == "success"),
            failed=sum(1 for record in backups if record.status == "failed"),
            in_progress=sum(1 for record in backups if record.status == "in_progress"),
            total_size=sum(record.size for record in backups),
            oldest_backup=min(created) if created else None,
            newest_backup=max(created) if created else None,
        )

    async def _remove_with_files(
        self,
        registry: Registry,
        candidates: list[BackupRecord],
        *,
        require_file: bool,
    ) -> CleanupResult:
        # One failed unlink is reported and skipped; the rest of the batch continues.
        removed = 0
        freed = 0
        errors: list[str] = []
        for record in candidates:
            try:
                await asyncio.to_thread(_unlink, record.filepath)
                freed += record.size
            except OSError as exc:
                if require_file:
                    errors.append(f"Failed to remove backup {record.id}: {exc}")
                    continue
                if not isinstance(exc, FileNotFoundError):
                    logger.warning("backup_file_remove_failed backup_id=%s", record.id, exc_info=exc)
            registry.backups = [item for item in registry.backups if item.id != record.id]
            removed += 1
        return CleanupResult(removed=removed, freed_space=freed, errors=errors)

    def _expired(self, registry: Registry, retention_days: int) -> list[BackupRecord]:
        cutoff = utc_now() - timedelta(days=retention_days)
        return [
            record
            for record in registry.backups
            if record.created_at < cutoff and record.status != "in_progress"
        ]

    async def cleanup_old_backups(self, retention_days: int | None = None) -> CleanupResult:
        # Remove records past retention (never in-progress ones) and stamp the cleanup time.
        registry = await self._read()
        days = registry.settings.retention_days if retention_days is None else retention_days
        result = await self._remove_with_files(registry, self._expired(registry, days), require_file=True)
        registry.last_cleanup = utc_now()
        await self._write(registry)
        logger.info(
            "backup_cleanup_old removed=%s freed_bytes=%s errors=%s retention_days=%s",
            result.removed,
            result.freed_space,
            len(result.errors),
            days,
        )
        return result

    async def cleanup_excess_backups(self, max_backups: int | None = None) -> CleanupResult:
        # Keep only the newest successful backups up to the configured count.
        registry = await self._read()
        limit = registry.settings.max_backups if max_backups is None else max_backups
        successful = sorted(
            (record for record in registry.backups if record.status == "success"),
            key=lambda record: record.created_at,
            reverse=True,
        )
        if len(successful) <= limit:
            return CleanupResult()
        result = await self._remove_with_files(registry, successful[limit:], require_file=True)
        await self._write(registry)
        logger.info(
            "backup_cleanup_excess removed=%s freed_bytes=%s errors=%s max_backups=%s",
            result.removed,
            result.freed_space,
            len(result.errors),
            limit,
        )
        return result

    async def cleanup_failed_backups(self) -> CleanupResult:
        # Failed records go regardless of whether their partial file still exists.
        registry = await self._read()
        failed = [record for record in registry.backups if record.status == "failed"]
        result = await self._remove_with_files(registry, failed, require_file=False)
        await self._write(registry)
        logger.info("backup_cleanup_failed removed=%s freed_bytes=%s", result.removed, result.freed_space)
        return result

    async def simulate_cleanup_old_backups(self, days_to_keep: int | None = None) -> CleanupSimulation:
        registry = await self._read()
        days = registry.settings.retention_days if days_to_keep is None else days_to_keep
        expired = self._expired(registry, days)
        return CleanupSimulation(
            would_remove=len(expired),
            would_free_space=sum(record.size for record in expired),
            backups_to_remove=expired,
        )

    async def perform_full_cleanup(self) -> FullCleanupResult:
        old_backups = await self.cleanup_old_backups()
        excess_backups = await self.cleanup_excess_backups()
        failed_backups = await self.cleanup_failed_backups()
        return FullCleanupResult(
            total_removed=old_backups.removed + excess_backups.removed + failed_backups.removed,
            total_freed_space=(
                old_backups.freed_space + excess_backups.freed_space + failed_backups.freed_space
            ),
            old_backups=old_backups,
            excess_backups=excess_backups,
            failed_backups=failed_backups,
        )

    async def update_settings(
        self,
        *,
        max_backups: int | None = None,
        retention_days: int | None = None,
        default_directory: str | None = None,
    ) -> RegistrySettings:
        registry = await self._read()
        if max_backups is not None:
            registry.settings.max_backups = max_backups
        if retention_days is not None:
            registry.settings.retention_days = retention_days
        if default_directory is not None:
            registry.settings.default_directory = default_directory
        await self._write(registry)
        return registry.settings

    async def get_settings(self) -> RegistrySettings:
        return (await self._read()).settings

    async def should_perform_cleanup(self) -> bool:
        # At least one full day since the last age-based cleanup.
        registry = await self._read()
        return (utc_now() - registry.last_cleanup).days >= 1

    async def validate_registry(self) -> RegistryValidation:
        """Drop records whose backing file is gone and persist the correction."""
        issues: list[str] = []
        fixed: list[str] = []
        try:
            registry = await self._read()
            kept: list[BackupRecord] = []
            for record in registry.backups:
                if await asyncio.to_thread(os.path.exists, record.filepath):
                    kept.append(record)
                    continue
                issues.append(f"Backup file not found: {record.filepath}")
                fixed.append(f"Removed orphan entry: {record.id}")
            if fixed:
                registry.backups = kept
                await self._write(registry)
                logger.warning("backup_registry_orphans_removed count=%s", len(fixed))
        except RegistryError as exc:
            return RegistryValidation(
                is_valid=False,
                issues=[f"Registry validation failed: {exc.message}"],
                fixed_issues=[],
            )
        return RegistryValidation(is_valid=not issues, issues=issues, fixed_issues=fixed)
