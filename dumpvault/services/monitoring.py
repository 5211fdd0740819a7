from __future__ import annotations

import asyncio
from datetime import timedelta
import logging
import os
from pathlib import Path
import secrets
import time
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import psutil
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from dumpvault.core.config import Settings, get_settings
from dumpvault.domain.models import (
    Alert,
    AlertType,
    BackupMetrics,
    HealthCheckResult,
    HealthChecks,
    HealthStatus,
    utc_now,
)
from dumpvault.services.audit import BackupAuditLogger
from dumpvault.services.storage import BackupStorage
from dumpvault.services.validator import BackupValidator


logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "backup_cleanup"
HEALTH_CHECK_JOB_ID = "backup_health_check"
INTEGRITY_SAMPLE_SIZE = 5
_GIB = 1024**3

DatabaseProbe = Callable[[], Awaitable[bool]]

_ALERT_LEVELS = {"error": logging.ERROR, "warning": logging.WARNING, "info": logging.INFO}


class CleanupConfig(BaseModel):
    enabled: bool = True
    schedule: str = "0 2 * * *"
    retention_days: int = 30
    max_backups: int = 50


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    schedule: str = "*/30 * * * *"
    disk_space_threshold: int = Field(default=90, ge=1, le=100)
    alert_on_failure: bool = True


class AlertConfig(BaseModel):
    max_alerts: int = Field(default=100, ge=1)
    retention_days: int = 7


class MetricsConfig(BaseModel):
    collect_interval: int = 5
    retention_days: int = 30


class MonitoringConfig(BaseModel):
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    timezone: str = "America/Sao_Paulo"
    disk_capacity_gb: float = 100.0
    db_probe_timeout_s: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> MonitoringConfig:
        settings = settings or get_settings()
        return cls(
            cleanup=CleanupConfig(
                enabled=settings.backup_cleanup_enabled,
                schedule=settings.backup_cleanup_schedule,
                retention_days=settings.backup_retention_days,
                max_backups=settings.backup_max_backups,
            ),
            health_check=HealthCheckConfig(
                enabled=settings.backup_health_check_enabled,
                schedule=settings.backup_health_check_schedule,
                disk_space_threshold=settings.backup_disk_space_threshold,
                alert_on_failure=settings.backup_health_alert_on_failure,
            ),
            alerts=AlertConfig(
                max_alerts=settings.backup_max_alerts,
                retention_days=settings.backup_alert_retention_days,
            ),
            metrics=MetricsConfig(
                collect_interval=settings.backup_metrics_interval,
                retention_days=settings.backup_metrics_retention_days,
            ),
            timezone=settings.monitoring_timezone,
            disk_capacity_gb=settings.monitoring_disk_capacity_gb,
            db_probe_timeout_s=settings.monitoring_db_probe_timeout_s,
        )


async def probe_database(database_url: str | None = None, timeout_s: float = 5.0) -> bool:
    # Reachability only: open a connection and run SELECT 1 within the timeout.
    engine = create_async_engine(database_url or get_settings().database_url, pool_pre_ping=True)

    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout=timeout_s)
        return True
    except Exception as exc:  # noqa: BLE001 - any failure means unreachable
        logger.warning("backup_db_probe_failed error=%s", exc)
        return False
    finally:
        await engine.dispose()


def _alert_id() -> str:
    return f"alert_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class BackupMonitor:
    """Scheduled cleanup and health checks with a bounded in-memory alert list.

    Callers construct and hold the monitor; it owns its scheduler and jobs.
    """

    def __init__(
        self,
        storage: BackupStorage,
        validator: BackupValidator,
        audit: BackupAuditLogger,
        config: MonitoringConfig | None = None,
        *,
        scheduler: AsyncIOScheduler | None = None,
        database_probe: DatabaseProbe | None = None,
    ) -> None:
        self.storage = storage
        self.validator = validator
        self.audit = audit
        self.config = config or MonitoringConfig.from_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.config.timezone)
        self._database_probe = database_probe or (
            lambda: probe_database(timeout_s=self.config.db_probe_timeout_s)
        )
        self._alerts: list[Alert] = []

    async def start_monitoring(self) -> None:
        # Register each enabled job once; calling again leaves existing jobs in place.
        try:
            if self.config.cleanup.enabled and self.scheduler.get_job(CLEANUP_JOB_ID) is None:
                self.scheduler.add_job(
                    self.perform_automatic_cleanup,
                    CronTrigger.from_crontab(self.config.cleanup.schedule, timezone=self.config.timezone),
                    id=CLEANUP_JOB_ID,
                    name="Backup cleanup",
                    max_instances=1,
                    coalesce=True,
                )
            if self.config.health_check.enabled and self.scheduler.get_job(HEALTH_CHECK_JOB_ID) is None:
                self.scheduler.add_job(
                    self.perform_health_check,
                    CronTrigger.from_crontab(self.config.health_check.schedule, timezone=self.config.timezone),
                    id=HEALTH_CHECK_JOB_ID,
                    name="Backup health check",
                    max_instances=1,
                    coalesce=True,
                )
            if not self.scheduler.running:
                self.scheduler.start()
        except Exception as exc:
            await self.create_alert("error", "Failed to start backup monitoring", {"error": str(exc)})
            raise
        await self.audit.log_system(
            "monitoring_started",
            {"jobs": [job.id for job in self.scheduler.get_jobs()]},
        )
        logger.info("backup_monitoring_started timezone=%s", self.config.timezone)

    async def stop_monitoring(self) -> None:
        try:
            for job_id in (CLEANUP_JOB_ID, HEALTH_CHECK_JOB_ID):
                if self.scheduler.get_job(job_id) is not None:
                    self.scheduler.remove_job(job_id)
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            await self.audit.log_system("monitoring_stopped", {"message": "Backup monitoring stopped"})
            logger.info("backup_monitoring_stopped")
        except Exception as exc:  # noqa: BLE001 - shutdown failures are reported, not raised
            logger.error("backup_monitoring_stop_failed", exc_info=exc)

    async def perform_automatic_cleanup(self) -> None:
        # Age then count based cleanup using the registry's current retention settings.
        try:
            registry_settings = await self.storage.get_settings()
            retention_days = registry_settings.retention_days or self.config.cleanup.retention_days
            max_backups = registry_settings.max_backups or self.config.cleanup.max_backups
            await self.audit.log_system(
                "cleanup_started",
                {"retentionDays": retention_days, "maxBackups": max_backups},
            )
            by_age = await self.storage.cleanup_old_backups(retention_days)
            by_count = await self.storage.cleanup_excess_backups(max_backups)
            total_removed = by_age.removed + by_count.removed
            details = {
                "deletedByAge": by_age.removed,
                "deletedByCount": by_count.removed,
                "freedBytes": by_age.freed_space + by_count.freed_space,
                "errors": by_age.errors + by_count.errors,
                "retentionDays": retention_days,
                "maxBackups": max_backups,
            }
            if total_removed > 0:
                await self.create_alert(
                    "info",
                    f"Automatic cleanup complete: {total_removed} backups removed",
                    details,
                )
            await self.audit.log_system("cleanup_completed", {"totalDeleted": total_removed, **details})
        except Exception as exc:  # noqa: BLE001 - scheduled jobs report failures as alerts
            logger.error("backup_cleanup_job_failed", exc_info=exc)
            await self.create_alert("error", "Automatic backup cleanup failed", {"error": str(exc)})
            await self.audit.log_system("cleanup_failed", {"error": str(exc)}, success=False, error=str(exc))

    async def _backup_directory(self) -> Path:
        registry_settings = await self.storage.get_settings()
        return Path(registry_settings.default_directory or self.storage.files_dir)

    async def _capacity_gb(self, directory: Path) -> float:
        # Storage ceiling for backups: the configured capacity, bounded by the real disk size.
        try:
            total_gb = (await asyncio.to_thread(psutil.disk_usage, str(directory))).total / _GIB
        except OSError:
            return self.config.disk_capacity_gb
        return min(total_gb, self.config.disk_capacity_gb)

    async def _check_disk_space(self) -> bool:
        try:
            directory = await self._backup_directory()
            if not await asyncio.to_thread(directory.exists):
                return False
            metrics = await self.collect_metrics()
            if metrics.available_disk_space_gb <= 0:
                return False
            usage_pct = metrics.disk_space_usage_gb / metrics.available_disk_space_gb * 100
            return usage_pct < self.config.health_check.disk_space_threshold
        except Exception as exc:  # noqa: BLE001 - a failing probe reports unhealthy
            logger.warning("backup_disk_probe_failed", exc_info=exc)
            return False

    async def _check_backup_integrity(self) -> bool:
        try:
            recent = await self.storage.list_backups(limit=INTEGRITY_SAMPLE_SIZE)
            for record in recent:
                result = await self.validator.validate_backup(record.filepath, record.checksum or None)
                if not result.is_valid:
                    return False
            return True
        except Exception as exc:  # noqa: BLE001 - a failing probe reports unhealthy
            logger.warning("backup_integrity_probe_failed", exc_info=exc)
            return False

    async def _check_database_connection(self) -> bool:
        try:
            return bool(await self._database_probe())
        except Exception as exc:  # noqa: BLE001 - a failing probe reports unhealthy
            logger.warning("backup_db_probe_failed", exc_info=exc)
            return False

    async def _check_permissions(self) -> bool:
        try:
            directory = await self._backup_directory()
            return await asyncio.to_thread(os.access, directory, os.R_OK | os.W_OK)
        except Exception as exc:  # noqa: BLE001 - a failing probe reports unhealthy
            logger.warning("backup_permission_probe_failed", exc_info=exc)
            return False

    async def perform_health_check(self) -> HealthCheckResult:
        checks = HealthChecks()
        issues: list[str] = []
        status: HealthStatus = "healthy"
        try:
            checks.disk_space = await self._check_disk_space()
            checks.backup_integrity = await self._check_backup_integrity()
            checks.database_connection = await self._check_database_connection()
            checks.permissions = await self._check_permissions()

            if not checks.disk_space:
                issues.append("Insufficient disk space")
            if not checks.backup_integrity:
                issues.append("Corrupted backups detected")
            if not checks.database_connection:
                issues.append("Database connection failed")
            if not checks.permissions:
                issues.append("Permission problems detected")

            if not checks.backup_integrity or not checks.database_connection:
                status = "critical"
            elif issues:
                status = "warning"

            result = HealthCheckResult(status=status, checks=checks, issues=issues, last_check=utc_now())
            if status != "healthy" and self.config.health_check.alert_on_failure:
                await self.create_alert(
                    "error" if status == "critical" else "warning",
                    f"Health check failed: {', '.join(issues)}",
                    {"healthCheck": result.to_dict()},
                )
            await self.audit.log_system("health_check", {"status": status, "issues": issues})
        except Exception as exc:  # noqa: BLE001 - health checks always return a result
            logger.error("backup_health_check_failed", exc_info=exc)
            issues.append(f"Health check error: {exc}")
            result = HealthCheckResult(status="critical", checks=checks, issues=issues, last_check=utc_now())
            await self.create_alert("error", "Backup health check failed", {"error": str(exc)})

        logger.info("backup_health_check status=%s issues=%s", result.status, len(result.issues))
        return result

    async def collect_metrics(self) -> BackupMetrics:
        try:
            backups = await self.storage.list_backups()
            directory = await self._backup_directory()
            total_bytes = sum(record.size for record in backups)
            total_gb = total_bytes / _GIB
            successful = [record for record in backups if record.status == "success"]
            success_rate = len(successful) / len(backups) * 100 if backups else 0.0
            average_minutes = (
                sum(record.duration for record in successful) / len(successful) / 60000 if successful else 0.0
            )
            created = sorted(record.created_at for record in backups)
            directory_exists = await asyncio.to_thread(directory.exists)
            return BackupMetrics(
                total_backups=len(backups),
                total_size_gb=round(total_gb, 2),
                success_rate=round(success_rate, 2),
                average_duration_minutes=round(average_minutes, 2),
                last_backup_date=created[-1] if created else None,
                oldest_backup_date=created[0] if created else None,
                corrupted_backups=sum(1 for record in backups if record.status == "failed"),
                disk_space_usage_gb=round(total_gb, 2) if directory_exists else 0.0,
                available_disk_space_gb=round(await self._capacity_gb(directory), 2),
            )
        except Exception as exc:
            await self.create_alert("error", "Failed to collect backup metrics", {"error": str(exc)})
            raise

    async def create_alert(
        self,
        alert_type: AlertType,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(id=_alert_id(), type=alert_type, message=message, timestamp=utc_now(), details=details)
        self._alerts.append(alert)
        cutoff = utc_now() - timedelta(days=self.config.alerts.retention_days)
        self._alerts = [item for item in self._alerts if not (item.resolved and item.timestamp < cutoff)]
        # Oldest alerts drop first once the list exceeds its cap.
        max_alerts = self.config.alerts.max_alerts
        if len(self._alerts) > max_alerts:
            self._alerts = self._alerts[-max_alerts:]
        await self.audit.log_system(
            "alert_created",
            {"alertId": alert.id, "type": alert.type, "message": alert.message},
        )
        logger.log(
            _ALERT_LEVELS.get(alert_type, logging.INFO),
            "backup_alert type=%s id=%s message=%s",
            alert_type,
            alert.id,
            message,
        )
        return alert

    def get_alerts(self, include_resolved: bool = False) -> list[Alert]:
        if include_resolved:
            return list(self._alerts)
        return [alert for alert in self._alerts if not alert.resolved]

    async def resolve_alert(self, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.resolved = True
                await self.audit.log_system("alert_resolved", {"alertId": alert_id})
                return True
        return False
