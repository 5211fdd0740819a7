from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import math
from typing import Any, Literal

from dumpvault.core.errors import BackupErrorType, ErrorSeverity, serializable_context


BackupStatus = Literal["success", "failed", "in_progress"]
AlertType = Literal["error", "warning", "info"]
HealthStatus = Literal["healthy", "warning", "critical"]


def utc_now() -> datetime:
    # All persisted timestamps are timezone-aware UTC.
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    # Accept ISO strings with a trailing Z as written by older registry files.
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BackupRecord:
    id: str
    filename: str
    filepath: str
    size: int
    checksum: str
    created_at: datetime
    status: BackupStatus
    duration: int
    database_version: str
    schema_version: str
    created_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "filepath": self.filepath,
            "size": self.size,
            "checksum": self.checksum,
            "createdAt": self.created_at.isoformat(),
            "createdBy": self.created_by,
            "status": self.status,
            "duration": self.duration,
            "databaseVersion": self.database_version,
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BackupRecord:
        return cls(
            id=str(payload["id"]),
            filename=payload["filename"],
            filepath=payload["filepath"],
            size=int(payload.get("size", 0)),
            checksum=payload.get("checksum", ""),
            created_at=parse_timestamp(payload["createdAt"]),
            created_by=payload.get("createdBy"),
            status=payload.get("status", "success"),
            duration=int(payload.get("duration", 0)),
            database_version=payload.get("databaseVersion", "unknown"),
            schema_version=payload.get("schemaVersion", "unknown"),
        )


@dataclass
class RegistrySettings:
    max_backups: int
    retention_days: int
    default_directory: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxBackups": self.max_backups,
            "retentionDays": self.retention_days,
            "defaultDirectory": self.default_directory,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RegistrySettings:
        return cls(
            max_backups=int(payload["maxBackups"]),
            retention_days=int(payload["retentionDays"]),
            default_directory=payload["defaultDirectory"],
        )


@dataclass
class Registry:
    backups: list[BackupRecord]
    last_cleanup: datetime
    settings: RegistrySettings

    def to_dict(self) -> dict[str, Any]:
        return {
            "backups": [record.to_dict() for record in self.backups],
            "lastCleanup": self.last_cleanup.isoformat(),
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Registry:
        return cls(
            backups=[BackupRecord.from_dict(item) for item in payload.get("backups", [])],
            last_cleanup=parse_timestamp(payload["lastCleanup"]),
            settings=RegistrySettings.from_dict(payload["settings"]),
        )


@dataclass
class ValidationResult:
    is_valid: bool
    checksum: str
    size: int
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    validation_time: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChecksumValidation:
    matches: bool
    expected: str
    actual: str


@dataclass(frozen=True)
class SqlStructureValidation:
    has_create_statements: bool
    has_insert_statements: bool
    has_copy_statements: bool
    has_valid_header: bool
    has_valid_footer: bool
    table_count: int
    estimated_records: int


@dataclass
class ErrorLogEntry:
    id: str
    timestamp: datetime
    error_type: BackupErrorType
    severity: ErrorSeverity
    message: str
    context: dict[str, Any]
    attempt_number: int
    resolved: bool = False
    resolution_strategy: str | None = None
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "errorType": self.error_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "context": serializable_context(self.context),
            "attemptNumber": self.attempt_number,
            "resolved": self.resolved,
        }
        if self.resolution_strategy is not None:
            payload["resolutionStrategy"] = self.resolution_strategy
        if self.stack is not None:
            payload["stack"] = self.stack
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ErrorLogEntry:
        return cls(
            id=payload["id"],
            timestamp=parse_timestamp(payload["timestamp"]),
            error_type=BackupErrorType(payload.get("errorType", BackupErrorType.UNKNOWN.value)),
            severity=ErrorSeverity(payload.get("severity", ErrorSeverity.MEDIUM.value)),
            message=payload.get("message", ""),
            context=payload.get("context") or {},
            attempt_number=int(payload.get("attemptNumber", 1)),
            resolved=bool(payload.get("resolved", False)),
            resolution_strategy=payload.get("resolutionStrategy"),
            stack=payload.get("stack"),
        )


@dataclass
class AuditEntry:
    id: str
    timestamp: datetime
    user_id: str
    user_email: str
    user_role: str
    operation: str
    success: bool
    resource: str | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userRole": self.user_role,
            "operation": self.operation,
            "success": self.success,
        }
        optional = {
            "resource": self.resource,
            "error": self.error,
            "metadata": self.metadata,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AuditEntry:
        return cls(
            id=payload["id"],
            timestamp=parse_timestamp(payload["timestamp"]),
            user_id=payload["userId"],
            user_email=payload.get("userEmail", ""),
            user_role=payload.get("userRole", ""),
            operation=payload["operation"],
            success=bool(payload["success"]),
            resource=payload.get("resource"),
            error=payload.get("error"),
            metadata=payload.get("metadata"),
            ip_address=payload.get("ipAddress"),
            user_agent=payload.get("userAgent"),
        )


@dataclass
class Alert:
    id: str
    type: AlertType
    message: str
    timestamp: datetime
    resolved: bool = False
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class CleanupResult:
    removed: int = 0
    freed_space: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FullCleanupResult:
    total_removed: int
    total_freed_space: int
    old_backups: CleanupResult
    excess_backups: CleanupResult
    failed_backups: CleanupResult


@dataclass(frozen=True)
class CleanupSimulation:
    would_remove: int
    would_free_space: int
    backups_to_remove: list[BackupRecord]


@dataclass(frozen=True)
class RegistryValidation:
    is_valid: bool
    issues: list[str]
    fixed_issues: list[str]


@dataclass(frozen=True)
class BackupStats:
    total: int
    successful: int
    failed: int
    in_progress: int
    total_size: int
    oldest_backup: datetime | None
    newest_backup: datetime | None


@dataclass
class HealthChecks:
    disk_space: bool = False
    backup_integrity: bool = False
    database_connection: bool = False
    permissions: bool = False


@dataclass
class HealthCheckResult:
    status: HealthStatus
    checks: HealthChecks
    issues: list[str]
    last_check: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checks": asdict(self.checks),
            "issues": list(self.issues),
            "lastCheck": self.last_check.isoformat(),
        }


@dataclass(frozen=True)
class BackupMetrics:
    total_backups: int
    total_size_gb: float
    success_rate: float
    average_duration_minutes: float
    last_backup_date: datetime | None
    oldest_backup_date: datetime | None
    corrupted_backups: int
    disk_space_usage_gb: float
    available_disk_space_gb: float


@dataclass(frozen=True)
class BackupOptions:
    filename: str | None = None
    directory: str | None = None
    compress: bool = False
    include_data: bool = True
    include_schema: bool = True
    created_by: str | None = None


@dataclass(frozen=True)
class BackupResult:
    success: bool
    id: str
    filename: str
    filepath: str
    size: int
    checksum: str
    duration: int
    error: str | None = None


@dataclass(frozen=True)
class ValidationSummary:
    total: int
    valid: int
    invalid: int
    success_rate: float


@dataclass(frozen=True)
class IntegrityCheckResult:
    success: bool
    message: str
    results: dict[str, ValidationResult]
    summary: ValidationSummary
    report: str | None = None


def success_rate(valid: int, total: int) -> float:
    # Mirrors float division semantics: an empty set yields NaN instead of raising.
    if total == 0:
        return math.nan
    return valid / total * 100


@dataclass(frozen=True)
class BatchValidationResult:
    results: dict[str, ValidationResult]
    report: str


@dataclass(frozen=True)
class CorruptedBackup:
    id: str
    filename: str
    created_at: datetime
    size: int


@dataclass(frozen=True)
class CorruptionReport:
    corrupted_count: int
    total_count: int
    corrupted_backups: list[CorruptedBackup]


@dataclass(frozen=True)
class DatabaseInfo:
    version: str
    schema_version: str
