from __future__ import annotations

from datetime import timedelta
import json
from pathlib import Path

import pytest

from dumpvault.domain.models import utc_now
from dumpvault.services.audit import (
    AuditActor,
    AuditFilter,
    BackupAuditLogger,
    create_audit_entry,
    sanitize_metadata,
)


OPERATOR = AuditActor(id="u-1", email="ops@example.com", role="admin")


def _line(entry_id: str, days_ago: int, operation: str = "backup_created") -> str:
    return json.dumps(
        {
            "id": entry_id,
            "timestamp": (utc_now() - timedelta(days=days_ago)).isoformat(),
            "userId": "system",
            "userEmail": "system",
            "userRole": "system",
            "operation": operation,
            "success": True,
        }
    )


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    # Secret-looking keys are scrubbed at every depth.
    sanitized = sanitize_metadata(
        {
            "database": "app",
            "Password": "hunter2",
            "nested": {"api_key": "k", "rows": 3},
            "items": [{"access_token": "t"}],
        }
    )
    assert sanitized == {
        "database": "app",
        "Password": "[REDACTED]",
        "nested": {"api_key": "[REDACTED]", "rows": 3},
        "items": [{"access_token": "[REDACTED]"}],
    }


@pytest.mark.asyncio
async def test_log_operation_appends_stamped_sanitized_entry(tmp_path: Path) -> None:
    audit = BackupAuditLogger(tmp_path / "audit.log")
    entry = create_audit_entry(
        "backup_created",
        OPERATOR,
        True,
        resource="backup_2024-01-01_00-00-00.sql",
        metadata={"size": 10, "secret": "s3cr3t"},
    )

    await audit.log_operation(entry)

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["id"].startswith("audit_")
    assert payload["userEmail"] == "ops@example.com"
    assert payload["metadata"] == {"size": 10, "secret": "[REDACTED]"}
    assert "s3cr3t" not in lines[0]


@pytest.mark.asyncio
async def test_log_operation_failure_is_swallowed(tmp_path: Path) -> None:
    target = tmp_path / "audit-dir"
    target.mkdir()
    audit = BackupAuditLogger(target)
    await audit.log_system("cleanup_completed", {"removed": 1})
    assert target.is_dir()


@pytest.mark.asyncio
async def test_get_audit_entries_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "audit.log"
    path.write_text(
        "\n".join([_line("a", 2), "{not json", _line("b", 1, "backup_deleted"), _line("c", 0)]) + "\n",
        encoding="utf-8",
    )
    audit = BackupAuditLogger(path)

    entries = await audit.get_audit_entries()
    assert [entry.id for entry in entries] == ["c", "b", "a"]

    deleted = await audit.get_audit_entries(AuditFilter(operation="backup_deleted"))
    assert [entry.id for entry in deleted] == ["b"]

    limited = await audit.get_audit_entries(AuditFilter(limit=1))
    assert [entry.id for entry in limited] == ["c"]


@pytest.mark.asyncio
async def test_audit_stats_group_by_operation(tmp_path: Path) -> None:
    audit = BackupAuditLogger(tmp_path / "audit.log")
    await audit.log_system("backup_created")
    await audit.log_system("backup_created", success=False, error="pg_dump failed")
    await audit.log_system("backup_deleted")

    stats = await audit.get_audit_stats()
    assert stats.total_operations == 3
    assert stats.successful_operations == 2
    assert stats.failed_operations == 1
    assert stats.operations_by_type == {"backup_created": 2, "backup_deleted": 1}


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_lines_verbatim(tmp_path: Path) -> None:
    path = tmp_path / "audit.log"
    recent = _line("recent", 10)
    malformed = "{not json"
    old = _line("old", 100)
    path.write_text("\n".join([old, recent, malformed]) + "\n", encoding="utf-8")
    audit = BackupAuditLogger(path)

    removed = await audit.cleanup_old_entries(90)

    assert removed == 1
    assert path.read_text(encoding="utf-8") == f"{recent}\n{malformed}\n"
    assert await audit.cleanup_old_entries(90) == 0


@pytest.mark.asyncio
async def test_rotation_prunes_old_generations(tmp_path: Path) -> None:
    path = tmp_path / "audit.log"
    audit = BackupAuditLogger(path, max_log_size=50, max_log_files=1)

    for _ in range(3):
        await audit.log_system("health_check", {"status": "healthy"})

    rotated = sorted(tmp_path.glob("audit.log.*"))
    assert len(rotated) == 1
    assert len(path.read_text(encoding="utf-8").splitlines()) == 1
