from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

from dumpvault.core.config import get_settings
from dumpvault.domain.models import BackupRecord, BackupStatus, utc_now


VALID_DUMP = """--
-- PostgreSQL database dump
--

SET statement_timeout = 0;
SET client_encoding = 'UTF8';

CREATE TABLE public.users (
    id integer NOT NULL,
    email text NOT NULL
);

COPY public.users (id, email) FROM stdin;
1\tops@example.com
2\tdev@example.com
\\.

--
-- PostgreSQL database dump complete
--
"""


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch) -> Path:
    # Point every file the services touch at a per-test directory.
    root = tmp_path / "backups"
    monkeypatch.setenv("BACKUP_DIRECTORY", str(root))
    monkeypatch.setenv("BACKUP_FILES_DIR", str(root / "files"))
    monkeypatch.setenv("BACKUP_FALLBACK_DIR", str(tmp_path / "temp-backups"))
    monkeypatch.setenv("ERROR_LOG_FILE", str(root / "error-logs.json"))
    monkeypatch.setenv("AUDIT_LOG_FILE", str(root / "audit.log"))
    monkeypatch.setenv("BACKUP_MIN_FREE_GB", "0")
    monkeypatch.setenv("MONITORING_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield root
    get_settings.cache_clear()


@pytest.fixture
def write_dump(tmp_path: Path) -> Callable[..., Path]:
    def _write(name: str = "backup_test.sql", content: str = VALID_DUMP, directory: Path | None = None) -> Path:
        target_dir = directory or tmp_path / "dumps"
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_record(tmp_path: Path) -> Callable[..., BackupRecord]:
    def _make(
        backup_id: str,
        *,
        days_ago: float = 0,
        status: BackupStatus = "success",
        size: int = 1024,
        with_file: bool = True,
        created_by: str | None = None,
        duration: int = 60000,
    ) -> BackupRecord:
        path = tmp_path / "records" / f"{backup_id}.sql"
        if with_file:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"x" * min(size, 4096))
        return BackupRecord(
            id=backup_id,
            filename=path.name,
            filepath=str(path),
            size=size,
            checksum="d41d8cd98f00b204e9800998ecf8427e",
            created_at=utc_now() - timedelta(days=days_ago),
            created_by=created_by,
            status=status,
            duration=duration,
            database_version="PostgreSQL 15.0",
            schema_version="1.0.0",
        )

    return _make
