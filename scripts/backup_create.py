from __future__ import annotations

import argparse
import asyncio
import sys

from dumpvault.core.logging import configure_logging
from dumpvault.domain.models import BackupOptions
from dumpvault.services.backup import BackupService
from dumpvault.services.storage import BackupStorage
from dumpvault.services.validator import BackupValidator


def _print_progress(backup_id: str, percent: float, message: str, status: str) -> None:
    print(f"progress backup_id={backup_id} percent={percent:.0f} status={status} message={message}")


async def _run_backup(options: BackupOptions, verbose: bool) -> int:
    # Create one dump from the CLI; exit status mirrors the structured result.
    service = BackupService(
        BackupStorage(),
        BackupValidator(),
        progress=_print_progress if verbose else None,
    )
    result = await service.create_backup(options)
    if not result.success:
        print(f"backup_failed error={result.error}", file=sys.stderr)
        return 1
    print(f"backup_id={result.id}")
    print(f"filepath={result.filepath}")
    print(f"size_bytes={result.size}")
    print(f"checksum={result.checksum}")
    print(f"duration_ms={result.duration}")
    return 0


def main() -> None:
    # Parse CLI flags for on-demand database dumps.
    parser = argparse.ArgumentParser(description="Create a PostgreSQL backup")
    parser.add_argument("--output", default=None, help="Target directory (absolute or ./relative)")
    parser.add_argument("--name", default=None, help="File name, e.g. nightly_01.sql")
    parser.add_argument("--compress", action="store_true")
    content = parser.add_mutually_exclusive_group()
    content.add_argument("--schema-only", action="store_true")
    content.add_argument("--data-only", action="store_true")
    parser.add_argument("--created-by", default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging("DEBUG" if args.verbose else None)
    options = BackupOptions(
        filename=args.name,
        directory=args.output,
        compress=args.compress,
        include_data=not args.schema_only,
        include_schema=not args.data_only,
        created_by=args.created_by,
    )
    sys.exit(asyncio.run(_run_backup(options, args.verbose)))


if __name__ == "__main__":
    main()
