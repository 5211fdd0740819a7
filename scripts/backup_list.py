from __future__ import annotations

import argparse
import asyncio
import json

from dumpvault.core.logging import configure_logging
from dumpvault.services.storage import BackupStorage


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


async def _list(output_format: str, limit: int, status: str | None) -> None:
    storage = BackupStorage()
    backups = await storage.list_backups(status=status, limit=limit)
    if output_format == "json":
        print(json.dumps([record.to_dict() for record in backups], indent=2))
        return
    if not backups:
        print("no_backups_found")
        return
    print(f"{'ID':<36}  {'FILENAME':<40}  {'SIZE':>12}  {'STATUS':<11}  CREATED")
    for record in backups:
        print(
            f"{record.id:<36}  {record.filename:<40}  {_format_size(record.size):>12}  "
            f"{record.status:<11}  {record.created_at.isoformat()}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="List registered backups, newest first")
    parser.add_argument("--format", default="table", choices=["table", "json"])
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--status", default=None, choices=["success", "failed", "in_progress"])
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_list(args.format, args.limit, args.status))


if __name__ == "__main__":
    main()
