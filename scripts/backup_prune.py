from __future__ import annotations

import argparse
import asyncio

from dumpvault.core.logging import configure_logging
from dumpvault.services.storage import BackupStorage


async def _prune(days: int | None, dry_run: bool, full: bool) -> None:
    # Apply retention from the CLI; dry runs only report what would go.
    storage = BackupStorage()
    if dry_run:
        simulation = await storage.simulate_cleanup_old_backups(days)
        print(f"would_remove={simulation.would_remove}")
        print(f"would_free_bytes={simulation.would_free_space}")
        for record in simulation.backups_to_remove:
            print(f"candidate id={record.id} filename={record.filename} created_at={record.created_at.isoformat()}")
        return
    if full:
        result = await storage.perform_full_cleanup()
        print(f"pruned_backups={result.total_removed}")
        print(f"freed_bytes={result.total_freed_space}")
        errors = result.old_backups.errors + result.excess_backups.errors + result.failed_backups.errors
    else:
        cleanup = await storage.cleanup_old_backups(days)
        print(f"pruned_backups={cleanup.removed}")
        print(f"freed_bytes={cleanup.freed_space}")
        errors = cleanup.errors
    for error in errors:
        print(f"error={error}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune backups beyond retention")
    parser.add_argument("--days", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--full", action="store_true", help="Also enforce max count and drop failed backups")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_prune(args.days, args.dry_run, args.full))


if __name__ == "__main__":
    main()
