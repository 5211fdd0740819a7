from __future__ import annotations

import argparse
import asyncio
import sys

from dumpvault.core.logging import configure_logging
from dumpvault.services.storage import BackupStorage


async def _info(backup_id: str) -> int:
    record = await BackupStorage().get_backup(backup_id)
    if record is None:
        print(f"backup_not_found id={backup_id}", file=sys.stderr)
        return 1
    for key, value in record.to_dict().items():
        print(f"{key}={value}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Show one registered backup")
    parser.add_argument("backup_id")
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_info(args.backup_id)))


if __name__ == "__main__":
    main()
