from __future__ import annotations

import argparse
import asyncio

from dumpvault.core.logging import configure_logging
from dumpvault.services.error_log import ErrorLogStore


async def _report(days: int, prune_days: int | None) -> None:
    store = ErrorLogStore()
    if prune_days is not None:
        removed = await store.cleanup_old_logs(prune_days)
        print(f"pruned_error_logs={removed}")
    print(await store.generate_error_report(days))


def main() -> None:
    parser = argparse.ArgumentParser(description="Summarize recent backup errors")
    parser.add_argument("--days", type=int, default=7)
    parser.add_argument("--prune-days", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_report(args.days, args.prune_days))


if __name__ == "__main__":
    main()
