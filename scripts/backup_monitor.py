from __future__ import annotations

import argparse
import asyncio
import json

from dumpvault.core.logging import configure_logging
from dumpvault.services.audit import BackupAuditLogger
from dumpvault.services.monitoring import BackupMonitor
from dumpvault.services.storage import BackupStorage
from dumpvault.services.validator import BackupValidator


def _build_monitor() -> BackupMonitor:
    return BackupMonitor(BackupStorage(), BackupValidator(), BackupAuditLogger())


async def _health_check() -> None:
    monitor = _build_monitor()
    result = await monitor.perform_health_check()
    print(json.dumps(result.to_dict(), indent=2))


async def _run_forever() -> None:
    # Keep the scheduler alive in a dedicated process so jobs run without request traffic.
    monitor = _build_monitor()
    await monitor.start_monitoring()
    try:
        await asyncio.Event().wait()
    finally:
        await monitor.stop_monitoring()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run backup monitoring jobs")
    parser.add_argument("--once", action="store_true", help="Run a single health check and exit")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_health_check() if args.once else _run_forever())


if __name__ == "__main__":
    main()
