from __future__ import annotations

import argparse
import asyncio
import sys

from dumpvault.core.logging import configure_logging
from dumpvault.services.backup import BackupService
from dumpvault.services.storage import BackupStorage
from dumpvault.services.validator import BackupValidator


async def _validate_file(path: str, checksum: str | None, verbose: bool) -> int:
    validator = BackupValidator()
    result = await validator.validate_backup(path, checksum)
    print(f"valid={str(result.is_valid).lower()}")
    print(f"size_bytes={result.size}")
    print(f"checksum={result.checksum}")
    print(f"validation_ms={result.validation_time}")
    for error in result.errors:
        print(f"error={error}")
    if verbose:
        for warning in result.warnings:
            print(f"warning={warning}")
    return 0 if result.is_valid else 1


async def _integrity_check() -> int:
    # Validate every registered backup against its recorded checksum.
    service = BackupService(BackupStorage(), BackupValidator())
    result = await service.run_integrity_check()
    print(result.message)
    if result.report:
        print(result.report)
    return 0 if result.success else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate backup file integrity")
    parser.add_argument("path", nargs="?", default=None)
    parser.add_argument("--checksum", default=None, help="Expected MD5 checksum")
    parser.add_argument("--all", action="store_true", help="Check every registered backup")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging()
    if args.all:
        sys.exit(asyncio.run(_integrity_check()))
    if not args.path:
        parser.error("path is required unless --all is given")
    sys.exit(asyncio.run(_validate_file(args.path, args.checksum, args.verbose)))


if __name__ == "__main__":
    main()
