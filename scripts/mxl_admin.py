#!/usr/bin/env python3
"""
MxL Admin Tool
==============
One-shot operations against the configured pipeline backends.

Usage:
    python scripts/mxl_admin.py migrate [--print-sql]
    python scripts/mxl_admin.py create-key --name "android-prod"
    python scripts/mxl_admin.py deactivate-key --key mxl_...
    python scripts/mxl_admin.py retention
    python scripts/mxl_admin.py drain
    python scripts/mxl_admin.py stats
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from mxl.config import Settings  # noqa: E402
from mxl.context import build_context  # noqa: E402
from mxl.storage.migration import get_migration_sql, run_migration  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def cmd_migrate(settings: Settings, args) -> int:
    if args.print_sql:
        print(get_migration_sql())
        return 0
    if not settings.use_postgres:
        logger.error("DATABASE_URL not set, nothing to migrate")
        return 1
    run_migration(settings.database_url)
    return 0


def cmd_create_key(settings: Settings, args) -> int:
    context = build_context(settings)
    record = context.relational.create_api_key(args.name)
    print(json.dumps({"id": record.id, "name": record.name, "key": record.key}))
    return 0


def cmd_deactivate_key(settings: Settings, args) -> int:
    context = build_context(settings)
    record = context.relational.find_api_key(args.key)
    if record is None:
        logger.error(f"No API key matching {args.key[:8]}...")
        return 1
    context.relational.set_api_key_active(record.id, False)
    logger.info(f"Deactivated API key {record.key_prefix} ({record.name})")
    return 0


def cmd_retention(settings: Settings, args) -> int:
    context = build_context(settings)
    report = context.retention.run()
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


def cmd_drain(settings: Settings, args) -> int:
    context = build_context(settings)
    result = context.consumers.drain()
    logger.info(
        f"Drain finished: processed={result.processed} dead_lettered={result.dead_lettered} "
        f"failing_partitions={len(result.failed_partitions)}"
    )
    return 0 if not result.failed_partitions else 1


def cmd_stats(settings: Settings, args) -> int:
    context = build_context(settings)
    print(json.dumps(context.retention.stats(), indent=2))
    return 0


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description='MxL pipeline admin')
    sub = parser.add_subparsers(dest='command', required=True)
    migrate = sub.add_parser('migrate', help='Create pipeline tables')
    migrate.add_argument('--print-sql', action='store_true', help='Print the DDL instead of applying it')
    create = sub.add_parser('create-key', help='Create an API key')
    create.add_argument('--name', required=True)
    deactivate = sub.add_parser('deactivate-key', help='Deactivate an API key')
    deactivate.add_argument('--key', required=True)
    sub.add_parser('retention', help='Run retention policies once')
    sub.add_parser('drain', help='Process everything currently on the log')
    sub.add_parser('stats', help='Show retention statistics')
    args = parser.parse_args()

    commands = {
        'migrate': cmd_migrate,
        'create-key': cmd_create_key,
        'deactivate-key': cmd_deactivate_key,
        'retention': cmd_retention,
        'drain': cmd_drain,
        'stats': cmd_stats,
    }
    return commands[args.command](Settings.from_env(), args)


if __name__ == "__main__":
    sys.exit(main())
