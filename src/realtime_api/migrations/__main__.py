"""``realtime-api-migrate status|apply|rollback``"""

from __future__ import annotations

import argparse
import sys
from typing import Optional

from realtime_api.config import load_settings
from realtime_api.db import Connection, connect, connect_from_settings

from .runner import MigrationError, MigrationRunner


def _connect(conninfo: Optional[str]) -> Connection:
    if conninfo:
        return connect(conninfo)
    return connect_from_settings(load_settings())


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="realtime-api-migrate", description="Manage the realtime API schema"
    )
    parser.add_argument("command", choices=("status", "apply", "rollback"))
    parser.add_argument(
        "--conninfo",
        default=None,
        help="libpq connection string (defaults to POSTGRES_* settings)",
    )
    args = parser.parse_args(argv)

    conn = _connect(args.conninfo)
    try:
        runner = MigrationRunner(conn)
        if args.command == "status":
            applied, pending = runner.status()
            for migration in applied:
                print(f"applied  {migration.label}")
            for migration in pending:
                print(f"pending  {migration.label}")
        elif args.command == "apply":
            executed = runner.apply()
            print(f"applied {len(executed)} migration(s)")
            for migration in executed:
                print(f"  {migration.label}")
        else:
            reverted = runner.rollback()
            print(f"reverted {len(reverted)} migration(s)")
            for migration in reverted:
                print(f"  {migration.label}")
    except MigrationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
