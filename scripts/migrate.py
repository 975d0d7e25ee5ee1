#!/usr/bin/env python
"""Migration CLI: list, apply and roll back schema migrations of the state DB.

Usage (examples):

python scripts/migrate.py --db state.db list
python scripts/migrate.py --db state.db apply --dry-run
python scripts/migrate.py --db state.db rollback --last --yes
python scripts/migrate.py --db state.db --password secret list
"""
import argparse
import sys
from pathlib import Path

# Ensure project root is on sys.path so `dca_trader` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dca_trader.db_encryption import get_connection
from dca_trader.db_migrations import MIGRATIONS, apply_migrations, rollback_last, rollback_migration


def applied_versions(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS.keys()):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() == "yes"
    except EOFError:
        # non-interactive stdin counts as a refusal
        return False


def main(argv=None):
    parser = argparse.ArgumentParser(description="State database migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    parser.add_argument("--password", help="sqlcipher password for an encrypted DB")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args(argv)
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(str(db), password=args.password)

    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0

        if args.cmd == "apply":
            if args.dry_run:
                applied = applied_versions(conn)
                pending = sorted(v for v in MIGRATIONS if v not in applied)
                print(f"Pending migrations: {pending}" if pending else "No pending migrations; database up-to-date.")
                return 0
            applied_now = apply_migrations(conn)
            print(f"Applied migrations: {applied_now}" if applied_now else "No migrations applied; database up-to-date.")
            return 0

        if args.cmd == "rollback":
            if args.version:
                target = args.version
            elif args.last:
                applied = applied_versions(conn)
                if not applied:
                    print("No applied migrations to rollback")
                    return 0
                target = max(applied)
            else:
                rb.print_help()
                return 2

            if args.dry_run:
                print(f"Would rollback migration {target} (dry-run)")
                return 0
            if not args.yes and not confirm(f"Rollback migration {target}? This may DROP data. Type 'yes' to continue: "):
                print("Aborted.")
                return 1
            if args.last:
                rollback_last(conn)
            else:
                rollback_migration(conn, target)
            print(f"Rolled back migration {target}")
            return 0

        parser.print_help()
        return 0
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
