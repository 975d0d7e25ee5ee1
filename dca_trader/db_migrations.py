from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    """Registry snapshots (one row per key) and the applied-fill ledger."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS snapshots (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            saved_at_ms INTEGER NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS fills (
            order_id TEXT PRIMARY KEY,
            side TEXT NOT NULL,
            price TEXT NOT NULL,
            size TEXT NOT NULL,
            profit TEXT,
            buy_order_id TEXT,
            ts_ms INTEGER NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS fills")
    cur.execute("DROP TABLE IF EXISTS snapshots")


def _migration_2(conn):
    """Add indices for ledger queries by time and side."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_fills_ts ON fills(ts_ms)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_fills_side ON fills(side)")


def _migration_2_down(conn):
    """Drop ledger indices."""
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_fills_ts")
    cur.execute("DROP INDEX IF EXISTS idx_fills_side")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

# Optional down migrations, used by scripts/migrate.py rollback
MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
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

    # get applied versions
    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    applied = {row[0] for row in cur.fetchall()}

    to_apply = sorted(v for v in MIGRATIONS.keys() if v not in applied)
    applied_now = []
    for v in to_apply:
        # run migration inside transaction
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            cur.execute("INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)", (v, datetime.now(timezone.utc).isoformat()))
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    cur = conn.cursor()
    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        cur.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns its version or None."""
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1")
    row = cur.fetchone()
    if not row:
        return None
    v = row[0]
    rollback_migration(conn, v)
    return v
