import sqlite3
from pathlib import Path

from dca_trader.db_migrations import MIGRATIONS, apply_migrations, rollback_last, rollback_migration
from dca_trader.persistence_sqlite import SQLitePersistence


def _tables(conn):
    cur = conn.cursor()
    cur.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'index')")
    return {row[0] for row in cur.fetchall()}


def test_apply_migrations_idempotent(tmp_path: Path):
    db = tmp_path / "migs.db"
    p = SQLitePersistence(db)
    # already applied by the constructor
    assert apply_migrations(p.conn) == []
    assert set(MIGRATIONS.keys()) >= {1, 2}
    p.close()


def test_fresh_database_gets_all_migrations(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "fresh.db"))
    applied = apply_migrations(conn)

    assert applied == sorted(MIGRATIONS)
    names = _tables(conn)
    assert {"snapshots", "fills", "idx_fills_ts", "idx_fills_side"} <= names
    conn.close()


def test_rollback_last_then_reapply(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "rb.db"))
    apply_migrations(conn)

    assert rollback_last(conn) == 2
    assert "idx_fills_ts" not in _tables(conn)
    assert "fills" in _tables(conn)

    assert apply_migrations(conn) == [2]
    assert "idx_fills_ts" in _tables(conn)
    conn.close()


def test_rollback_all_drops_tables(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "all.db"))
    apply_migrations(conn)
    rollback_migration(conn, 2)
    rollback_migration(conn, 1)

    assert "fills" not in _tables(conn)
    assert rollback_last(conn) is None
    conn.close()
