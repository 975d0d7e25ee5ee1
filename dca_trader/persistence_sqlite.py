import json
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from .db_encryption import get_connection
from .db_migrations import apply_migrations
from .position import PositionRegistry

SNAPSHOT_KEY = "registry"


@dataclass
class Snapshot:
    registry: PositionRegistry
    saved_at_ms: int


class SQLitePersistence:
    """SQLite-backed store for the registry snapshot and the fill ledger.

    - `save_snapshot(registry)` / `load_snapshot()` keep the latest registry.
    - `record_fill(...)` appends to the fill ledger, once per order id.
    - `list_fills()` / `applied_fill_ids()` read the ledger back.

    All writes use transactions for atomicity. The snapshot is a hint for
    startup; the exchange remains the source of truth.
    """

    def __init__(self, path, password: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = get_connection(str(self.path), password=password)
        apply_migrations(self.conn)

    # --- Snapshot APIs ---
    def save_snapshot(self, registry: PositionRegistry, saved_at_ms: Optional[int] = None) -> None:
        self.save_snapshot_data(registry.to_dict(), saved_at_ms)

    def save_snapshot_data(self, snapshot: Dict, saved_at_ms: Optional[int] = None) -> None:
        """Store an already-serialized registry (``PositionRegistry.to_dict()``)."""
        data = json.dumps(snapshot)
        ts = saved_at_ms if saved_at_ms is not None else int(time.time() * 1000)
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        cur.execute(
            "INSERT OR REPLACE INTO snapshots(key, value, saved_at_ms) VALUES(?, ?, ?)",
            (SNAPSHOT_KEY, data, ts),
        )
        self.conn.commit()

    def load_snapshot(self) -> Optional[Snapshot]:
        cur = self.conn.cursor()
        cur.execute("SELECT value, saved_at_ms FROM snapshots WHERE key = ?", (SNAPSHOT_KEY,))
        row = cur.fetchone()
        if not row:
            return None
        return Snapshot(registry=PositionRegistry.from_dict(json.loads(row[0])), saved_at_ms=row[1])

    # --- Fill ledger APIs ---
    def record_fill(
        self,
        order_id: str,
        side: str,
        price: Decimal,
        size: Decimal,
        ts_ms: int,
        profit: Optional[Decimal] = None,
        buy_order_id: Optional[str] = None,
    ) -> bool:
        """Insert a ledger row; False if this order id is already recorded."""
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        cur.execute(
            "INSERT OR IGNORE INTO fills(order_id, side, price, size, profit, buy_order_id, ts_ms) VALUES(?, ?, ?, ?, ?, ?, ?)",
            (order_id, side, str(price), str(size), str(profit) if profit is not None else None, buy_order_id, ts_ms),
        )
        inserted = cur.rowcount == 1
        self.conn.commit()
        return inserted

    def list_fills(self, side: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        query = "SELECT order_id, side, price, size, profit, buy_order_id, ts_ms FROM fills"
        args: list = []
        if side:
            query += " WHERE side = ?"
            args.append(side)
        query += " ORDER BY ts_ms DESC"
        if limit:
            query += " LIMIT ?"
            args.append(limit)
        cur = self.conn.cursor()
        cur.execute(query, args)
        out = []
        for row in cur.fetchall():
            out.append({
                "order_id": row[0],
                "side": row[1],
                "price": Decimal(row[2]),
                "size": Decimal(row[3]),
                "profit": Decimal(row[4]) if row[4] is not None else None,
                "buy_order_id": row[5],
                "ts_ms": row[6],
            })
        return out

    def applied_fill_ids(self, limit: int = 10000) -> List[str]:
        """Most recent ledger order ids, oldest first, for seeding the in-memory ledger."""
        cur = self.conn.cursor()
        cur.execute("SELECT order_id FROM fills ORDER BY ts_ms DESC LIMIT ?", (limit,))
        return [r[0] for r in reversed(cur.fetchall())]

    def close(self):
        self.conn.close()
