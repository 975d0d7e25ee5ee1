#!/usr/bin/env python
"""Trade history and P&L reporter.

Usage:
    python scripts/trade_history.py --db state.db summary
    python scripts/trade_history.py --db state.db list --side sell --limit 20
    python scripts/trade_history.py --db state.db state
"""
import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dca_trader.persistence_sqlite import SQLitePersistence
from dca_trader.pnl import summarize_ledger


def _fmt_ts(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def summary(persistence):
    """Show fill counts, volume and realized profit from the ledger."""
    rows = persistence.list_fills()
    if not rows:
        print("No fills recorded.")
        return
    s = summarize_ledger(rows)
    print("\n=== Trading Summary ===")
    print(f"Buy fills:        {s['buy_fills']}")
    print(f"Sell fills:       {s['sell_fills']}")
    print(f"Bought:           {s['bought_size']}")
    print(f"Sold:             {s['sold_size']}")
    print(f"Realized profit:  {s['total_realized_profit']:.8f}")
    print(f"Avg per sell:     {s['avg_profit_per_sell']:.8f}")


def list_trades(persistence, side=None, limit=None):
    rows = persistence.list_fills(side=side, limit=limit)
    if not rows:
        print("No fills recorded.")
        return
    print(f"{'Time (UTC)':<20} {'Order ID':<22} {'Side':<5} {'Price':<14} {'Size':<12} {'Profit':<14}")
    print("-" * 92)
    for r in rows:
        profit = f"{r['profit']:.8f}" if r["profit"] is not None else "-"
        print(f"{_fmt_ts(r['ts_ms']):<20} {r['order_id']:<22} {r['side']:<5} {str(r['price']):<14} {str(r['size']):<12} {profit:<14}")


def show_state(persistence):
    """Print the last saved registry snapshot."""
    snapshot = persistence.load_snapshot()
    if snapshot is None:
        print("No snapshot saved.")
        return
    reg = snapshot.registry
    print(f"Saved at:         {_fmt_ts(snapshot.saved_at_ms)}")
    print(f"Phase:            {reg.phase.value}")
    print(f"Last price:       {reg.last_price}")
    print(f"Realized profit:  {reg.realized_profit}")
    print(f"Sell orders:      {len(reg.sell_slots)}")
    for slot in sorted(reg.sell_slots.values(), key=lambda s: s.order.price):
        print(f"  {slot.order_id}: {slot.order.size} @ {slot.order.price} (bought @ {slot.buy_price})")
    if reg.dca_order:
        print(f"DCA buy:          {reg.dca_order.order_id}: {reg.dca_order.size} @ {reg.dca_order.price}")
    if reg.aggressive_order:
        print(f"Aggressive buy:   {reg.aggressive_order.order_id}: {reg.aggressive_order.size} @ {reg.aggressive_order.price}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trade history and P&L reporter")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    parser.add_argument("--password", help="sqlcipher password for an encrypted DB")

    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("summary")
    list_cmd = sub.add_parser("list")
    list_cmd.add_argument("--side", choices=["buy", "sell"])
    list_cmd.add_argument("--limit", type=int)
    sub.add_parser("state")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    persistence = SQLitePersistence(db_path, password=args.password)
    try:
        if args.cmd == "summary":
            summary(persistence)
        elif args.cmd == "list":
            list_trades(persistence, side=args.side, limit=args.limit)
        elif args.cmd == "state":
            show_state(persistence)
        else:
            parser.print_help()
    finally:
        persistence.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
