#!/usr/bin/env python
"""Show open orders, recent fills and balances for the configured pair.

Usage:
    python scripts/check_orders.py
    python scripts/check_orders.py --config config.yaml --fills 20
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dca_trader.errors import GatewayError
from dca_trader.okx_client import build_client


def main(argv=None):
    parser = argparse.ArgumentParser(description="Inspect open orders and fills")
    parser.add_argument("--config", help="YAML config file (default: environment)")
    parser.add_argument("--sandbox", action="store_true")
    parser.add_argument("--fills", type=int, default=10, help="Number of recent fills to show")
    args = parser.parse_args(argv)

    try:
        client = build_client(args.config, args.sandbox)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    try:
        price = client.get_last_price()
        orders = client.list_open_orders()
        fills = client.list_fills(limit=args.fills)
        balances = client.get_balances()
    except GatewayError as e:
        print(f"Request failed: {e}")
        return 1

    print(f"=== {client.inst_id} @ {price} ===")
    print(f"\nOpen orders: {len(orders)}")
    for o in sorted(orders, key=lambda o: o.price, reverse=True):
        print(f"  {o.order_id}: {o.side.value:<4} {o.size} @ {o.price}")

    print(f"\nRecent fills: {len(fills)}")
    for f in fills:
        print(f"  {f.order_id}: {f.side.value:<4} {f.size} @ {f.price} (ts={f.ts_ms})")

    print("\nBalances:")
    for ccy, amount in sorted(balances.items()):
        print(f"  {ccy}: {amount}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
