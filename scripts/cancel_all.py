#!/usr/bin/env python
"""Cancel every open order for the configured pair.

Usage:
    python scripts/cancel_all.py --yes
    python scripts/cancel_all.py --config config.yaml --dry-run
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dca_trader.errors import GatewayError
from dca_trader.okx_client import build_client


def main(argv=None):
    parser = argparse.ArgumentParser(description="Cancel all open orders for the pair")
    parser.add_argument("--config", help="YAML config file (default: environment)")
    parser.add_argument("--sandbox", action="store_true")
    parser.add_argument("--dry-run", action="store_true", help="List orders without cancelling")
    parser.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")
    args = parser.parse_args(argv)

    try:
        client = build_client(args.config, args.sandbox)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    try:
        orders = client.list_open_orders()
    except GatewayError as e:
        print(f"Request failed: {e}")
        return 1

    print(f"Open orders for {client.inst_id}: {len(orders)}")
    for o in orders:
        print(f"  {o.order_id}: {o.side.value:<4} {o.size} @ {o.price}")
    if not orders or args.dry_run:
        return 0

    if not args.yes:
        try:
            answer = input("Cancel all of them? Type 'yes' to continue: ")
        except EOFError:
            answer = ""
        if answer.strip().lower() != "yes":
            print("Aborted.")
            return 1

    result = client.cancel_all()
    print(f"Cancelled: {len(result['cancelled'])}")
    if result["failed"]:
        print(f"Failed: {result['failed']}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
