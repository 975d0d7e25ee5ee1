#!/usr/bin/env python
"""Run the trading bot.

Usage:
    python scripts/run_bot.py --config config.yaml
    python scripts/run_bot.py --sandbox --mode resume
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dca_trader.bot import main

if __name__ == "__main__":
    sys.exit(main())
