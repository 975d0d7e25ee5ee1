"""P&L helpers: profit per sell fill, fill aggregation and ledger summaries."""
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List

from .events import Fill
from .position import OrderSide


def realized_profit(sell_price: Decimal, buy_price: Decimal, size: Decimal) -> Decimal:
    """Profit of selling ``size`` at ``sell_price`` that was bought at ``buy_price``."""
    return (sell_price - buy_price) * size


@dataclass
class OrderFill:
    """All executions of one order, collapsed."""
    order_id: str
    side: OrderSide
    price: Decimal  # volume-weighted
    size: Decimal
    last_ts_ms: int


def aggregate_fills(fills: Iterable[Fill]) -> List[OrderFill]:
    """Group executions by order id, oldest order first.

    An order that filled in several trades shows up once with its total size
    and volume-weighted price, the same numbers the order channel reports as
    avgPx/accFillSz.
    """
    notional: Dict[str, Decimal] = {}
    grouped: "OrderedDict[str, OrderFill]" = OrderedDict()
    for fill in sorted(fills, key=lambda f: f.ts_ms):
        agg = grouped.get(fill.order_id)
        if agg is None:
            grouped[fill.order_id] = OrderFill(
                order_id=fill.order_id, side=fill.side, price=fill.price,
                size=fill.size, last_ts_ms=fill.ts_ms,
            )
            notional[fill.order_id] = fill.price * fill.size
            continue
        agg.size += fill.size
        notional[fill.order_id] += fill.price * fill.size
        agg.price = notional[fill.order_id] / agg.size
        agg.last_ts_ms = max(agg.last_ts_ms, fill.ts_ms)
    return list(grouped.values())


def summarize_ledger(rows: List[dict]) -> dict:
    """Totals over fill-ledger rows as returned by SQLitePersistence.list_fills()."""
    buys = [r for r in rows if r["side"] == OrderSide.BUY.value]
    sells = [r for r in rows if r["side"] == OrderSide.SELL.value]
    profits = [r["profit"] for r in sells if r.get("profit") is not None]
    total_profit = sum(profits, Decimal("0"))
    return {
        "buy_fills": len(buys),
        "sell_fills": len(sells),
        "bought_size": sum((r["size"] for r in buys), Decimal("0")),
        "sold_size": sum((r["size"] for r in sells), Decimal("0")),
        "total_realized_profit": total_profit,
        "avg_profit_per_sell": (total_profit / len(profits)) if profits else Decimal("0"),
    }
