"""In-memory venue and controller factory shared by the cycle tests."""
import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple

from dca_trader.controller import CycleController
from dca_trader.errors import GatewayError, OrderRejectedError
from dca_trader.events import Fill, OrderCancelled, fill_event
from dca_trader.gateway import ExchangeGateway, Instrument
from dca_trader.position import Order, OrderSide


class SimulatedVenue(ExchangeGateway):
    """Order book stand-in: tests decide when orders fill or get cancelled.

    Venue-side changes (fill, cancel_externally) return the event the
    account feed would deliver; whether that event reaches the controller
    is up to the test.
    """

    def __init__(self, last_price: Decimal = Decimal("100")):
        self.instrument = Instrument("ETH-USDT", tick_size=Decimal("0.01"), lot_size=Decimal("0.0001"))
        self.last_price = last_price
        self.open_orders: Dict[str, Order] = {}
        self.placed: List[Order] = []
        self.cancelled: List[str] = []
        self.fills: List[Fill] = []
        self.reject_sides: Set[OrderSide] = set()
        self.refuse_cancel: Set[str] = set()
        self.fail_list_open = False
        self.fail_list_fills = False
        self.listing_gate: Optional[asyncio.Event] = None
        self.fill_fetches = 0
        self.now_ms = 1_000_000
        self._next_id = 1

    def _order_id(self) -> str:
        oid = f"o{self._next_id}"
        self._next_id += 1
        return oid

    # --- ExchangeGateway ---

    async def place_order(self, side, price, size, client_id=None):
        if side in self.reject_sides:
            raise OrderRejectedError(f"{side.value} rejected", code="51008")
        order = Order(
            order_id=self._order_id(),
            side=side,
            price=self.instrument.round_price(price, side),
            size=self.instrument.round_size(size),
            client_id=client_id,
        )
        self.open_orders[order.order_id] = order
        self.placed.append(order)
        return order

    async def cancel_order(self, order_id, client_id=None):
        if order_id in self.refuse_cancel or order_id not in self.open_orders:
            return False
        del self.open_orders[order_id]
        self.cancelled.append(order_id)
        return True

    async def list_open_orders(self):
        # the answer reflects the book when the request was made
        snapshot = list(self.open_orders.values())
        if self.listing_gate is not None:
            await self.listing_gate.wait()
        if self.fail_list_open:
            raise GatewayError("simulated open-orders outage")
        return snapshot

    async def list_fills_since(self, since_ms):
        self.fill_fetches += 1
        if self.fail_list_fills:
            raise GatewayError("simulated fills outage")
        return [f for f in self.fills if f.ts_ms >= since_ms]

    async def get_last_price(self):
        return self.last_price

    # --- lifecycle used by TradingBot ---

    async def open(self):
        pass

    async def close(self):
        pass

    async def check_credentials(self):
        pass

    async def get_instrument(self):
        return self.instrument

    # --- venue-side actions ---

    def fill(self, order_id: str, price: Optional[Decimal] = None):
        """Fill an open order completely at its limit (or ``price``)."""
        order = self.open_orders.pop(order_id)
        return self.fill_in_parts(order, [(price or order.price, order.size)])

    def fill_in_parts(self, order: Order, parts: Sequence[Tuple[Decimal, Decimal]]):
        self.open_orders.pop(order.order_id, None)
        total = Decimal("0")
        notional = Decimal("0")
        for n, (price, size) in enumerate(parts):
            self.now_ms += 1000
            self.fills.append(Fill(order.order_id, order.side, price, size, self.now_ms, trade_id=f"{order.order_id}-{n}"))
            total += size
            notional += price * size
        return fill_event(order.order_id, order.side, notional / total, total, self.now_ms)

    def partial_fill(self, order_id: str, size: Decimal) -> None:
        """Record an execution that leaves the order open."""
        order = self.open_orders[order_id]
        self.now_ms += 1000
        self.fills.append(Fill(order_id, order.side, order.price, size, self.now_ms))

    def cancel_externally(self, order_id: str) -> OrderCancelled:
        order = self.open_orders.pop(order_id)
        self.now_ms += 1000
        return OrderCancelled(order_id=order_id, side=order.side, ts_ms=self.now_ms)

    def add_foreign_order(self, side: OrderSide, price: Decimal, size: Decimal) -> Order:
        order = Order(order_id=self._order_id(), side=side, price=price, size=size)
        self.open_orders[order.order_id] = order
        return order

    def open_by_side(self, side: OrderSide) -> List[Order]:
        return [o for o in self.open_orders.values() if o.side is side]


def make_controller(venue: Optional[SimulatedVenue] = None, persistence=None, **overrides) -> CycleController:
    """Controller with 1-unit trades, 0.2% profit, 0.3% DCA and no real waits.

    The aggressive wait defaults to a minute so requoting only happens in
    tests that ask for it.
    """
    params = dict(
        trade_size=Decimal("1"),
        profit_pct=Decimal("0.002"),
        dca_pct=Decimal("0.003"),
        immediate_buy_wait=60.0,
        requote_delay=0.0,
        retry_delay=0.0,
        settle_delay=0.0,
    )
    params.update(overrides)
    controller = CycleController(venue or SimulatedVenue(), persistence, **params)
    controller.registry.last_price = controller.gateway.last_price
    return controller


async def open_position(controller: CycleController) -> Order:
    """Start fresh and fill the aggressive buy; returns the filled buy order."""
    await controller.start_fresh()
    buy = controller.registry.aggressive_order
    await controller.dispatch(controller.gateway.fill(buy.order_id))
    return buy
