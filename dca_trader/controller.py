"""Cycle controller: the order-lifecycle state machine.

The controller owns the PositionRegistry and is its only writer. Every
public entry point takes ``self.lock``; the underscore-free internal
handlers (``apply_event``, ``resume_cycle``, ``forget_order``...) assume the
caller already holds it, which is how the reconciler gets exclusive access
for a whole pass.

After every applied event the aggressive-buy loop is conformed to the
phase: running while no sell slot is outstanding, stopped otherwise.
"""
import asyncio
import time
from decimal import Decimal
from typing import Optional, Set

from .errors import GatewayError
from .events import BuyFilled, OrderAccepted, OrderCancelled, PriceTick, SellFilled
from .fill_ledger import FillLedger, RecentOrderIds
from .gateway import ExchangeGateway
from .logging_setup import logger
from .pnl import realized_profit
from .position import CyclePhase, Order, OrderSide, PositionRegistry, SellSlot, SlotKind
from .timers import ScheduledTasks

AGGRESSIVE_KEY = "aggressive"


class CycleController:
    """Aggressive buying, post-fill order placement and re-entry.

    Persistence is sync; calls run in a worker thread via ``asyncio.to_thread``.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        persistence=None,
        *,
        trade_size: Decimal,
        profit_pct: Decimal,
        dca_pct: Decimal,
        immediate_buy_wait: float = 0.1,
        requote_delay: float = 0.05,
        retry_delay: float = 1.0,
        settle_delay: float = 1.0,
        registry: Optional[PositionRegistry] = None,
        ledger: Optional[FillLedger] = None,
    ):
        self.gateway = gateway
        self.persistence = persistence
        self.trade_size = trade_size
        self.profit_pct = profit_pct
        self.dca_pct = dca_pct
        self.immediate_buy_wait = immediate_buy_wait
        self.requote_delay = requote_delay
        self.retry_delay = retry_delay
        self.settle_delay = settle_delay
        self.registry = registry or PositionRegistry()
        self.ledger = ledger or FillLedger()
        self.placed_ids = RecentOrderIds()
        self.cancelled_ids = RecentOrderIds()
        self.timers = ScheduledTasks()
        self.lock = asyncio.Lock()
        self.aggressive_active = False
        self.shutting_down = False
        # exchange time of the newest account event applied so far
        self.last_event_ms: Optional[int] = None
        self._pending_cancels: Set[str] = set()

    @classmethod
    def from_config(cls, gateway: ExchangeGateway, persistence, strategy, **kwargs) -> "CycleController":
        return cls(
            gateway,
            persistence,
            trade_size=strategy.trade_size,
            profit_pct=strategy.profit_pct,
            dca_pct=strategy.dca_pct,
            immediate_buy_wait=strategy.immediate_buy_wait,
            requote_delay=strategy.aggressive_requote_delay,
            retry_delay=strategy.aggressive_retry_delay,
            **kwargs,
        )

    @property
    def phase(self) -> CyclePhase:
        return self.registry.phase

    # --- public entry points (take the lock) ---

    async def dispatch(self, event) -> None:
        """Apply one account event under the controller lock."""
        async with self.lock:
            await self.apply_event(event)

    def on_price(self, tick: PriceTick) -> None:
        self.registry.last_price = tick.price

    async def start_fresh(self) -> None:
        """Cancel every open order for the pair, forget all slots, start buying.

        Realized profit and the last price survive; nothing else does.

        Raises:
            GatewayError: If the open orders cannot be listed
        """
        async with self.lock:
            logger.info("Cancelling all open orders and starting fresh")
            open_orders = await self.gateway.list_open_orders()
            if open_orders:
                logger.info(f"Found open orders, cancelling all | count={len(open_orders)}")
                results = await asyncio.gather(
                    *(self._cancel(o.order_id, o.client_id) for o in open_orders)
                )
                failed = [o.order_id for o, ok in zip(open_orders, results) if not ok]
                if failed:
                    logger.warning(f"Some startup cancels failed; reconciliation will retry | order_ids={failed}")
                await asyncio.sleep(self.settle_delay)

            self.timers.cancel_all()
            self.aggressive_active = False
            self.registry.clear_orders()
            await self.start_aggressive_cycle()
            await self.persist()

    async def shutdown(self, poll_interval: float = 0.5, max_polls: int = 10) -> None:
        """Stop placing orders, let in-flight cancels finish, cancel the rest."""
        if self.shutting_down:
            return
        logger.info("Initiating controller shutdown")
        self.shutting_down = True
        self.aggressive_active = False
        self.timers.cancel_all()

        polls = 0
        while self._pending_cancels and polls < max_polls:
            logger.info(f"Waiting for pending cancels | count={len(self._pending_cancels)}")
            await asyncio.sleep(poll_interval)
            polls += 1

        async with self.lock:
            try:
                open_orders = await self.gateway.list_open_orders()
            except GatewayError as e:
                logger.error(f"Could not list open orders at shutdown; cancelling tracked ones | error={e}")
                open_orders = self._tracked_orders()

            if open_orders:
                logger.info(f"Cancelling open orders | count={len(open_orders)}")
            for order in open_orders:
                if await self._cancel(order.order_id, order.client_id):
                    self.forget_order(order.order_id)
            await self.persist()
        logger.info(f"Controller shutdown complete | realized_profit={self.registry.realized_profit}")

    # --- internal handlers (caller holds the lock) ---

    async def apply_event(self, event) -> None:
        if isinstance(event, PriceTick):
            self.on_price(event)
            return
        ts_ms = getattr(event, "ts_ms", 0)
        if ts_ms and ts_ms > (self.last_event_ms or 0):
            self.last_event_ms = ts_ms

        if isinstance(event, BuyFilled):
            await self._on_buy_filled(event)
        elif isinstance(event, SellFilled):
            await self._on_sell_filled(event)
        elif isinstance(event, OrderCancelled):
            await self._on_cancelled(event)
        elif isinstance(event, OrderAccepted):
            logger.debug(f"Order live | order_id={event.order_id} side={event.side.value}")
            return
        else:
            logger.warning(f"Ignoring unknown event | event={event!r}")
            return
        await self.resume_cycle()
        await self.persist()

    async def resume_cycle(self) -> None:
        """Run the aggressive loop iff no sell slot is outstanding."""
        if self.shutting_down:
            return
        if self.registry.phase is CyclePhase.AGGRESSIVE_BUYING:
            if not self.aggressive_active:
                await self.start_aggressive_cycle()
            elif self.registry.aggressive_order is None and not self.timers.pending(AGGRESSIVE_KEY):
                self._schedule_aggressive_retry(self.requote_delay)
        elif self.aggressive_active:
            await self._stop_aggressive_cycle()

    def forget_order(self, order_id: str) -> Optional[SlotKind]:
        """Clear whichever slot holds ``order_id``, without any follow-up order."""
        kind = self.registry.slot_of(order_id)
        if kind is SlotKind.AGGRESSIVE:
            self.registry.aggressive_order = None
            self.timers.cancel(AGGRESSIVE_KEY)
        elif kind is SlotKind.DCA:
            self.registry.dca_order = None
        elif kind is SlotKind.SELL:
            del self.registry.sell_slots[order_id]
        return kind

    async def cancel_order(self, order: Order) -> bool:
        return await self._cancel(order.order_id, order.client_id)

    async def persist(self) -> None:
        if self.persistence is None:
            return
        data = self.registry.to_dict()
        try:
            await asyncio.to_thread(self.persistence.save_snapshot_data, data)
        except Exception:
            logger.exception("Failed to persist registry snapshot")

    # --- aggressive buying ---

    async def start_aggressive_cycle(self) -> None:
        if self.shutting_down or self.aggressive_active:
            return
        logger.info("Starting aggressive buy cycle")
        self.aggressive_active = True
        await self._attempt_aggressive_buy()

    async def _attempt_aggressive_buy(self) -> None:
        if self.shutting_down or not self.aggressive_active:
            return
        current = self.registry.aggressive_order
        if current is not None:
            # already one in flight: only make sure its wait timer is armed
            self._arm_aggressive_timeout(current, self.immediate_buy_wait)
            return

        price = self.registry.last_price
        if price is None:
            logger.info("No streamed price available, fetching ticker")
            try:
                price = await self.gateway.get_last_price()
            except GatewayError as e:
                logger.error(f"Failed to get current price | error={e}")
                self._schedule_aggressive_retry(self.retry_delay)
                return
            self.registry.last_price = price

        try:
            order = await self._place(OrderSide.BUY, price, self.trade_size)
        except GatewayError as e:
            logger.error(f"Aggressive buy placement failed | error={e}")
            self._schedule_aggressive_retry(self.retry_delay)
            return
        if order is None:
            return
        if not self.aggressive_active or self.ledger.is_applied(order.order_id):
            logger.info(f"Aggressive buy resolved while placement was in flight | order_id={order.order_id}")
            return
        self.registry.aggressive_order = order
        logger.info(f"Aggressive buy order placed | order_id={order.order_id} size={order.size} price={order.price}")
        self._arm_aggressive_timeout(order, self.immediate_buy_wait)

    def _arm_aggressive_timeout(self, order: Order, delay: float) -> None:
        order_id = order.order_id
        self.timers.schedule(AGGRESSIVE_KEY, delay, lambda: self._locked_timeout(order_id))

    def _schedule_aggressive_retry(self, delay: float) -> None:
        if self.shutting_down or not self.aggressive_active:
            return
        self.timers.schedule(AGGRESSIVE_KEY, delay, self._locked_attempt)

    async def _locked_attempt(self) -> None:
        async with self.lock:
            await self._attempt_aggressive_buy()
            await self.persist()

    async def _locked_timeout(self, order_id: str) -> None:
        async with self.lock:
            await self._on_aggressive_timeout(order_id)
            await self.persist()

    async def _on_aggressive_timeout(self, order_id: str) -> None:
        if self.shutting_down or not self.aggressive_active:
            return
        current = self.registry.aggressive_order
        if current is None or current.order_id != order_id:
            # resolved (filled or cancelled) before the wait elapsed
            logger.debug(f"Aggressive wait elapsed for a resolved order | order_id={order_id}")
            return

        logger.info(f"Aggressive buy not filled in time, cancelling and requoting | order_id={order_id}")
        if not await self._cancel(current.order_id, current.client_id):
            # most likely filled meanwhile; keep tracking until the fill arrives
            if self.registry.aggressive_order is current:
                self._arm_aggressive_timeout(current, self.retry_delay)
            return
        if self.registry.aggressive_order is current:
            self.registry.aggressive_order = None
        self._schedule_aggressive_retry(self.requote_delay)

    async def _stop_aggressive_cycle(self) -> None:
        """Leave the aggressive phase, cancelling an order still in flight."""
        self.aggressive_active = False
        self.timers.cancel(AGGRESSIVE_KEY)
        order = self.registry.aggressive_order
        if order is None:
            return
        logger.info(f"Position opened elsewhere, withdrawing aggressive buy | order_id={order.order_id}")
        if await self._cancel(order.order_id, order.client_id):
            if self.registry.aggressive_order is order:
                self.registry.aggressive_order = None

    # --- fills and cancellations ---

    async def _on_buy_filled(self, event: BuyFilled) -> None:
        if self.ledger.is_applied(event.order_id) or self.registry.references_buy(event.order_id):
            logger.debug(f"Buy fill already applied | order_id={event.order_id}")
            return
        self.ledger.mark_applied(event.order_id)
        logger.info(f"Buy filled | order_id={event.order_id} size={event.size} price={event.price}")

        kind = self.registry.slot_of(event.order_id)
        if kind is SlotKind.AGGRESSIVE:
            self.registry.aggressive_order = None
            self.timers.cancel(AGGRESSIVE_KEY)
            self.aggressive_active = False
            logger.info("Aggressive buy cycle completed - order filled")
        elif kind is SlotKind.DCA:
            self.registry.dca_order = None

        await self._record_fill(event, OrderSide.BUY)
        await self._place_profit_sell(event)
        await self._replace_dca_buy(event)

    async def _place_profit_sell(self, event: BuyFilled) -> None:
        sell_price = event.price * (Decimal(1) + self.profit_pct)
        try:
            order = await self._place(OrderSide.SELL, sell_price, event.size)
        except GatewayError as e:
            logger.error(f"Profit sell placement failed | buy_order_id={event.order_id} error={e}")
            return
        if order is None:
            return
        self.registry.add_sell_slot(SellSlot(order=order, buy_price=event.price, buy_order_id=event.order_id))
        logger.info(f"Profit sell order placed | order_id={order.order_id} size={order.size} price={order.price} buy_price={event.price}")

    async def _replace_dca_buy(self, event: BuyFilled) -> None:
        previous = self.registry.dca_order
        if previous is not None:
            if not await self._cancel(previous.order_id, previous.client_id):
                logger.warning(f"Previous DCA buy not cancelled; keeping it as the DCA order | order_id={previous.order_id}")
                return
            if self.registry.dca_order is previous:
                self.registry.dca_order = None

        dca_price = event.price * (Decimal(1) - self.dca_pct)
        try:
            order = await self._place(OrderSide.BUY, dca_price, event.size)
        except GatewayError as e:
            logger.error(f"DCA buy placement failed | buy_order_id={event.order_id} error={e}")
            return
        if order is None:
            return
        self.registry.dca_order = order
        logger.info(f"DCA buy order placed | order_id={order.order_id} size={order.size} price={order.price}")

    async def _on_sell_filled(self, event: SellFilled) -> None:
        slot = self.registry.sell_slots.get(event.order_id)
        if slot is None or self.ledger.is_applied(event.order_id):
            logger.debug(f"Sell fill for untracked or applied order | order_id={event.order_id}")
            return
        self.ledger.mark_applied(event.order_id)
        del self.registry.sell_slots[event.order_id]

        profit = realized_profit(event.price, slot.buy_price, event.size)
        self.registry.realized_profit += profit
        logger.info(
            f"Sell filled, profit realized | order_id={event.order_id} size={event.size} "
            f"price={event.price} profit={profit} total={self.registry.realized_profit}"
        )
        await self._record_fill(event, OrderSide.SELL, profit=profit, buy_order_id=slot.buy_order_id)

        if self.registry.sell_slots:
            remaining = sorted((s.order.price for s in self.registry.sell_slots.values()), reverse=True)
            logger.info(f"Higher sell orders remain, waiting | count={len(remaining)} prices={[str(p) for p in remaining]}")
        else:
            logger.info("All sell orders filled, returning to aggressive buying")

    async def _on_cancelled(self, event: OrderCancelled) -> None:
        kind = self.forget_order(event.order_id)
        if kind is None:
            logger.debug(f"Cancel for untracked order | order_id={event.order_id}")
            return
        logger.info(f"Cancelled order cleared | slot={kind.value} order_id={event.order_id}")

    # --- gateway helpers ---

    async def _place(self, side: OrderSide, price: Decimal, size: Decimal) -> Optional[Order]:
        """Place an order unless shutting down; an order that lands after shutdown began is cancelled."""
        if self.shutting_down:
            logger.info(f"Shutting down, not placing order | side={side.value} price={price}")
            return None
        order = await self.gateway.place_order(side, price, size)
        self.placed_ids.add(order.order_id)
        if self.shutting_down:
            logger.info(f"Shutdown began during placement, cancelling | order_id={order.order_id}")
            await self._cancel(order.order_id, order.client_id)
            return None
        return order

    async def _cancel(self, order_id: str, client_id: Optional[str] = None) -> bool:
        self._pending_cancels.add(order_id)
        try:
            ok = await self.gateway.cancel_order(order_id, client_id)
        except GatewayError as e:
            logger.error(f"Cancel failed | order_id={order_id} error={e}")
            ok = False
        finally:
            self._pending_cancels.discard(order_id)
        if ok:
            self.cancelled_ids.add(order_id)
        return ok

    async def _record_fill(self, event, side: OrderSide, profit: Optional[Decimal] = None, buy_order_id: Optional[str] = None) -> None:
        if self.persistence is None:
            return
        ts_ms = event.ts_ms or int(time.time() * 1000)
        try:
            await asyncio.to_thread(
                self.persistence.record_fill,
                event.order_id, side.value, event.price, event.size, ts_ms, profit, buy_order_id,
            )
        except Exception:
            logger.exception(f"Failed to record fill | order_id={event.order_id}")

    def _tracked_orders(self):
        orders = [slot.order for slot in self.registry.sell_slots.values()]
        for order in (self.registry.dca_order, self.registry.aggressive_order):
            if order is not None:
                orders.append(order)
        return orders
