"""
Reconciliation of local order state against the exchange after an outage.

A pass runs under the controller lock, so no live event or timer can touch
the registry while it works:

1. Fetch open orders and fills since the outage began, concurrently.
2. Replay fills the registry has not reflected, through the same handlers
   live events use.
3. Clear tracked orders the venue no longer lists and that have no fills
   (missed cancellations). A vanished order with fills is replayed instead.
4. Cancel open orders nobody tracks (orphans).

The window opens at the newest account event the controller applied (or the
requested start, if earlier), less ``overlap_ms``. Events still queued at
disconnect and exchange/local clock skew both fall inside it; replaying an
overlap is a no-op because fill handling is idempotent.

A failed fetch skips only the steps that depend on it. Orders placed or
cancelled while the pass runs are never treated as missing or orphaned.
A request that arrives during a pass is folded into one follow-up pass, and
its caller returns only once that pass is done.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .errors import GatewayError
from .events import Fill, fill_event
from .logging_setup import logger
from .pnl import OrderFill, aggregate_fills
from .position import Order, OrderSide

OVERLAP_MS = 10_000


@dataclass
class ReconcileReport:
    """What one pass changed.

    ``since_ms`` is the start of the fill window actually fetched.
    ``skipped`` means the request was served by another caller's pass.
    """
    since_ms: int
    fills_replayed: List[str] = field(default_factory=list)
    cancellations_cleared: List[str] = field(default_factory=list)
    orphans_cancelled: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    passes: int = 1

    @property
    def changed(self) -> bool:
        return bool(self.fills_replayed or self.cancellations_cleared or self.orphans_cancelled)

    def absorb(self, other: "ReconcileReport") -> None:
        self.fills_replayed.extend(other.fills_replayed)
        self.cancellations_cleared.extend(other.cancellations_cleared)
        self.orphans_cancelled.extend(other.orphans_cancelled)
        self.errors.extend(other.errors)
        self.passes += other.passes


class Reconciler:
    """Brings a CycleController's registry back in line with the venue."""

    def __init__(self, controller, gateway=None, overlap_ms: int = OVERLAP_MS):
        self.controller = controller
        self.gateway = gateway or controller.gateway
        self.overlap_ms = overlap_ms
        self._running = False
        self._deferred_since: Optional[int] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def running(self) -> bool:
        return self._running

    def window_start(self, since_ms: int) -> int:
        last = self.controller.last_event_ms
        start = since_ms if last is None else min(since_ms, last)
        return max(0, start - self.overlap_ms)

    async def reconcile(self, since_ms: int) -> ReconcileReport:
        """Reconcile the window starting at ``since_ms``.

        While a pass is running, the request is remembered (earliest start
        wins) and one more pass runs as soon as the current one ends. The
        deferred caller waits for that pass and gets a skipped report.
        """
        if self._running:
            if self._deferred_since is None or since_ms < self._deferred_since:
                self._deferred_since = since_ms
            logger.warning(f"Reconciliation already in progress, follow-up pass queued | since_ms={since_ms}")
            await self._idle.wait()
            return ReconcileReport(since_ms=self.window_start(since_ms), skipped=True, passes=0)

        self._running = True
        self._idle.clear()
        try:
            report = await self._locked_pass(since_ms)
            while self._deferred_since is not None:
                deferred, self._deferred_since = self._deferred_since, None
                logger.info(f"Running follow-up reconciliation | since_ms={deferred}")
                report.absorb(await self._locked_pass(deferred))
        finally:
            self._running = False
            self._idle.set()

        logger.info(
            f"Reconciliation complete | passes={report.passes} fills_replayed={len(report.fills_replayed)} "
            f"cancellations_cleared={len(report.cancellations_cleared)} "
            f"orphans_cancelled={len(report.orphans_cancelled)} errors={len(report.errors)}"
        )
        return report

    async def _locked_pass(self, since_ms: int) -> ReconcileReport:
        async with self.controller.lock:
            report = ReconcileReport(since_ms=self.window_start(since_ms))
            logger.info(f"Reconciliation started | since_ms={since_ms} window_start_ms={report.since_ms}")
            await self._run_pass(report)
        return report

    async def _run_pass(self, report: ReconcileReport) -> None:
        controller = self.controller
        placed_before = controller.placed_ids.snapshot()

        open_result, fills_result = await asyncio.gather(
            self.gateway.list_open_orders(),
            self.gateway.list_fills_since(report.since_ms),
            return_exceptions=True,
        )
        open_orders: Optional[List[Order]] = None
        fills: Optional[List[Fill]] = None
        if isinstance(open_result, BaseException):
            logger.error(f"Failed to fetch open orders | error={open_result}")
            report.errors.append(f"open_orders: {open_result}")
        else:
            open_orders = open_result
        if isinstance(fills_result, BaseException):
            logger.error(f"Failed to fetch fill history | error={fills_result}")
            report.errors.append(f"fills: {fills_result}")
        else:
            fills = fills_result

        open_ids = {o.order_id for o in open_orders} if open_orders is not None else None
        filled = {agg.order_id: agg for agg in aggregate_fills(fills)} if fills is not None else None

        if filled is not None:
            await self._replay_missed_fills(filled.values(), open_ids, report)

        if open_orders is not None:
            placed_now = controller.placed_ids.since(placed_before)
            if filled is not None:
                # without fills a vanished order may have filled, not been cancelled
                await self._settle_vanished_orders(open_ids, placed_now, filled, report)
            await self._cancel_orphans(open_orders, placed_now, report)

        await controller.resume_cycle()
        await controller.persist()

    async def _replay_missed_fills(self, orders: Iterable[OrderFill], open_ids: Optional[Set[str]], report: ReconcileReport) -> None:
        registry = self.controller.registry
        for agg in orders:
            if agg.last_ts_ms <= report.since_ms:
                continue
            if open_ids is not None and agg.order_id in open_ids:
                logger.debug(f"Order still open after partial fill, not replaying | order_id={agg.order_id} size={agg.size}")
                continue
            if open_ids is None and not self._known_complete(agg):
                continue
            if self._already_reflected(agg):
                continue
            await self._replay(agg, report)
        logger.debug(f"Fill replay done | sell_slots={len(registry.sell_slots)}")

    async def _replay(self, agg: OrderFill, report: ReconcileReport) -> None:
        logger.warning(f"Replaying missed fill | order_id={agg.order_id} side={agg.side.value} size={agg.size} price={agg.price}")
        try:
            await self.controller.apply_event(fill_event(agg.order_id, agg.side, agg.price, agg.size, agg.last_ts_ms))
        except Exception as e:
            logger.exception(f"Failed to replay fill | order_id={agg.order_id}")
            report.errors.append(f"replay {agg.order_id}: {e}")
            return
        report.fills_replayed.append(agg.order_id)

    def _already_reflected(self, agg: OrderFill) -> bool:
        controller = self.controller
        if controller.ledger.is_applied(agg.order_id):
            return True
        if agg.side is OrderSide.BUY:
            return controller.registry.references_buy(agg.order_id)
        # a sell nobody holds a slot for has nothing to close
        return agg.order_id not in controller.registry.sell_slots

    def _known_complete(self, agg: OrderFill) -> bool:
        """Without the open-order list, only trust fills that cover a tracked order."""
        registry = self.controller.registry
        for order in (registry.aggressive_order, registry.dca_order):
            if order is not None and order.order_id == agg.order_id:
                return agg.size >= order.size
        slot = registry.sell_slots.get(agg.order_id)
        if slot is not None:
            return agg.size >= slot.order.size
        return False

    async def _settle_vanished_orders(
        self,
        open_ids: Set[str],
        placed_now: Set[str],
        filled: Dict[str, OrderFill],
        report: ReconcileReport,
    ) -> None:
        """Replay or clear tracked orders the venue no longer lists."""
        registry = self.controller.registry
        vanished = [oid for oid in registry.tracked_order_ids() if oid not in open_ids and oid not in placed_now]
        if not vanished:
            return

        if any(oid not in filled for oid in vanished):
            # an order can fill between the two fetches; look again before calling it cancelled
            try:
                recheck = await self.gateway.list_fills_since(report.since_ms)
            except GatewayError as e:
                logger.error(f"Failed to recheck fill history, vanished orders stay tracked | error={e}")
                report.errors.append(f"fills recheck: {e}")
                vanished = [oid for oid in vanished if oid in filled]
            else:
                filled = dict(filled)
                filled.update((agg.order_id, agg) for agg in aggregate_fills(recheck))

        for order_id in vanished:
            if registry.slot_of(order_id) is None:
                continue
            agg = filled.get(order_id)
            if agg is not None:
                if not self._already_reflected(agg):
                    await self._replay(agg, report)
                continue
            kind = self.controller.forget_order(order_id)
            logger.warning(f"Missed cancellation, clearing slot | slot={kind.value} order_id={order_id}")
            report.cancellations_cleared.append(order_id)

    async def _cancel_orphans(self, open_orders: List[Order], placed_now: Set[str], report: ReconcileReport) -> None:
        controller = self.controller
        tracked = set(controller.registry.tracked_order_ids())
        for order in open_orders:
            order_id = order.order_id
            if order_id in tracked or order_id in placed_now or order_id in controller.cancelled_ids:
                continue
            logger.warning(f"Orphaned order, cancelling | order_id={order_id} side={order.side.value} price={order.price}")
            if await controller.cancel_order(order):
                report.orphans_cancelled.append(order_id)
            else:
                report.errors.append(f"cancel orphan {order_id}")
