import asyncio
from decimal import Decimal

import pytest

from dca_trader.controller import AGGRESSIVE_KEY
from dca_trader.events import OrderAccepted, PriceTick
from dca_trader.persistence_sqlite import SQLitePersistence
from dca_trader.position import CyclePhase, OrderSide

from helpers import SimulatedVenue, make_controller, open_position


def assert_phase_consistent(controller):
    reg = controller.registry
    assert (reg.phase is CyclePhase.AGGRESSIVE_BUYING) == (len(reg.sell_slots) == 0)
    if reg.phase is CyclePhase.HOLDING:
        assert reg.aggressive_order is None


@pytest.mark.asyncio
async def test_start_fresh_places_one_aggressive_buy_at_last_price():
    venue = SimulatedVenue()
    controller = make_controller(venue)

    await controller.start_fresh()

    assert controller.aggressive_active
    order = controller.registry.aggressive_order
    assert order is not None
    assert order.side is OrderSide.BUY
    assert order.price == Decimal("100")
    assert len(venue.placed) == 1
    assert controller.timers.pending(AGGRESSIVE_KEY)
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_start_fresh_cancels_existing_orders_and_keeps_profit():
    venue = SimulatedVenue()
    leftover = venue.add_foreign_order(OrderSide.SELL, Decimal("105"), Decimal("1"))
    controller = make_controller(venue)
    controller.registry.realized_profit = Decimal("1.5")

    await controller.start_fresh()

    assert leftover.order_id in venue.cancelled
    assert controller.registry.realized_profit == Decimal("1.5")
    assert controller.registry.sell_slots == {}
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_buy_fill_places_profit_sell_and_dca_buy():
    venue = SimulatedVenue()
    controller = make_controller(venue)

    buy = await open_position(controller)

    reg = controller.registry
    assert len(reg.sell_slots) == 1
    slot = next(iter(reg.sell_slots.values()))
    assert slot.order.price == Decimal("100.20")
    assert slot.buy_price == Decimal("100")
    assert slot.buy_order_id == buy.order_id
    assert reg.dca_order.price == Decimal("99.70")
    assert reg.aggressive_order is None
    assert reg.phase is CyclePhase.HOLDING
    assert not controller.aggressive_active
    assert not controller.timers.pending(AGGRESSIVE_KEY)
    assert_phase_consistent(controller)


@pytest.mark.asyncio
async def test_single_sell_fill_realizes_profit_and_restarts_buying():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    sell_id = next(iter(controller.registry.sell_slots))

    await controller.dispatch(venue.fill(sell_id))

    reg = controller.registry
    assert reg.realized_profit == Decimal("0.2")
    assert reg.sell_slots == {}
    assert reg.phase is CyclePhase.AGGRESSIVE_BUYING
    assert controller.aggressive_active
    assert reg.aggressive_order is not None
    assert venue.placed[-1].order_id == reg.aggressive_order.order_id
    # the DCA buy stays on the book
    assert reg.dca_order is not None
    assert_phase_consistent(controller)
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_one_of_two_sells_filling_keeps_holding():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    first_dca = controller.registry.dca_order

    await controller.dispatch(venue.fill(first_dca.order_id))

    reg = controller.registry
    assert len(reg.sell_slots) == 2
    second_sell = next(s for s in reg.sell_slots.values() if s.buy_order_id == first_dca.order_id)
    assert second_sell.order.price == Decimal("99.90")
    assert reg.dca_order.price == Decimal("99.40")

    await controller.dispatch(venue.fill(second_sell.order_id))

    assert len(reg.sell_slots) == 1
    assert reg.phase is CyclePhase.HOLDING
    assert reg.aggressive_order is None
    assert not controller.aggressive_active
    assert reg.realized_profit == Decimal("0.2")
    assert_phase_consistent(controller)


@pytest.mark.asyncio
async def test_duplicate_fill_events_are_applied_once():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await controller.start_fresh()
    buy_event = venue.fill(controller.registry.aggressive_order.order_id)

    await controller.dispatch(buy_event)
    placed_after_first = len(venue.placed)
    await controller.dispatch(buy_event)

    assert len(venue.placed) == placed_after_first
    assert len(controller.registry.sell_slots) == 1

    sell_id = next(iter(controller.registry.sell_slots))
    sell_event = venue.fill(sell_id)
    await controller.dispatch(sell_event)
    await controller.dispatch(sell_event)
    assert controller.registry.realized_profit == Decimal("0.2")
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_dca_fill_replaces_the_single_dca_order():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    first_dca = controller.registry.dca_order

    await controller.dispatch(venue.fill(first_dca.order_id))
    second_dca = controller.registry.dca_order
    await controller.dispatch(venue.fill(second_dca.order_id))

    open_buys = venue.open_by_side(OrderSide.BUY)
    assert len(open_buys) == 1
    assert open_buys[0].order_id == controller.registry.dca_order.order_id
    assert len(controller.registry.sell_slots) == 3


@pytest.mark.asyncio
async def test_previous_dca_is_cancelled_when_a_new_buy_fills():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    old_dca = controller.registry.dca_order
    sell_id = next(iter(controller.registry.sell_slots))

    # back to aggressive buying; the next aggressive fill replaces the DCA
    await controller.dispatch(venue.fill(sell_id))
    await controller.dispatch(venue.fill(controller.registry.aggressive_order.order_id))

    assert old_dca.order_id in venue.cancelled
    assert controller.registry.dca_order.order_id != old_dca.order_id
    assert len(venue.open_by_side(OrderSide.BUY)) == 1


@pytest.mark.asyncio
async def test_aggressive_requote_loop_ends_with_exactly_one_fill():
    venue = SimulatedVenue()
    controller = make_controller(venue, immediate_buy_wait=0.01)
    await controller.start_fresh()

    await asyncio.sleep(0.08)
    assert len(venue.cancelled) >= 1
    for _ in range(100):
        if controller.registry.aggressive_order is not None:
            break
        await asyncio.sleep(0)
    current = controller.registry.aggressive_order
    assert current is not None

    await controller.dispatch(venue.fill(current.order_id))
    placed = len(venue.placed)
    await asyncio.sleep(0.05)

    assert len(venue.placed) == placed
    assert not controller.aggressive_active
    assert controller.registry.aggressive_order is None
    assert len(venue.fills) == 1
    assert len(venue.open_by_side(OrderSide.BUY)) == 1  # the DCA buy
    assert len(controller.registry.sell_slots) == 1


@pytest.mark.asyncio
async def test_failed_aggressive_cancel_keeps_order_tracked():
    venue = SimulatedVenue()
    controller = make_controller(venue, immediate_buy_wait=0.01, retry_delay=60.0)
    await controller.start_fresh()
    order = controller.registry.aggressive_order
    venue.refuse_cancel.add(order.order_id)

    await asyncio.sleep(0.05)

    assert controller.registry.aggressive_order is order
    assert len(venue.placed) == 1
    assert controller.timers.pending(AGGRESSIVE_KEY)
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_external_cancel_of_aggressive_order_requotes():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await controller.start_fresh()
    first = controller.registry.aggressive_order

    await controller.dispatch(venue.cancel_externally(first.order_id))
    await asyncio.sleep(0.02)

    current = controller.registry.aggressive_order
    assert current is not None
    assert current.order_id != first.order_id
    assert controller.aggressive_active
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_external_cancel_of_last_sell_restarts_buying():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    sell_id = next(iter(controller.registry.sell_slots))

    await controller.dispatch(venue.cancel_externally(sell_id))

    assert controller.registry.phase is CyclePhase.AGGRESSIVE_BUYING
    assert controller.registry.aggressive_order is not None
    assert controller.registry.realized_profit == Decimal("0")
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_external_cancel_of_dca_only_clears_slot():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    dca = controller.registry.dca_order
    placed = len(venue.placed)

    await controller.dispatch(venue.cancel_externally(dca.order_id))

    assert controller.registry.dca_order is None
    assert len(venue.placed) == placed
    assert controller.registry.phase is CyclePhase.HOLDING


@pytest.mark.asyncio
async def test_rejected_profit_sell_returns_to_aggressive_buying():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await controller.start_fresh()
    venue.reject_sides.add(OrderSide.SELL)

    await controller.dispatch(venue.fill(controller.registry.aggressive_order.order_id))

    reg = controller.registry
    assert reg.sell_slots == {}
    assert reg.dca_order is not None
    assert controller.aggressive_active
    assert reg.aggressive_order is not None
    assert_phase_consistent(controller)
    controller.timers.cancel_all()


@pytest.mark.asyncio
async def test_dca_fill_during_aggressive_cycle_withdraws_aggressive_buy():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    dca = controller.registry.dca_order
    await controller.dispatch(venue.fill(next(iter(controller.registry.sell_slots))))
    aggressive = controller.registry.aggressive_order

    await controller.dispatch(venue.fill(dca.order_id))

    assert aggressive.order_id in venue.cancelled
    assert controller.registry.aggressive_order is None
    assert not controller.aggressive_active
    assert_phase_consistent(controller)


@pytest.mark.asyncio
async def test_price_ticks_and_accepted_events_do_not_place_orders():
    venue = SimulatedVenue()
    controller = make_controller(venue)

    await controller.dispatch(PriceTick(price=Decimal("101.5")))
    await controller.dispatch(OrderAccepted(order_id="x", side=OrderSide.BUY))

    assert controller.registry.last_price == Decimal("101.5")
    assert venue.placed == []


@pytest.mark.asyncio
async def test_shutdown_cancels_open_orders_and_blocks_new_ones():
    venue = SimulatedVenue()
    controller = make_controller(venue)
    await open_position(controller)
    dca = controller.registry.dca_order

    await controller.shutdown(poll_interval=0.01, max_polls=2)

    assert venue.open_orders == {}
    assert controller.registry.sell_slots == {}
    placed = len(venue.placed)
    await controller.dispatch(venue.fill_in_parts(dca, [(dca.price, dca.size)]))
    assert len(venue.placed) == placed
    assert controller.registry.aggressive_order is None


@pytest.mark.asyncio
async def test_fills_and_snapshot_are_persisted(tmp_path):
    persistence = SQLitePersistence(tmp_path / "state.db")
    venue = SimulatedVenue()
    controller = make_controller(venue, persistence)

    buy = await open_position(controller)
    await controller.dispatch(venue.fill(next(iter(controller.registry.sell_slots))))

    rows = persistence.list_fills()
    assert {r["side"] for r in rows} == {"buy", "sell"}
    sell_row = next(r for r in rows if r["side"] == "sell")
    assert sell_row["profit"] == Decimal("0.2")
    assert sell_row["buy_order_id"] == buy.order_id

    snapshot = persistence.load_snapshot()
    assert snapshot.registry.realized_profit == Decimal("0.2")
    assert snapshot.registry.aggressive_order is not None
    controller.timers.cancel_all()
    persistence.close()
