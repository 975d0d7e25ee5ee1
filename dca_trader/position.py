"""
Position registry: the authoritative in-memory record of the bot's orders.

The registry holds three kinds of slots plus two scalars:

    sell_slots       open profit-taking sells, keyed by sell order id, each
                     remembering the buy fill it was derived from
    dca_order        at most one averaging-down buy below the last fill
    aggressive_order at most one "buy near market" order
    realized_profit  sum of (sell fill - linked buy price) * size
    last_price       most recent market tick

The cycle phase is derived from the sell slots rather than stored, so the
rule "AGGRESSIVE_BUYING iff no sell slot is outstanding" cannot drift.

Examples:
    >>> from decimal import Decimal
    >>> reg = PositionRegistry()
    >>> reg.phase
    <CyclePhase.AGGRESSIVE_BUYING: 'aggressive_buying'>
    >>> sell = Order("s1", OrderSide.SELL, Decimal("100.2"), Decimal("1"))
    >>> reg.add_sell_slot(SellSlot(order=sell, buy_price=Decimal("100"), buy_order_id="b1"))
    >>> reg.phase
    <CyclePhase.HOLDING: 'holding'>
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderSide(Enum):
    """Order side as used on the wire."""

    BUY = "buy"
    SELL = "sell"


class CyclePhase(Enum):
    """Top-level state of the trading cycle."""

    AGGRESSIVE_BUYING = "aggressive_buying"  # no open position; trying to acquire
    HOLDING = "holding"  # at least one sell slot awaiting exit


class SlotKind(Enum):
    """Which registry slot an order id belongs to."""

    AGGRESSIVE = "aggressive"
    DCA = "dca"
    SELL = "sell"


@dataclass
class Order:
    """A single exchange order.

    Attributes:
        order_id: Exchange-assigned order ID
        side: BUY or SELL
        price: Limit price after tick rounding
        size: Order size after lot rounding
        client_id: Client-assigned order ID, if any
    """

    order_id: str
    side: OrderSide
    price: Decimal
    size: Decimal
    client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "price": str(self.price),
            "size": str(self.size),
            "client_id": self.client_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Order":
        return Order(
            order_id=d["order_id"],
            side=OrderSide(d["side"]),
            price=Decimal(d["price"]),
            size=Decimal(d["size"]),
            client_id=d.get("client_id"),
        )


@dataclass
class SellSlot:
    """An open profit sell and the buy fill it exits.

    Invariant: buy_price < order.price at creation time.
    """

    order: Order
    buy_price: Decimal
    buy_order_id: str

    @property
    def order_id(self) -> str:
        return self.order.order_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "buy_price": str(self.buy_price),
            "buy_order_id": self.buy_order_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SellSlot":
        return SellSlot(
            order=Order.from_dict(d["order"]),
            buy_price=Decimal(d["buy_price"]),
            buy_order_id=d["buy_order_id"],
        )


@dataclass
class PositionRegistry:
    """Sell slots, averaging-down slot, aggressive slot, profit and last price.

    This is a state container; the cycle controller is its only writer and
    is responsible for persistence and exchange side effects.
    """

    sell_slots: Dict[str, SellSlot] = field(default_factory=dict)
    dca_order: Optional[Order] = None
    aggressive_order: Optional[Order] = None
    realized_profit: Decimal = Decimal("0")
    last_price: Optional[Decimal] = None

    @property
    def phase(self) -> CyclePhase:
        if self.sell_slots:
            return CyclePhase.HOLDING
        return CyclePhase.AGGRESSIVE_BUYING

    def add_sell_slot(self, slot: SellSlot) -> None:
        if slot.buy_price >= slot.order.price:
            raise ValueError(
                f"Sell price {slot.order.price} must exceed buy price {slot.buy_price}"
            )
        self.sell_slots[slot.order_id] = slot

    def references_buy(self, buy_order_id: str) -> bool:
        """True if some sell slot was derived from this buy order."""
        return any(s.buy_order_id == buy_order_id for s in self.sell_slots.values())

    def slot_of(self, order_id: str) -> Optional[SlotKind]:
        if self.aggressive_order is not None and self.aggressive_order.order_id == order_id:
            return SlotKind.AGGRESSIVE
        if self.dca_order is not None and self.dca_order.order_id == order_id:
            return SlotKind.DCA
        if order_id in self.sell_slots:
            return SlotKind.SELL
        return None

    def tracked_order_ids(self) -> List[str]:
        ids = list(self.sell_slots)
        if self.dca_order is not None:
            ids.append(self.dca_order.order_id)
        if self.aggressive_order is not None:
            ids.append(self.aggressive_order.order_id)
        return ids

    def clear_orders(self) -> None:
        """Forget every tracked order; profit and last price are kept."""
        self.sell_slots.clear()
        self.dca_order = None
        self.aggressive_order = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence; Decimals become strings."""
        return {
            "sell_slots": [slot.to_dict() for slot in self.sell_slots.values()],
            "dca_order": self.dca_order.to_dict() if self.dca_order else None,
            "aggressive_order": (
                self.aggressive_order.to_dict() if self.aggressive_order else None
            ),
            "realized_profit": str(self.realized_profit),
            "last_price": str(self.last_price) if self.last_price is not None else None,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PositionRegistry":
        """Inverse of to_dict.

        Raises:
            KeyError: If a nested order is missing required keys
            decimal.InvalidOperation: If values cannot be converted to Decimal
        """
        slots = [SellSlot.from_dict(s) for s in d.get("sell_slots", [])]
        return PositionRegistry(
            sell_slots={s.order_id: s for s in slots},
            dca_order=Order.from_dict(d["dca_order"]) if d.get("dca_order") else None,
            aggressive_order=(
                Order.from_dict(d["aggressive_order"]) if d.get("aggressive_order") else None
            ),
            realized_profit=Decimal(d.get("realized_profit") or "0"),
            last_price=Decimal(d["last_price"]) if d.get("last_price") is not None else None,
        )
