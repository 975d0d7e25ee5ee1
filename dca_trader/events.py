"""Wire boundary: validate raw OKX payloads and convert them to domain events.

Raw WebSocket and REST payloads are validated with pydantic models and turned
into a small closed set of frozen dataclasses. Nothing downstream of this
module looks at OKX field names.

Account events:
    OrderAccepted   order is live on the book (informational)
    BuyFilled       a buy order filled completely
    SellFilled      a sell order filled completely
    OrderCancelled  an order left the book without filling

Market events:
    PriceTick       last trade price for the pair
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .position import Order, OrderSide

FILLED_STATES = frozenset({"filled"})
CANCELLED_STATES = frozenset({"canceled", "cancelled", "mmp_canceled"})
LIVE_STATES = frozenset({"live"})


@dataclass(frozen=True)
class OrderAccepted:
    order_id: str
    side: OrderSide
    ts_ms: int = 0


@dataclass(frozen=True)
class BuyFilled:
    order_id: str
    price: Decimal
    size: Decimal
    ts_ms: int = 0


@dataclass(frozen=True)
class SellFilled:
    order_id: str
    price: Decimal
    size: Decimal
    ts_ms: int = 0


@dataclass(frozen=True)
class OrderCancelled:
    order_id: str
    side: OrderSide
    ts_ms: int = 0


@dataclass(frozen=True)
class PriceTick:
    price: Decimal
    ts_ms: int = 0


AccountEvent = Union[OrderAccepted, BuyFilled, SellFilled, OrderCancelled]


@dataclass(frozen=True)
class Fill:
    """One execution from the fill history endpoint."""
    order_id: str
    side: OrderSide
    price: Decimal
    size: Decimal
    ts_ms: int
    trade_id: Optional[str] = None


def fill_event(order_id: str, side: OrderSide, price: Decimal, size: Decimal, ts_ms: int = 0):
    """Build the BuyFilled/SellFilled variant for a side."""
    if side is OrderSide.BUY:
        return BuyFilled(order_id=order_id, price=price, size=size, ts_ms=ts_ms)
    return SellFilled(order_id=order_id, price=price, size=size, ts_ms=ts_ms)


class _OkxModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        # OKX sends "" for numeric fields that do not apply yet
        if v == "":
            return None
        return v


class OkxOrderUpdate(_OkxModel):
    """Entry of the private ``orders`` channel."""
    ord_id: str = Field(alias="ordId")
    cl_ord_id: Optional[str] = Field(default=None, alias="clOrdId")
    inst_id: str = Field(alias="instId")
    side: OrderSide
    state: str
    px: Optional[Decimal] = None
    sz: Optional[Decimal] = None
    fill_px: Optional[Decimal] = Field(default=None, alias="fillPx")
    fill_sz: Optional[Decimal] = Field(default=None, alias="fillSz")
    avg_px: Optional[Decimal] = Field(default=None, alias="avgPx")
    acc_fill_sz: Optional[Decimal] = Field(default=None, alias="accFillSz")
    u_time: Optional[int] = Field(default=None, alias="uTime")

    def to_event(self) -> Optional[AccountEvent]:
        ts = self.u_time or 0
        if self.state in FILLED_STATES:
            # a complete fill: prefer the order-level average over the last execution
            price = self.avg_px if self.avg_px else self.fill_px
            size = self.acc_fill_sz if self.acc_fill_sz else self.fill_sz
            if not price or not size:
                return None
            return fill_event(self.ord_id, self.side, price, size, ts)
        if self.state in CANCELLED_STATES:
            return OrderCancelled(order_id=self.ord_id, side=self.side, ts_ms=ts)
        if self.state in LIVE_STATES:
            return OrderAccepted(order_id=self.ord_id, side=self.side, ts_ms=ts)
        return None


class OkxFill(_OkxModel):
    """Entry of ``GET /api/v5/trade/fills``."""
    ord_id: str = Field(alias="ordId")
    inst_id: str = Field(alias="instId")
    side: OrderSide
    fill_px: Decimal = Field(alias="fillPx")
    fill_sz: Decimal = Field(alias="fillSz")
    ts: int
    trade_id: Optional[str] = Field(default=None, alias="tradeId")

    def to_fill(self) -> Fill:
        return Fill(
            order_id=self.ord_id,
            side=self.side,
            price=self.fill_px,
            size=self.fill_sz,
            ts_ms=self.ts,
            trade_id=self.trade_id,
        )


class OkxPendingOrder(_OkxModel):
    """Entry of ``GET /api/v5/trade/orders-pending``."""
    ord_id: str = Field(alias="ordId")
    cl_ord_id: Optional[str] = Field(default=None, alias="clOrdId")
    inst_id: str = Field(alias="instId")
    side: OrderSide
    px: Optional[Decimal] = None
    sz: Decimal

    def to_order(self) -> Order:
        return Order(
            order_id=self.ord_id,
            side=self.side,
            price=self.px or Decimal("0"),
            size=self.sz,
            client_id=self.cl_ord_id,
        )


class OkxTicker(_OkxModel):
    inst_id: str = Field(alias="instId")
    last: Decimal
    ts: Optional[int] = None


class OkxInstrument(_OkxModel):
    inst_id: str = Field(alias="instId")
    tick_sz: Decimal = Field(alias="tickSz")
    lot_sz: Decimal = Field(alias="lotSz")
    min_sz: Decimal = Field(default=Decimal("0"), alias="minSz")


def parse_order_update(raw: Dict[str, Any], inst_id: str) -> Optional[AccountEvent]:
    """Convert one ``orders`` channel entry; other instruments yield None.

    Raises:
        pydantic.ValidationError: If the payload is malformed
    """
    update = OkxOrderUpdate.model_validate(raw)
    if update.inst_id != inst_id:
        return None
    return update.to_event()


def parse_ticker(raw: Dict[str, Any], inst_id: str) -> Optional[PriceTick]:
    ticker = OkxTicker.model_validate(raw)
    if ticker.inst_id != inst_id:
        return None
    return PriceTick(price=ticker.last, ts_ms=ticker.ts or 0)
