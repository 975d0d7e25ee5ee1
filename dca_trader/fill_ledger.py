"""
Bounded records of order ids the controller has already acted on.

FillLedger answers "has this order's fill been applied?" so a fill seen twice
(live and again during reconciliation, or replayed twice) is a no-op.
RecentOrderIds remembers ids placed or cancelled recently so reconciliation
can tell its own fresh orders from orphans.

Both evict oldest-first once ``max_size`` ids are held; single-threaded
asyncio use only, no internal locks.
"""
from collections import OrderedDict
from typing import Iterable, Set


class RecentOrderIds:
    """Insertion-ordered set with FIFO eviction."""

    def __init__(self, max_size: int = 10000) -> None:
        self.max_size = max_size
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, order_id: str) -> None:
        self._ids[order_id] = None
        self._ids.move_to_end(order_id)
        while len(self._ids) > self.max_size:
            self._ids.popitem(last=False)

    def update(self, order_ids: Iterable[str]) -> None:
        for order_id in order_ids:
            self.add(order_id)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def snapshot(self) -> Set[str]:
        return set(self._ids)

    def since(self, before: Set[str]) -> Set[str]:
        """Ids added since ``before`` was taken with snapshot()."""
        return set(self._ids) - before


class FillLedger(RecentOrderIds):
    """Order ids whose fill has been applied to the registry."""

    def is_applied(self, order_id: str) -> bool:
        return order_id in self

    def mark_applied(self, order_id: str) -> bool:
        """Record an applied fill; False if it was already recorded."""
        if order_id in self:
            return False
        self.add(order_id)
        return True
