"""
offer_monitor.py

Exchange slot diffing for the flip assistant.

Design goals:
- Pure diff: (previous snapshot, current snapshot) -> events
- Never drop slot history: polling gaps degrade to CLEARED, never silence
- Missed ticks still surface the trade (OPENED followed by the fill)
- Independent per slot index; no ordering guarantee across indices
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from itertools import zip_longest
import logging
from typing import Iterable, Literal, Sequence

logger = logging.getLogger(__name__)


Side = Literal["buy", "sell", "none"]
SlotStatus = Literal["empty", "in_progress", "finished", "cancelled"]
EventKind = Literal["opened", "progress", "filled", "cancelled", "cleared"]

SLOT_COUNT = 8

_TERMINAL: frozenset[str] = frozenset({"finished", "cancelled"})


@dataclass(frozen=True)
class OrderSlot:
    index: int
    side: Side = "none"
    item_id: int = 0
    quantity_total: int = 0
    quantity_filled: int = 0
    price: int = 0
    # Amount spent (buy) or received (sell) so far, as reported by the game.
    spent: int = 0
    status: SlotStatus = "empty"

    @property
    def is_empty(self) -> bool:
        return self.status == "empty" or self.side == "none" or self.item_id <= 0

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL


@dataclass(frozen=True)
class SlotEvent:
    kind: EventKind
    slot_index: int
    side: Side
    item_id: int
    delta: int
    price: int
    quantity_filled: int
    quantity_total: int
    spent: int = 0
    timestamp: float = 0.0


def empty_slot(index: int) -> OrderSlot:
    return OrderSlot(index=index)


def empty_snapshot(count: int = SLOT_COUNT) -> tuple[OrderSlot, ...]:
    return tuple(empty_slot(i) for i in range(count))


def normalize_slot(slot: OrderSlot) -> OrderSlot:
    """
    Clamp a raw slot into a consistent shape.

    - empty slots lose any leftover item data
    - filled quantity never exceeds the order total
    - an in-progress order that has filled completely is finished
    """
    if slot.is_empty:
        if slot == empty_slot(slot.index):
            return slot
        return empty_slot(slot.index)
    total = max(0, int(slot.quantity_total))
    filled = min(max(0, int(slot.quantity_filled)), total) if total > 0 else max(0, int(slot.quantity_filled))
    status = slot.status
    if status == "in_progress" and total > 0 and filled >= total:
        status = "finished"
    if filled == slot.quantity_filled and status == slot.status and total == slot.quantity_total:
        return slot
    return replace(slot, quantity_total=total, quantity_filled=filled, status=status)


def _same_occupancy(prev: OrderSlot, cur: OrderSlot) -> bool:
    if prev.side != cur.side or prev.item_id != cur.item_id:
        return False
    if prev.quantity_total != cur.quantity_total or prev.price != cur.price:
        return False
    if cur.quantity_filled < prev.quantity_filled:
        return False
    # A finished/cancelled order cannot go back to trading; that is a new order.
    if prev.is_terminal and not cur.is_terminal:
        return False
    return True


def _event(kind: EventKind, slot: OrderSlot, delta: int, now: float) -> SlotEvent:
    return SlotEvent(
        kind=kind,
        slot_index=slot.index,
        side=slot.side,
        item_id=slot.item_id,
        delta=max(0, int(delta)),
        price=slot.price,
        quantity_filled=slot.quantity_filled,
        quantity_total=slot.quantity_total,
        spent=slot.spent,
        timestamp=now,
    )


def _progress_events(prev: OrderSlot, cur: OrderSlot, now: float) -> list[SlotEvent]:
    """Events between two observations of the same occupancy."""
    if prev.is_terminal:
        return []
    delta = cur.quantity_filled - prev.quantity_filled
    if cur.status == "finished":
        return [_event("filled", cur, delta, now)]
    if cur.status == "cancelled":
        return [_event("cancelled", cur, delta, now)]
    if delta > 0:
        return [_event("progress", cur, delta, now)]
    return []


def _opened_events(cur: OrderSlot, now: float) -> list[SlotEvent]:
    """OPENED for a fresh occupancy, plus whatever happened before we saw it."""
    fresh = replace(cur, quantity_filled=0, spent=0, status="in_progress")
    events = [_event("opened", fresh, 0, now)]
    events.extend(_progress_events(fresh, cur, now))
    return events


def observe_slot(previous: OrderSlot | None, current: OrderSlot | None, now: float = 0.0) -> list[SlotEvent]:
    """
    Diff one slot index.  Pure: identical inputs always give identical output.
    """
    if previous is None and current is None:
        return []
    if previous is None:
        previous = empty_slot(current.index)
    if current is None:
        current = empty_slot(previous.index)
    prev = normalize_slot(previous)
    cur = normalize_slot(current)

    if prev.is_empty:
        if cur.is_empty:
            return []
        return _opened_events(cur, now)

    if cur.is_empty:
        if prev.is_terminal:
            # Normal collection of a finished/cancelled order.
            return []
        return [_event("cleared", prev, 0, now)]

    if _same_occupancy(prev, cur):
        return _progress_events(prev, cur, now)

    # Slot reused between observations: close out the old content first.
    events: list[SlotEvent] = []
    if not prev.is_terminal:
        events.append(_event("cleared", prev, 0, now))
    events.extend(_opened_events(cur, now))
    return events


def observe(
    previous: Sequence[OrderSlot],
    current: Sequence[OrderSlot],
    now: float = 0.0,
) -> list[SlotEvent]:
    """
    Diff two full slot snapshots into lifecycle events.

    Slots are paired by position; a missing position is treated as empty.
    """
    events: list[SlotEvent] = []
    for prev, cur in zip_longest(previous, current):
        events.extend(observe_slot(prev, cur, now))
    return events


def coerce_snapshot(slots: Iterable[OrderSlot | dict], count: int = SLOT_COUNT) -> tuple[OrderSlot, ...]:
    """
    Build a fixed-length snapshot from slots or plain dicts (replay files).

    Slots are placed by their own index; unknown positions stay empty.
    """
    out = list(empty_snapshot(count))
    for raw in slots:
        if isinstance(raw, dict):
            slot = OrderSlot(
                index=int(raw.get("index", 0)),
                side=str(raw.get("side") or "none").lower(),
                item_id=int(raw.get("item_id", 0) or 0),
                quantity_total=int(raw.get("quantity_total", 0) or 0),
                quantity_filled=int(raw.get("quantity_filled", 0) or 0),
                price=int(raw.get("price", 0) or 0),
                spent=int(raw.get("spent", 0) or 0),
                status=str(raw.get("status") or "empty").lower(),
            )
        else:
            slot = raw
        if not 0 <= slot.index < count:
            logger.warning("Ignoring slot with out-of-range index %s", slot.index)
            continue
        out[slot.index] = slot
    return tuple(out)


class OfferMonitor:
    """Keeps the previous snapshot so callers can feed snapshots one at a time."""

    def __init__(self, slot_count: int = SLOT_COUNT) -> None:
        self.slot_count = int(slot_count)
        self._previous: tuple[OrderSlot, ...] = empty_snapshot(self.slot_count)

    @property
    def previous(self) -> tuple[OrderSlot, ...]:
        return self._previous

    def update(self, snapshot: Sequence[OrderSlot], now: float = 0.0) -> list[SlotEvent]:
        current = coerce_snapshot(snapshot, self.slot_count)
        events = observe(self._previous, current, now)
        self._previous = current
        for ev in events:
            logger.debug(
                "slot %d %s %s item=%d delta=%d filled=%d/%d",
                ev.slot_index, ev.kind, ev.side, ev.item_id, ev.delta, ev.quantity_filled, ev.quantity_total,
            )
        return events

    def reset(self, snapshot: Sequence[OrderSlot] | None = None) -> None:
        """Forget history, optionally seeding a baseline that produces no events."""
        if snapshot is None:
            self._previous = empty_snapshot(self.slot_count)
        else:
            self._previous = coerce_snapshot(snapshot, self.slot_count)
