"""
flip_ledger.py

Flip lifecycle core for the Exchange flip assistant.

Design goals:
- Pure reducer transitions: (state, event) -> (next_state, actions)
- RECOMMENDED -> PENDING_BUY -> ACTIVE -> PENDING_SELL -> COMPLETED
- Slot links are an index keyed by (slot, side), never embedded in a Flip
- Exactly-once ingestion: per-link watermarks of what was already applied
- Every anomaly resolves to a safe state and is reported, never raised
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import logging
import math
import time
from typing import Any, Callable, Iterable, Literal, Sequence

from offer_monitor import OrderSlot, Side, SlotEvent, normalize_slot

logger = logging.getLogger(__name__)


FlipStatus = Literal["recommended", "pending_buy", "active", "pending_sell", "completed", "dismissed"]
AnomalyKind = Literal["ambiguous_match", "reconciliation_gap", "stale_link"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "dismissed"})
ANOMALY_KINDS: tuple[str, ...] = ("ambiguous_match", "reconciliation_gap", "stale_link")


@dataclass(frozen=True)
class LedgerConfig:
    tax_rate: float = 0.02
    # Exchange tax per item sold never exceeds this; 0 disables the cap.
    tax_cap_per_item: int = 5_000_000


@dataclass(frozen=True)
class Recommendation:
    item_id: int
    buy_price: int
    sell_price: int
    quantity_limit: int
    liquidity_score: float = 0.0
    risk_score: float = 0.0
    style: str = "balanced"
    item_name: str = ""


@dataclass(frozen=True)
class Flip:
    flip_id: int
    item_id: int
    status: FlipStatus
    item_name: str = ""
    recommended_buy_price: int | None = None
    recommended_sell_price: int | None = None
    quantity_limit: int | None = None
    # Observed offer price of the buy; the implied price for organic flips.
    buy_price: int = 0
    # Order size of the first linked buy; lets a resubmitted partial buy resume.
    buy_target: int = 0
    quantity_bought: int = 0
    quantity_sold: int = 0
    gross_spent: int = 0
    gross_received: int = 0
    tax_paid: int = 0
    realized_profit: int | None = None
    created_at: float = 0.0
    bought_at: float | None = None
    sold_at: float | None = None
    organic: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def held_quantity(self) -> int:
        return max(0, self.quantity_bought - self.quantity_sold)

    @property
    def implied_buy_price(self) -> int:
        if self.recommended_buy_price is not None:
            return self.recommended_buy_price
        return self.buy_price

    @property
    def average_buy_price(self) -> float:
        if self.quantity_bought <= 0:
            return float(self.implied_buy_price)
        return self.gross_spent / self.quantity_bought


@dataclass(frozen=True)
class SlotLink:
    slot_index: int
    side: Side
    flip_id: int
    item_id: int
    prior_status: FlipStatus | None
    quantity_total: int
    price: int
    applied_filled: int = 0
    applied_spent: int = 0
    linked_at: float = 0.0
    # Timestamp of the OPENED observation that started this occupancy.
    opened_at: float = 0.0


@dataclass(frozen=True)
class SettledSlot:
    slot_index: int
    side: Side
    item_id: int
    quantity_total: int
    price: int
    applied_filled: int
    applied_spent: int
    opened_at: float = 0.0


@dataclass(frozen=True)
class LedgerState:
    flips: tuple[Flip, ...] = ()
    links: tuple[SlotLink, ...] = ()
    settled: tuple[SettledSlot, ...] = ()
    next_flip_id: int = 1
    now: float = 0.0


# --------------------------- Events ---------------------------


@dataclass(frozen=True)
class RecommendationAccepted:
    recommendation: Recommendation
    timestamp: float


@dataclass(frozen=True)
class FlipDismissed:
    flip_id: int
    timestamp: float


Event = SlotEvent | RecommendationAccepted | FlipDismissed


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class FlipChange:
    flip_id: int
    item_id: int
    old_status: FlipStatus | None
    new_status: FlipStatus
    quantity_bought: int
    quantity_sold: int
    gross_spent: int
    gross_received: int
    tax_paid: int
    realized_profit: int | None
    reason: str = ""
    slot_index: int | None = None


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    slot_index: int
    item_id: int
    flip_id: int | None = None
    detail: str = ""


Action = FlipChange | Anomaly


# --------------------------- Helpers ---------------------------


def tax_for(gross: int, rate: float, quantity: int = 0, cap_per_item: int = 0) -> int:
    """Tax owed on one sale increment, floored to whole gp and capped per item."""
    if gross <= 0 or rate <= 0:
        return 0
    tax = int(math.floor(round(gross * rate, 6)))
    if cap_per_item > 0 and quantity > 0:
        tax = min(tax, cap_per_item * quantity)
    return tax


def _change(old: Flip | None, new: Flip, reason: str, slot_index: int | None = None) -> FlipChange:
    return FlipChange(
        flip_id=new.flip_id,
        item_id=new.item_id,
        old_status=old.status if old is not None else None,
        new_status=new.status,
        quantity_bought=new.quantity_bought,
        quantity_sold=new.quantity_sold,
        gross_spent=new.gross_spent,
        gross_received=new.gross_received,
        tax_paid=new.tax_paid,
        realized_profit=new.realized_profit,
        reason=reason,
        slot_index=slot_index,
    )


def _find_flip(state: LedgerState, flip_id: int) -> Flip | None:
    for f in state.flips:
        if f.flip_id == flip_id:
            return f
    return None


def _put_flip(state: LedgerState, flip: Flip) -> LedgerState:
    patched = []
    found = False
    for f in state.flips:
        if f.flip_id == flip.flip_id:
            patched.append(flip)
            found = True
        else:
            patched.append(f)
    if not found:
        patched.append(flip)
    return replace(state, flips=tuple(patched))


def _find_link(state: LedgerState, slot_index: int, side: Side) -> SlotLink | None:
    for link in state.links:
        if link.slot_index == slot_index and link.side == side:
            return link
    return None


def _links_for_flip(state: LedgerState, flip_id: int) -> list[SlotLink]:
    return [link for link in state.links if link.flip_id == flip_id]


def _is_linked(state: LedgerState, flip_id: int) -> bool:
    return any(link.flip_id == flip_id for link in state.links)


def _put_link(state: LedgerState, link: SlotLink) -> LedgerState:
    others = tuple(
        l for l in state.links if not (l.slot_index == link.slot_index and l.side == link.side)
    )
    return replace(state, links=others + (link,))


def _remove_link(state: LedgerState, link: SlotLink) -> LedgerState:
    return replace(
        state,
        links=tuple(l for l in state.links if not (l.slot_index == link.slot_index and l.side == link.side)),
    )


def _find_settled(state: LedgerState, slot_index: int) -> SettledSlot | None:
    for s in state.settled:
        if s.slot_index == slot_index:
            return s
    return None


def _clear_settled(state: LedgerState, slot_index: int) -> LedgerState:
    if _find_settled(state, slot_index) is None:
        return state
    return replace(state, settled=tuple(s for s in state.settled if s.slot_index != slot_index))


def _settle(state: LedgerState, link: SlotLink, *, applied_filled: int | None = None) -> LedgerState:
    """Remember a finished occupancy so re-delivered events for it are ignored."""
    rec = SettledSlot(
        slot_index=link.slot_index,
        side=link.side,
        item_id=link.item_id,
        quantity_total=link.quantity_total,
        price=link.price,
        applied_filled=link.applied_filled if applied_filled is None else applied_filled,
        applied_spent=link.applied_spent,
        opened_at=link.opened_at,
    )
    st = _clear_settled(state, link.slot_index)
    return replace(st, settled=st.settled + (rec,))


def _link_matches(link: SlotLink | SettledSlot, event: SlotEvent) -> bool:
    return (
        link.side == event.side
        and link.item_id == event.item_id
        and link.quantity_total == event.quantity_total
        and link.price == event.price
    )


def _is_settled_replay(state: LedgerState, event: SlotEvent) -> bool:
    """
    True when an OPENED repeats the occupancy already settled on its slot.

    Every event from one snapshot diff carries that diff's timestamp, so the
    OPENED timestamp identifies the occupancy; an identical order placed
    later is observed at a later time.
    """
    settled = _find_settled(state, event.slot_index)
    if settled is None or not _link_matches(settled, event):
        return False
    return settled.opened_at == event.timestamp


def _status_after_occupancy(flip: Flip, link: SlotLink) -> FlipStatus:
    """Status a flip settles into once its linked order stops trading."""
    if link.side == "buy":
        if link.applied_filled > 0:
            return "active"
        if link.prior_status is not None:
            return link.prior_status
        return "active" if flip.quantity_bought > 0 else "dismissed"
    if flip.quantity_bought > 0 and flip.quantity_sold >= flip.quantity_bought:
        return "completed"
    return "active"


def _finish_flip(flip: Flip, status: FlipStatus, now: float) -> Flip:
    out = replace(flip, status=status)
    if status == "active" and out.bought_at is None and out.quantity_bought > 0:
        out = replace(out, bought_at=now)
    if status == "completed":
        out = replace(
            out,
            realized_profit=out.gross_received - out.gross_spent - out.tax_paid,
            sold_at=out.sold_at if out.sold_at is not None else now,
        )
    return out


def _end_occupancy(
    state: LedgerState,
    link: SlotLink,
    reason: str,
    *,
    suppress_rest: bool = False,
) -> tuple[LedgerState, list[Action]]:
    """Unlink a slot whose order stopped trading and settle the flip's status."""
    st = _remove_link(state, link)
    st = _settle(st, link, applied_filled=link.quantity_total if suppress_rest else None)
    flip = _find_flip(st, link.flip_id)
    if flip is None or flip.is_terminal:
        return st, []
    new_status = _status_after_occupancy(flip, link)
    updated = _finish_flip(flip, new_status, st.now)
    if updated == flip:
        return st, []
    st = _put_flip(st, updated)
    return st, [_change(flip, updated, reason, link.slot_index)]


# --------------------------- Matching ---------------------------


def _pick_buy_candidate(state: LedgerState, item_id: int) -> tuple[Flip | None, int]:
    """
    Buy matching policy.

    1. most recently created unlinked RECOMMENDED flip for the item
    2. oldest unlinked ACTIVE flip whose buy stopped short of its order size
    Returns (flip, number of equally eligible candidates).
    """
    recs = [
        f for f in state.flips
        if f.status == "recommended" and f.item_id == item_id and not _is_linked(state, f.flip_id)
    ]
    if recs:
        return max(recs, key=lambda f: (f.created_at, f.flip_id)), len(recs)
    resumable = [
        f for f in state.flips
        if f.status == "active"
        and f.item_id == item_id
        and f.quantity_sold == 0
        and 0 < f.quantity_bought < f.buy_target
        and not _is_linked(state, f.flip_id)
    ]
    if resumable:
        return min(resumable, key=lambda f: (f.created_at, f.flip_id)), len(resumable)
    return None, 0


def _pick_sell_candidate(state: LedgerState, item_id: int) -> tuple[Flip | None, int]:
    """Oldest unlinked ACTIVE flip holding the item (first in, first out)."""
    held = [
        f for f in state.flips
        if f.status == "active"
        and f.item_id == item_id
        and f.held_quantity > 0
        and not _is_linked(state, f.flip_id)
    ]
    if not held:
        return None, 0
    oldest = min(
        held,
        key=lambda f: (f.bought_at if f.bought_at is not None else f.created_at, f.created_at, f.flip_id),
    )
    return oldest, len(held)


def _link_slot(
    state: LedgerState,
    event: SlotEvent,
    *,
    base_filled: int = 0,
    base_spent: int = 0,
    opened_at: float | None = None,
) -> tuple[LedgerState, SlotLink | None, list[Action]]:
    """Match the event's slot to a flip (creating an organic one for buys) and link it."""
    actions: list[Action] = []
    st = state

    if event.side == "buy":
        flip, n_candidates = _pick_buy_candidate(st, event.item_id)
    else:
        flip, n_candidates = _pick_sell_candidate(st, event.item_id)

    if n_candidates > 1 and flip is not None:
        actions.append(
            Anomaly(
                kind="ambiguous_match",
                slot_index=event.slot_index,
                item_id=event.item_id,
                flip_id=flip.flip_id,
                detail=f"{n_candidates} eligible {event.side} candidates",
            )
        )

    if flip is None and event.side == "sell":
        return st, None, actions

    if flip is None:
        flip_id = st.next_flip_id
        created = Flip(
            flip_id=flip_id,
            item_id=event.item_id,
            status="pending_buy",
            buy_price=event.price,
            buy_target=event.quantity_total,
            created_at=st.now,
            organic=True,
        )
        st = replace(st, next_flip_id=flip_id + 1)
        st = _put_flip(st, created)
        actions.append(_change(None, created, "organic_buy", event.slot_index))
        prior: FlipStatus | None = None
        flip = created
    else:
        prior = flip.status
        if event.side == "buy":
            status: FlipStatus = "active" if flip.status == "active" else "pending_buy"
            updated = replace(
                flip,
                status=status,
                buy_price=event.price,
                buy_target=flip.buy_target if flip.buy_target > 0 else event.quantity_total,
            )
            reason = "buy_resumed" if status == "active" else "buy_placed"
        else:
            updated = replace(flip, status="pending_sell")
            reason = "sell_placed"
        st = _put_flip(st, updated)
        actions.append(_change(flip, updated, reason, event.slot_index))
        flip = updated

    link = SlotLink(
        slot_index=event.slot_index,
        side=event.side,
        flip_id=flip.flip_id,
        item_id=event.item_id,
        prior_status=prior,
        quantity_total=event.quantity_total,
        price=event.price,
        applied_filled=base_filled,
        applied_spent=base_spent,
        linked_at=st.now,
        opened_at=event.timestamp if opened_at is None else opened_at,
    )
    st = _put_link(st, link)
    st = _clear_settled(st, event.slot_index)
    return st, link, actions


def _drop_stale_links(state: LedgerState, event: SlotEvent) -> tuple[LedgerState, list[Action]]:
    """Unlink any link on the event's slot that describes a different order."""
    actions: list[Action] = []
    st = state
    for link in [l for l in st.links if l.slot_index == event.slot_index]:
        if _link_matches(link, event):
            continue
        st, changes = _end_occupancy(st, link, "stale_link")
        actions.append(
            Anomaly(
                kind="stale_link",
                slot_index=link.slot_index,
                item_id=link.item_id,
                flip_id=link.flip_id,
                detail=f"slot now reports {event.side} item {event.item_id}",
            )
        )
        actions.extend(changes)
    return st, actions


# --------------------------- Fill accounting ---------------------------


def _increments(link: SlotLink, event: SlotEvent) -> tuple[int, int]:
    filled_inc = max(0, event.quantity_filled - link.applied_filled)
    if event.spent > 0:
        amount_inc = max(0, event.spent - link.applied_spent)
    else:
        amount_inc = filled_inc * event.price
    return filled_inc, amount_inc


def _apply_buy(
    state: LedgerState,
    flip: Flip,
    link: SlotLink,
    event: SlotEvent,
) -> tuple[LedgerState, list[Action]]:
    filled_inc, amount_inc = _increments(link, event)
    link = replace(
        link,
        applied_filled=link.applied_filled + filled_inc,
        applied_spent=link.applied_spent + amount_inc,
    )
    updated = replace(
        flip,
        quantity_bought=flip.quantity_bought + filled_inc,
        gross_spent=flip.gross_spent + amount_inc,
    )
    st = _put_flip(state, updated)

    if event.kind == "progress":
        st = _put_link(st, link)
        if updated == flip:
            return st, []
        return st, [_change(flip, updated, "buy_progress", event.slot_index)]

    # filled / cancelled / cleared
    st = _put_link(st, link)
    reason = {"filled": "bought", "cancelled": "buy_cancelled", "cleared": "buy_cleared"}[event.kind]
    st, changes = _end_occupancy(st, link, reason)
    if not changes and updated != flip:
        changes = [_change(flip, updated, reason, event.slot_index)]
    elif changes:
        # Report against the pre-event flip so totals and status move together.
        last = changes[-1]
        changes = [replace(last, old_status=flip.status)]
    return st, changes


def _apply_sell(
    state: LedgerState,
    flip: Flip,
    link: SlotLink,
    event: SlotEvent,
    cfg: LedgerConfig,
) -> tuple[LedgerState, list[Action], bool]:
    """Returns (state, actions, overflow) where overflow means fills remain for another flip."""
    filled_inc, amount_inc = _increments(link, event)
    take = min(filled_inc, flip.held_quantity)
    if take < filled_inc:
        amount_take = amount_inc * take // filled_inc if filled_inc > 0 else 0
        logger.warning(
            "Sell on slot %d outran flip #%d holdings (%d filled, %d held)",
            event.slot_index, flip.flip_id, filled_inc, flip.held_quantity,
        )
    else:
        amount_take = amount_inc
    overflow = take < filled_inc

    link = replace(
        link,
        applied_filled=link.applied_filled + take,
        applied_spent=link.applied_spent + amount_take,
    )
    updated = replace(
        flip,
        quantity_sold=flip.quantity_sold + take,
        gross_received=flip.gross_received + amount_take,
        tax_paid=flip.tax_paid + tax_for(amount_take, cfg.tax_rate, take, cfg.tax_cap_per_item),
        sold_at=state.now if take > 0 else flip.sold_at,
    )
    st = _put_flip(state, updated)
    st = _put_link(st, link)

    sold_out = updated.quantity_bought > 0 and updated.quantity_sold >= updated.quantity_bought
    if event.kind == "progress" and not sold_out:
        if updated == flip:
            return st, [], False
        return st, [_change(flip, updated, "sell_progress", event.slot_index)], False

    if sold_out:
        reason = "sold"
    else:
        reason = {"filled": "sell_filled", "cancelled": "sell_cancelled", "cleared": "sell_cleared"}.get(
            event.kind, "sell_progress"
        )
    st, changes = _end_occupancy(st, link, reason)
    if changes:
        changes = [replace(changes[-1], old_status=flip.status)]
    elif updated != flip:
        changes = [_change(flip, updated, reason, event.slot_index)]
    return st, changes, overflow


def _late_link(state: LedgerState, event: SlotEvent) -> tuple[LedgerState, SlotLink | None, list[Action]]:
    """
    Link a slot whose OPENED was never applied.

    Events repeating a settled occupancy are ignored; fills past the settled
    watermark (a sell that outran its flip) go to the next eligible flip.
    """
    base_filled = 0
    base_spent = 0
    opened_at = None
    settled = _find_settled(state, event.slot_index)
    if settled is not None and _link_matches(settled, event):
        if event.quantity_filled <= settled.applied_filled:
            logger.debug("Ignoring replayed %s on settled slot %d", event.kind, event.slot_index)
            return state, None, []
        base_filled = settled.applied_filled
        base_spent = settled.applied_spent
        opened_at = settled.opened_at
    elif event.kind in ("cancelled", "cleared") and event.quantity_filled <= 0:
        return state, None, []

    st, link, actions = _link_slot(
        state, event, base_filled=base_filled, base_spent=base_spent, opened_at=opened_at,
    )
    if link is None:
        logger.info(
            "No tracked flip for %s of item %d on slot %d",
            event.side, event.item_id, event.slot_index,
        )
    else:
        logger.info("Late link: slot %d %s -> flip #%d", event.slot_index, event.side, link.flip_id)
    return st, link, actions


def _apply_slot_event(state: LedgerState, event: SlotEvent, cfg: LedgerConfig) -> tuple[LedgerState, list[Action]]:
    actions: list[Action] = []
    st = replace(state, now=event.timestamp if event.timestamp else state.now)

    if event.side not in ("buy", "sell") or event.item_id <= 0:
        return st, actions

    st, stale = _drop_stale_links(st, event)
    actions.extend(stale)

    if event.kind == "opened":
        if _find_link(st, event.slot_index, event.side) is not None:
            # Same order re-announced; already linked.
            return st, actions
        if _is_settled_replay(st, event):
            logger.debug("Ignoring replayed opened on settled slot %d", event.slot_index)
            return st, actions
        st = _clear_settled(st, event.slot_index)
        st, linked, a = _link_slot(st, event)
        actions.extend(a)
        if linked is None:
            logger.info(
                "Untracked %s of item %d on slot %d", event.side, event.item_id, event.slot_index,
            )
        return st, actions

    if event.kind == "cleared":
        link = _find_link(st, event.slot_index, event.side)
        if link is not None:
            actions.append(
                Anomaly(
                    kind="reconciliation_gap",
                    slot_index=event.slot_index,
                    item_id=event.item_id,
                    flip_id=link.flip_id,
                    detail=f"slot emptied at {event.quantity_filled}/{event.quantity_total} without a terminal state",
                )
            )

    # Bounded by the number of flips: each overflow pass consumes one flip.
    for _ in range(len(st.flips) + 1):
        link = _find_link(st, event.slot_index, event.side)
        if link is None:
            st, link, a = _late_link(st, event)
            actions.extend(a)
            if link is None:
                return st, actions

        flip = _find_flip(st, link.flip_id)
        if flip is None or flip.is_terminal:
            st = _remove_link(st, link)
            st = _settle(st, link, applied_filled=link.quantity_total)
            return st, actions

        if event.side == "buy":
            st, a = _apply_buy(st, flip, link, event)
            actions.extend(a)
            return st, actions

        st, a, overflow = _apply_sell(st, flip, link, event, cfg)
        actions.extend(a)
        if not overflow:
            return st, actions
    return st, actions


def transition(state: LedgerState, event: Event, cfg: LedgerConfig) -> tuple[LedgerState, list[Action]]:
    """
    Pure reducer for one event.
    """
    if isinstance(event, SlotEvent):
        return _apply_slot_event(state, event, cfg)

    if isinstance(event, RecommendationAccepted):
        rec = event.recommendation
        st = replace(state, now=event.timestamp)
        flip_id = st.next_flip_id
        flip = Flip(
            flip_id=flip_id,
            item_id=rec.item_id,
            status="recommended",
            item_name=rec.item_name,
            recommended_buy_price=rec.buy_price,
            recommended_sell_price=rec.sell_price,
            quantity_limit=rec.quantity_limit,
            created_at=event.timestamp,
        )
        st = replace(st, next_flip_id=flip_id + 1)
        st = _put_flip(st, flip)
        return st, [_change(None, flip, "recommendation_accepted")]

    if isinstance(event, FlipDismissed):
        st = replace(state, now=event.timestamp)
        flip = _find_flip(st, event.flip_id)
        if flip is None or flip.is_terminal:
            return st, []
        for link in _links_for_flip(st, flip.flip_id):
            st = _remove_link(st, link)
            # The order may keep trading; nothing more from it belongs to any flip.
            st = _settle(st, link, applied_filled=link.quantity_total)
        updated = replace(flip, status="dismissed")
        st = _put_flip(st, updated)
        return st, [_change(flip, updated, "dismissed")]

    return state, []


def reconcile_links(state: LedgerState, slots: Sequence[OrderSlot]) -> tuple[LedgerState, list[Action]]:
    """
    Unlink every link whose slot no longer reports the flip's item and side.
    """
    actions: list[Action] = []
    st = state
    by_index = {s.index: normalize_slot(s) for s in slots}
    for link in list(st.links):
        slot = by_index.get(link.slot_index)
        if slot is not None and not slot.is_empty and slot.side == link.side and slot.item_id == link.item_id:
            continue
        reported = "empty" if slot is None or slot.is_empty else f"{slot.side} item {slot.item_id}"
        st, changes = _end_occupancy(st, link, "stale_link")
        actions.append(
            Anomaly(
                kind="stale_link",
                slot_index=link.slot_index,
                item_id=link.item_id,
                flip_id=link.flip_id,
                detail=f"slot reports {reported}",
            )
        )
        actions.extend(changes)
    return st, actions


def prune_terminal(state: LedgerState, keep: int) -> LedgerState:
    """Drop all but the newest `keep` completed/dismissed flips."""
    terminal = [f for f in state.flips if f.is_terminal]
    if len(terminal) <= max(0, keep):
        return state
    terminal.sort(
        key=lambda f: (f.sold_at if f.sold_at is not None else f.created_at, f.flip_id),
        reverse=True,
    )
    drop = {f.flip_id for f in terminal[max(0, keep):]}
    return replace(state, flips=tuple(f for f in state.flips if f.flip_id not in drop))


def check_invariants(state: LedgerState) -> list[str]:
    """
    Strict invariant checker for ledger state.
    """
    violations: list[str] = []

    ids = [f.flip_id for f in state.flips]
    if len(ids) != len(set(ids)):
        violations.append("duplicate flip_id")

    keys = [(l.slot_index, l.side) for l in state.links]
    if len(keys) != len(set(keys)):
        violations.append("more than one flip linked to a (slot, side)")

    for link in state.links:
        flip = _find_flip(state, link.flip_id)
        if flip is None:
            violations.append(f"link on slot {link.slot_index} points at missing flip {link.flip_id}")
            continue
        if flip.is_terminal:
            violations.append(f"terminal flip {flip.flip_id} still linked")
        if flip.item_id != link.item_id:
            violations.append(f"link on slot {link.slot_index} item differs from flip {flip.flip_id}")
        if link.side == "sell" and flip.status != "pending_sell":
            violations.append(f"sell-linked flip {flip.flip_id} not pending_sell")

    for f in state.flips:
        if f.quantity_sold > f.quantity_bought:
            violations.append(f"flip {f.flip_id} sold more than bought")
        if f.status == "completed":
            if f.quantity_sold != f.quantity_bought:
                violations.append(f"completed flip {f.flip_id} has unsold quantity")
            if f.realized_profit != f.gross_received - f.gross_spent - f.tax_paid:
                violations.append(f"completed flip {f.flip_id} profit does not reconcile")
        if f.status == "pending_sell" and not any(
            l.flip_id == f.flip_id and l.side == "sell" for l in state.links
        ):
            violations.append(f"pending_sell flip {f.flip_id} has no sell link")

    return violations


def to_dict(state: LedgerState) -> dict:
    return {
        "flips": [asdict(f) for f in state.flips],
        "links": [asdict(l) for l in state.links],
        "settled": [asdict(s) for s in state.settled],
        "next_flip_id": state.next_flip_id,
        "now": state.now,
    }


def from_dict(data: dict) -> LedgerState:
    flips = tuple(Flip(**f) for f in data.get("flips", []))
    return LedgerState(
        flips=flips,
        links=tuple(SlotLink(**l) for l in data.get("links", [])),
        settled=tuple(SettledSlot(**s) for s in data.get("settled", [])),
        next_flip_id=max(
            int(data.get("next_flip_id", 1)),
            max((f.flip_id for f in flips), default=0) + 1,
        ),
        now=float(data.get("now", 0.0)),
    )


# --------------------------- Runtime owner ---------------------------


@dataclass
class JournalRecord:
    journal_id: int
    flip_id: int
    timestamp: float
    event_type: str
    details: dict[str, Any]


class FlipLedger:
    """
    Sole owner of the flip collection.

    All mutation goes through `apply`, `accept_recommendation`, `dismiss`
    and `reconcile_links`; callers get frozen Flip values back.
    """

    def __init__(
        self,
        cfg: LedgerConfig | None = None,
        *,
        journal_local_limit: int = 500,
    ) -> None:
        self.cfg = cfg or LedgerConfig()
        self.journal_local_limit = max(50, int(journal_local_limit))
        self.state = LedgerState()
        self.anomaly_counts: dict[str, int] = {k: 0 for k in ANOMALY_KINDS}

        self._journal: list[JournalRecord] = []
        self._next_journal_id: int = 1
        self._change_listeners: list[Callable[[FlipChange], None]] = []
        self._anomaly_listeners: list[Callable[[Anomaly], None]] = []

    # ------------------ Wiring ------------------

    def add_change_listener(self, callback: Callable[[FlipChange], None]) -> None:
        self._change_listeners.append(callback)

    def add_anomaly_listener(self, callback: Callable[[Anomaly], None]) -> None:
        self._anomaly_listeners.append(callback)

    # ------------------ Core API ------------------

    def apply(self, event: SlotEvent) -> FlipChange | None:
        """Apply one slot event; returns the resulting change for the event's flip, if any."""
        changes = self._run(event)
        return changes[-1] if changes else None

    def apply_all(self, events: Iterable[SlotEvent]) -> list[FlipChange]:
        out: list[FlipChange] = []
        for ev in events:
            out.extend(self._run(ev))
        return out

    def accept_recommendation(self, recommendation: Recommendation, now: float | None = None) -> Flip:
        ts = float(now) if now is not None else time.time()
        changes = self._run(RecommendationAccepted(recommendation=recommendation, timestamp=ts))
        flip = self.get_flip(changes[-1].flip_id)
        logger.info(
            "Accepted recommendation for item %d: buy %d / sell %d x%d (flip #%d)",
            recommendation.item_id, recommendation.buy_price, recommendation.sell_price,
            recommendation.quantity_limit, flip.flip_id,
        )
        return flip

    def dismiss(self, flip_id: int, now: float | None = None) -> FlipChange | None:
        flip = self.get_flip(flip_id)
        if flip is None:
            raise ValueError(f"unknown flip_id {flip_id}")
        if flip.is_terminal:
            return None
        ts = float(now) if now is not None else time.time()
        changes = self._run(FlipDismissed(flip_id=int(flip_id), timestamp=ts))
        return changes[-1] if changes else None

    def reconcile_links(self, snapshot: Sequence[OrderSlot]) -> list[Anomaly]:
        self.state, actions = reconcile_links(self.state, snapshot)
        self._dispatch(actions)
        return [a for a in actions if isinstance(a, Anomaly)]

    def prune_terminal(self, keep: int) -> int:
        before = len(self.state.flips)
        self.state = prune_terminal(self.state, keep)
        removed = before - len(self.state.flips)
        if removed:
            alive = {f.flip_id for f in self.state.flips}
            self._journal = [j for j in self._journal if j.flip_id in alive]
            logger.debug("Pruned %d finished flips", removed)
        return removed

    # ------------------ Queries ------------------

    def get_flip(self, flip_id: int) -> Flip | None:
        return _find_flip(self.state, int(flip_id))

    def flips(self, status: str | None = None) -> list[Flip]:
        return [f for f in self.state.flips if status is None or f.status == status]

    def open_flips(self) -> list[Flip]:
        return [f for f in self.state.flips if not f.is_terminal]

    def linked_flip(self, slot_index: int, side: Side) -> Flip | None:
        link = _find_link(self.state, int(slot_index), side)
        return self.get_flip(link.flip_id) if link is not None else None

    def links(self) -> tuple[SlotLink, ...]:
        return self.state.links

    def get_journal(self, flip_id: int | None = None) -> list[dict[str, Any]]:
        fid = int(flip_id) if flip_id is not None else None
        return [asdict(j) for j in self._journal if fid is None or j.flip_id == fid]

    def check_invariants(self) -> list[str]:
        return check_invariants(self.state)

    # ------------------ Snapshot ------------------

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "ledger": to_dict(self.state),
            "anomaly_counts": dict(self.anomaly_counts),
            "journal_recent": [asdict(j) for j in self._journal],
            "journal_id_counter": int(self._next_journal_id),
        }

    def restore_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        self.state = from_dict(payload.get("ledger") or {})
        counts = payload.get("anomaly_counts") or {}
        self.anomaly_counts = {k: int(counts.get(k, 0) or 0) for k in ANOMALY_KINDS}
        self._journal = []
        for row in payload.get("journal_recent") or []:
            if not isinstance(row, dict):
                continue
            try:
                self._journal.append(JournalRecord(**row))
            except TypeError:
                logger.warning("Skipping malformed journal row: %s", row)
        self._next_journal_id = max(
            int(payload.get("journal_id_counter", 1) or 1),
            max((j.journal_id for j in self._journal), default=0) + 1,
        )
        self._trim_journal_if_needed()

    # ------------------ Internals ------------------

    def _run(self, event: Event) -> list[FlipChange]:
        self.state, actions = transition(self.state, event, self.cfg)
        self._dispatch(actions)
        return [a for a in actions if isinstance(a, FlipChange)]

    def _dispatch(self, actions: list[Action]) -> None:
        for act in actions:
            if isinstance(act, Anomaly):
                self.anomaly_counts[act.kind] = self.anomaly_counts.get(act.kind, 0) + 1
                if act.kind == "ambiguous_match":
                    logger.debug(
                        "Ambiguous match on slot %d item %d -> flip #%s (%s)",
                        act.slot_index, act.item_id, act.flip_id, act.detail,
                    )
                else:
                    logger.warning(
                        "%s on slot %d item %d flip #%s: %s",
                        act.kind, act.slot_index, act.item_id, act.flip_id, act.detail,
                    )
                if act.flip_id is not None:
                    self._journal_event(act.flip_id, act.kind, {"slot": act.slot_index, "detail": act.detail})
                for cb in self._anomaly_listeners:
                    cb(act)
                continue

            if act.old_status != act.new_status:
                logger.info(
                    "Flip #%d item %d: %s -> %s (%s)",
                    act.flip_id, act.item_id, act.old_status or "new", act.new_status, act.reason,
                )
            self._journal_event(
                act.flip_id,
                act.reason,
                {
                    "old_status": act.old_status,
                    "new_status": act.new_status,
                    "slot": act.slot_index,
                    "quantity_bought": act.quantity_bought,
                    "quantity_sold": act.quantity_sold,
                    "gross_spent": act.gross_spent,
                    "gross_received": act.gross_received,
                    "tax_paid": act.tax_paid,
                    "realized_profit": act.realized_profit,
                },
            )
            for cb in self._change_listeners:
                cb(act)

    def _journal_event(self, flip_id: int, event_type: str, details: dict[str, Any]) -> None:
        self._journal.append(
            JournalRecord(
                journal_id=self._next_journal_id,
                flip_id=int(flip_id),
                timestamp=self.state.now,
                event_type=str(event_type),
                details=dict(details),
            )
        )
        self._next_journal_id += 1
        self._trim_journal_if_needed()

    def _trim_journal_if_needed(self) -> None:
        limit = max(50, int(self.journal_local_limit))
        if len(self._journal) <= limit:
            return
        self._journal = self._journal[len(self._journal) - limit:]
