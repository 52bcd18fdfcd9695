"""
workflow.py

Guided order-entry state machine for the focused flip.

Design goals:
- Pure reducer transitions: (session, widget snapshot, target) -> session
- Follows the live interface: the user may back out or edit fields any time
- Auto-fill is a request, not an action: commands are fire-and-forget and
  only the next widget snapshot shows whether they applied
- Never mutates flips; submission is observed by the ledger via slot events
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
import re
import time
from typing import Literal

from flip_ledger import Flip

logger = logging.getLogger(__name__)


Step = Literal["idle", "await_search", "await_quantity", "await_price", "await_confirm", "done"]
TradeAction = Literal["buy", "sell"]
FillField = Literal["quantity", "price"]

AUTO_FILL_STEPS: frozenset[str] = frozenset({"await_quantity", "await_price"})

_BUY_STATUSES = frozenset({"recommended", "pending_buy"})
_SELL_STATUSES = frozenset({"active", "pending_sell"})

STEP_INSTRUCTIONS: dict[tuple[str, str], str] = {
    ("buy", "await_search"): "Click BUY on an empty slot and search for {item}",
    ("sell", "await_search"): "Click SELL and pick {item} from your inventory",
    ("buy", "await_quantity"): "Set quantity: {quantity}",
    ("sell", "await_quantity"): "Set quantity: {quantity}",
    ("buy", "await_price"): "Set price: {price} gp",
    ("sell", "await_price"): "Set sell price: {price} gp",
    ("buy", "await_confirm"): "Click the confirm button",
    ("sell", "await_confirm"): "Click confirm to list",
    ("buy", "done"): "Offer placed, waiting to fill",
    ("sell", "done"): "Listed! Waiting to sell",
}


class InvalidStateError(Exception):
    """Raised when an operation is requested in a step that does not allow it."""

    def __init__(self, step: str, message: str | None = None) -> None:
        self.step = step
        super().__init__(message or f"auto-fill not available in step {step}")


@dataclass(frozen=True)
class WorkflowConfig:
    # Positive offset = buy higher / sell lower to fill faster.
    price_offset: int = 0
    tax_rate: float = 0.02


@dataclass(frozen=True)
class WidgetSnapshot:
    offer_open: bool = False
    selected_item_id: int | None = None
    quantity_text: str = ""
    price_text: str = ""
    # Which setup screen is open, when the host can tell.
    offer_side: TradeAction | None = None


@dataclass(frozen=True)
class FocusTarget:
    """Read-only projection of the focused flip: what the user should enter."""

    flip_id: int
    item_id: int
    action: TradeAction | None
    quantity: int
    price: int
    item_name: str = ""


@dataclass(frozen=True)
class AssistantSession:
    flip_id: int
    action: TradeAction | None
    step: Step = "idle"
    last_widget: WidgetSnapshot | None = None
    last_progress_at: float = 0.0


@dataclass(frozen=True)
class FillCommand:
    field: FillField
    value: int
    flip_id: int
    item_id: int


# --------------------------- Targets ---------------------------


def expected_action(flip: Flip | None) -> TradeAction | None:
    if flip is None:
        return None
    if flip.status in _BUY_STATUSES:
        return "buy"
    if flip.status in _SELL_STATUSES:
        return "sell"
    return None


def min_profitable_price(average_buy_price: float, tax_rate: float) -> int:
    """Lowest sell price that still clears the buy price after tax."""
    keep = 1.0 - tax_rate if 0.0 <= tax_rate < 1.0 else 1.0
    return int(math.ceil((average_buy_price + 1) / keep))


def focus_target(flip: Flip, cfg: WorkflowConfig) -> FocusTarget:
    action = expected_action(flip)
    if action is None:
        return FocusTarget(flip.flip_id, flip.item_id, None, 0, 0, flip.item_name)

    if action == "buy":
        if flip.quantity_limit:
            quantity = max(0, flip.quantity_limit - flip.held_quantity)
        else:
            quantity = max(0, flip.buy_target - flip.quantity_bought)
        base = flip.implied_buy_price
        price = max(1, base + cfg.price_offset) if base > 0 else 0
    else:
        quantity = flip.held_quantity
        if flip.recommended_sell_price:
            base = flip.recommended_sell_price
        else:
            base = min_profitable_price(flip.average_buy_price, cfg.tax_rate)
        price = max(1, base - cfg.price_offset)

    return FocusTarget(
        flip_id=flip.flip_id,
        item_id=flip.item_id,
        action=action,
        quantity=quantity,
        price=price,
        item_name=flip.item_name,
    )


# --------------------------- Helpers ---------------------------


_AMOUNT_RE = re.compile(r"^\s*([0-9][0-9,\s]*(?:\.[0-9]+)?)\s*([kmb]?)\s*$", re.IGNORECASE)
_SUFFIX = {"": 1, "k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def parse_amount(text: str | None) -> int:
    """
    Parse a quantity/price field.  "1,234", "5k", "1.5m" are all accepted;
    anything unreadable counts as zero (field not set).
    """
    if not text:
        return 0
    m = _AMOUNT_RE.match(str(text))
    if not m:
        return 0
    digits = m.group(1).replace(",", "").replace(" ", "")
    try:
        value = float(digits) * _SUFFIX[m.group(2).lower()]
    except ValueError:
        return 0
    return max(0, int(value))


def _item_matches(widget: WidgetSnapshot, target: FocusTarget) -> bool:
    if widget.selected_item_id is None or widget.selected_item_id != target.item_id:
        return False
    return widget.offer_side is None or widget.offer_side == target.action


def _move(session: AssistantSession, step: Step, widget: WidgetSnapshot | None, now: float) -> AssistantSession:
    if step == session.step:
        return replace(session, last_widget=widget)
    return replace(session, step=step, last_widget=widget, last_progress_at=now)


# --------------------------- Transitions ---------------------------


def start_session(target: FocusTarget, now: float) -> AssistantSession:
    """IDLE -> AWAIT_SEARCH for a newly focused flip."""
    session = AssistantSession(flip_id=target.flip_id, action=target.action, step="idle", last_progress_at=now)
    if target.action is None:
        return session
    return _move(session, "await_search", None, now)


def end_session(session: AssistantSession, now: float) -> AssistantSession:
    return _move(session, "idle", session.last_widget, now)


def advance(
    session: AssistantSession,
    widget: WidgetSnapshot,
    target: FocusTarget | None,
    now: float,
) -> AssistantSession:
    """
    Pure reducer for one widget snapshot.
    """
    if session.step == "idle":
        return replace(session, last_widget=widget)

    if target is None or target.action is None or target.flip_id != session.flip_id:
        return _move(session, "idle", widget, now)

    if target.action != session.action:
        # Buy leg finished; the sell leg starts from the top.
        session = _move(replace(session, action=target.action), "await_search", widget, now)

    step: Step = session.step

    if step == "await_confirm" and not widget.offer_open:
        return _move(session, "done", widget, now)

    if widget.offer_open and not _item_matches(widget, target):
        return _move(session, "await_search", widget, now)

    if not widget.offer_open or step == "done":
        return replace(session, last_widget=widget)

    quantity = parse_amount(widget.quantity_text)
    price = parse_amount(widget.price_text)

    if step == "await_search":
        step = "await_quantity"
    if step in ("await_price", "await_confirm") and quantity == 0:
        step = "await_quantity"
    if step == "await_confirm" and price == 0:
        step = "await_price"
    if step == "await_quantity" and quantity > 0:
        step = "await_price"
    if step == "await_price" and price > 0:
        step = "await_confirm"

    return _move(session, step, widget, now)


def request_auto_fill(session: AssistantSession, target: FocusTarget | None) -> FillCommand:
    """
    Build the fill command for the current step.  Raises InvalidStateError
    outside AWAIT_QUANTITY / AWAIT_PRICE; never changes the session.
    """
    if session.step not in AUTO_FILL_STEPS:
        raise InvalidStateError(session.step)
    if target is None or target.action is None or target.flip_id != session.flip_id:
        raise InvalidStateError(session.step, f"flip {session.flip_id} has nothing to fill")

    if session.step == "await_quantity":
        fill_field: FillField = "quantity"
        value = target.quantity
    else:
        fill_field = "price"
        value = target.price
    if value <= 0:
        raise InvalidStateError(session.step, f"no {fill_field} target for flip {session.flip_id}")
    return FillCommand(field=fill_field, value=int(value), flip_id=target.flip_id, item_id=target.item_id)


def instruction(session: AssistantSession | None, target: FocusTarget | None) -> str:
    if session is None or target is None or session.action is None or session.step == "idle":
        return "Select a flip to get started"
    template = STEP_INSTRUCTIONS.get((session.action, session.step), "")
    return template.format(
        item=target.item_name or f"item {target.item_id}",
        quantity=f"{target.quantity:,}",
        price=f"{target.price:,}",
    )


# --------------------------- Runtime owner ---------------------------


class GuidedWorkflow:
    """Owns the single assistant session for the focused flip."""

    def __init__(self, cfg: WorkflowConfig | None = None) -> None:
        self.cfg = cfg or WorkflowConfig()
        self.session: AssistantSession | None = None

    @property
    def focused_flip_id(self) -> int | None:
        return self.session.flip_id if self.session is not None else None

    @property
    def step(self) -> Step:
        return self.session.step if self.session is not None else "idle"

    def target_for(self, flip: Flip | None) -> FocusTarget | None:
        return focus_target(flip, self.cfg) if flip is not None else None

    def focus(self, flip: Flip, now: float | None = None) -> AssistantSession | None:
        ts = float(now) if now is not None else time.time()
        target = focus_target(flip, self.cfg)
        if target.action is None:
            logger.info("Flip #%d is %s; nothing to guide", flip.flip_id, flip.status)
            self.session = None
            return None
        self.session = start_session(target, ts)
        logger.info("Focused flip #%d (%s item %d)", flip.flip_id, target.action, flip.item_id)
        return self.session

    def unfocus(self, now: float | None = None) -> None:
        if self.session is None:
            return
        ts = float(now) if now is not None else time.time()
        ended = end_session(self.session, ts)
        logger.info("Unfocused flip #%d at step %s", ended.flip_id, self.session.step)
        self.session = None

    def sync(self, flip: Flip | None, now: float | None = None) -> None:
        """Drop the session once its flip is gone or terminal."""
        if self.session is None:
            return
        if flip is None or flip.flip_id != self.session.flip_id or expected_action(flip) is None:
            self.unfocus(now)

    def observe(self, widget: WidgetSnapshot, flip: Flip | None, now: float | None = None) -> AssistantSession | None:
        if self.session is None:
            return None
        ts = float(now) if now is not None else time.time()
        before = self.session
        after = advance(before, widget, self.target_for(flip), ts)
        if after.step != before.step:
            logger.info("Flip #%d workflow %s -> %s", after.flip_id, before.step, after.step)
        if after.step == "idle":
            self.session = None
            return after
        self.session = after
        return after

    def request_auto_fill(self, flip: Flip | None) -> FillCommand:
        if self.session is None:
            raise InvalidStateError("idle")
        cmd = request_auto_fill(self.session, self.target_for(flip))
        logger.info("Auto-fill %s=%d for flip #%d", cmd.field, cmd.value, cmd.flip_id)
        return cmd

    def instruction(self, flip: Flip | None) -> str:
        return instruction(self.session, self.target_for(flip))
