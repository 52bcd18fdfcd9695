"""
Exchange flip assistant runtime.

Wires the three core pieces to host input:
- OfferMonitor: slot snapshots -> slot events
- FlipLedger: slot events + user intents -> flip changes
- GuidedWorkflow: widget snapshots + focused flip -> steps / fill commands

Host-side side effects (webhook flush) happen after core processing.
Run as a script to replay a JSON-lines capture:

  python assistant.py capture.jsonl --json-out summary.json
"""

from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import logging
import sys
import time
from typing import Any, Iterable, Sequence

import config
import flip_stats
import notifier
from flip_ledger import Anomaly, Flip, FlipChange, FlipLedger, LedgerConfig, Recommendation
from offer_monitor import OfferMonitor, OrderSlot, coerce_snapshot
from workflow import (
    AssistantSession,
    FillCommand,
    GuidedWorkflow,
    InvalidStateError,
    WidgetSnapshot,
    WorkflowConfig,
)


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def _now() -> float:
    return time.time()


def recommendation_from_dict(raw: dict) -> Recommendation:
    return Recommendation(
        item_id=int(raw["item_id"]),
        buy_price=int(raw["buy_price"]),
        sell_price=int(raw["sell_price"]),
        quantity_limit=int(raw.get("quantity_limit", 0) or 0),
        liquidity_score=float(raw.get("liquidity_score", 0.0) or 0.0),
        risk_score=float(raw.get("risk_score", 0.0) or 0.0),
        style=str(raw.get("style") or "balanced"),
        item_name=str(raw.get("item_name") or ""),
    )


def widget_from_dict(raw: dict) -> WidgetSnapshot:
    item = raw.get("selected_item_id")
    side = raw.get("offer_side")
    return WidgetSnapshot(
        offer_open=bool(raw.get("offer_open", False)),
        selected_item_id=int(item) if item is not None else None,
        quantity_text=str(raw.get("quantity_text") or ""),
        price_text=str(raw.get("price_text") or ""),
        offer_side=str(side).lower() if side else None,
    )


class FlipAssistant:
    """
    Single-threaded facade.  The host calls on_slot_snapshot / on_widget_snapshot
    from its tick and forwards user intents to the matching methods.
    """

    def __init__(
        self,
        ledger_cfg: LedgerConfig | None = None,
        workflow_cfg: WorkflowConfig | None = None,
        *,
        slot_count: int = config.SLOT_COUNT,
        history_limit: int = config.HISTORY_LIMIT,
        journal_local_limit: int = config.JOURNAL_LOCAL_LIMIT,
        notify: bool = True,
    ) -> None:
        self.monitor = OfferMonitor(slot_count)
        self.ledger = FlipLedger(
            ledger_cfg or LedgerConfig(tax_rate=config.TAX_RATE, tax_cap_per_item=config.TAX_CAP_PER_ITEM),
            journal_local_limit=journal_local_limit,
        )
        self.workflow = GuidedWorkflow(
            workflow_cfg or WorkflowConfig(price_offset=config.PRICE_OFFSET, tax_rate=config.TAX_RATE)
        )
        self.history_limit = max(0, int(history_limit))
        self.notify = bool(notify)
        self.recommendations: dict[int, Recommendation] = {}

        self.ledger.add_change_listener(self._on_flip_change)
        self.ledger.add_anomaly_listener(self._on_anomaly)

    # ------------------ Recommendations ------------------

    def update_recommendations(self, recommendations: Iterable[Recommendation]) -> None:
        """Replace the standing recommendation set (one per item)."""
        self.recommendations = {r.item_id: r for r in recommendations}
        logger.debug("Recommendation set now has %d items", len(self.recommendations))

    def accept_recommendation(self, item_id: int, now: float | None = None, *, focus: bool = True) -> Flip:
        rec = self.recommendations.get(int(item_id))
        if rec is None:
            raise ValueError(f"no recommendation for item {item_id}")
        ts = float(now) if now is not None else _now()
        flip = self.ledger.accept_recommendation(rec, now=ts)
        if focus:
            self.workflow.focus(flip, now=ts)
        return flip

    # ------------------ User intents ------------------

    def focus(self, flip_id: int, now: float | None = None) -> AssistantSession | None:
        flip = self.ledger.get_flip(flip_id)
        if flip is None:
            raise ValueError(f"unknown flip_id {flip_id}")
        return self.workflow.focus(flip, now=now)

    def unfocus(self, now: float | None = None) -> None:
        self.workflow.unfocus(now=now)

    def dismiss(self, flip_id: int, now: float | None = None) -> FlipChange | None:
        change = self.ledger.dismiss(flip_id, now=now)
        self._sync_workflow(now)
        return change

    def request_auto_fill(self) -> FillCommand:
        return self.workflow.request_auto_fill(self.focused_flip())

    # ------------------ Host snapshots ------------------

    def on_slot_snapshot(self, slots: Sequence[OrderSlot | dict], now: float | None = None) -> list[FlipChange]:
        ts = float(now) if now is not None else _now()
        snapshot = coerce_snapshot(slots, self.monitor.slot_count)
        events = self.monitor.update(snapshot, now=ts)
        changes = self.ledger.apply_all(events)
        self.ledger.reconcile_links(snapshot)
        self._sync_workflow(ts)
        self.ledger.prune_terminal(self.history_limit)

        if self.notify:
            notifier.flush(ts)
        return changes

    def on_widget_snapshot(self, widget: WidgetSnapshot, now: float | None = None) -> AssistantSession | None:
        return self.workflow.observe(widget, self.focused_flip(), now=now)

    # ------------------ Queries ------------------

    def focused_flip(self) -> Flip | None:
        flip_id = self.workflow.focused_flip_id
        return self.ledger.get_flip(flip_id) if flip_id is not None else None

    def instruction(self) -> str:
        return self.workflow.instruction(self.focused_flip())

    def status_summary(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for f in self.ledger.flips():
            by_status[f.status] = by_status.get(f.status, 0) + 1
        summary = flip_stats.summarize(self.ledger.flips("completed"))
        return {
            "flips_by_status": by_status,
            "open_flips": len(self.ledger.open_flips()),
            "linked_slots": len(self.ledger.links()),
            "focused_flip_id": self.workflow.focused_flip_id,
            "workflow_step": self.workflow.step,
            "instruction": self.instruction(),
            "anomaly_counts": dict(self.ledger.anomaly_counts),
            "session": summary.to_dict(),
            "profit_text": flip_stats.format_gp_signed(summary.total_profit),
        }

    # ------------------ Snapshot ------------------

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "ledger": self.ledger.snapshot_state(),
            "slots": [asdict(s) for s in self.monitor.previous],
        }

    def restore_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        self.ledger.restore_state(payload.get("ledger") or {})
        self.monitor.reset(payload.get("slots") or None)
        self.workflow.unfocus()

    # ------------------ Internals ------------------

    def _sync_workflow(self, now: float | None) -> None:
        if self.workflow.focused_flip_id is None:
            return
        self.workflow.sync(self.focused_flip(), now=now)

    def _on_flip_change(self, change: FlipChange) -> None:
        if not self.notify or change.new_status != "completed" or change.old_status == "completed":
            return
        flip = self.ledger.get_flip(change.flip_id)
        if flip is not None:
            notifier.notify_flip_completed(flip)

    def _on_anomaly(self, anomaly: Anomaly) -> None:
        if self.notify and anomaly.kind == "reconciliation_gap":
            notifier.notify_reconciliation(anomaly)


# ---------------------------------------------------------------------------
# Replay CLI
# ---------------------------------------------------------------------------

def _apply_intent(assistant: FlipAssistant, intent: dict, ts: float, commands: list[dict]) -> None:
    kind = str(intent.get("type") or "").lower()
    if kind == "accept":
        assistant.accept_recommendation(int(intent["item_id"]), now=ts, focus=bool(intent.get("focus", True)))
    elif kind == "focus":
        assistant.focus(int(intent["flip_id"]), now=ts)
    elif kind == "unfocus":
        assistant.unfocus(now=ts)
    elif kind == "dismiss":
        assistant.dismiss(int(intent["flip_id"]), now=ts)
    elif kind == "auto_fill":
        commands.append(asdict(assistant.request_auto_fill()))
    else:
        logger.warning("Unknown intent type %r", kind)


def replay(lines: Iterable[str], assistant: FlipAssistant, *, strict_invariants: bool = False) -> dict[str, Any]:
    """
    Feed a JSON-lines capture through the assistant.

    Each line is an object with a timestamp "t" and one of the keys
    "slots", "widget", "recommendations" or "intent".
    """
    commands: list[dict] = []
    processed = 0
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Line %d: invalid JSON (%s)", lineno, e)
            continue
        if not isinstance(row, dict):
            logger.warning("Line %d: expected an object", lineno)
            continue

        ts = float(row.get("t", 0.0) or 0.0)
        try:
            if "recommendations" in row:
                assistant.update_recommendations(recommendation_from_dict(r) for r in row["recommendations"])
            if "slots" in row:
                assistant.on_slot_snapshot(row["slots"], now=ts)
            if "widget" in row:
                assistant.on_widget_snapshot(widget_from_dict(row["widget"]), now=ts)
            if "intent" in row:
                _apply_intent(assistant, row["intent"], ts, commands)
        except (ValueError, KeyError, InvalidStateError) as e:
            logger.warning("Line %d: %s", lineno, e)
        processed += 1

        if strict_invariants:
            violations = assistant.ledger.check_invariants()
            if violations:
                raise RuntimeError(f"line {lineno}: invariant violation: {violations}")

    out = assistant.status_summary()
    out["lines_processed"] = processed
    out["fill_commands"] = commands
    out["flips"] = [asdict(f) for f in assistant.ledger.flips()]
    return out


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay an Exchange capture through the flip assistant")
    p.add_argument("capture", help="JSON-lines capture file, or - for stdin")
    p.add_argument("--tax-rate", type=float, default=config.TAX_RATE)
    p.add_argument("--price-offset", type=int, default=config.PRICE_OFFSET)
    p.add_argument("--history-limit", type=int, default=config.HISTORY_LIMIT)
    p.add_argument("--notify", action="store_true", default=False, help="Send webhook notifications during replay")
    p.add_argument("--strict-invariants", action="store_true", default=False, help="Stop at first invariant violation")
    p.add_argument("--json-out", default="", help="Optional JSON summary output path")
    return p.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging()
    config.print_banner()

    assistant = FlipAssistant(
        LedgerConfig(tax_rate=args.tax_rate, tax_cap_per_item=config.TAX_CAP_PER_ITEM),
        WorkflowConfig(price_offset=args.price_offset, tax_rate=args.tax_rate),
        history_limit=args.history_limit,
        notify=args.notify,
    )

    try:
        if args.capture == "-":
            result = replay(sys.stdin, assistant, strict_invariants=args.strict_invariants)
        else:
            with open(args.capture, "r", encoding="utf-8") as f:
                result = replay(f, assistant, strict_invariants=args.strict_invariants)
    except OSError as e:
        raise SystemExit(f"cannot read capture: {e}") from e
    except RuntimeError as e:
        raise SystemExit(str(e)) from e

    print(json.dumps(result, indent=2))
    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2)
        print(f"\nWrote JSON summary: {args.json_out}")


if __name__ == "__main__":
    main()
