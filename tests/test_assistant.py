import json
import unittest
from unittest import mock

import assistant
import notifier
from flip_ledger import LedgerConfig, Recommendation
from offer_monitor import OrderSlot
from workflow import InvalidStateError, WidgetSnapshot, WorkflowConfig


def _rec(item=100, buy=5, sell=8, limit=100):
    return Recommendation(item_id=item, buy_price=buy, sell_price=sell, quantity_limit=limit, item_name="Swordfish")


def _slot(index=0, side="buy", item=100, total=100, filled=0, price=5, status="in_progress"):
    return OrderSlot(
        index=index,
        side=side,
        item_id=item,
        quantity_total=total,
        quantity_filled=filled,
        price=price,
        spent=filled * price,
        status=status,
    )


def _assistant(**kw):
    return assistant.FlipAssistant(LedgerConfig(tax_rate=0.02), WorkflowConfig(), notify=False, **kw)


class FlipAssistantTests(unittest.TestCase):
    def test_accept_unknown_recommendation_raises(self):
        a = _assistant()
        with self.assertRaises(ValueError):
            a.accept_recommendation(100, now=1.0)

    def test_focus_unknown_flip_raises(self):
        with self.assertRaises(ValueError):
            _assistant().focus(7, now=1.0)

    def test_full_flip_through_snapshots(self):
        a = _assistant()
        a.update_recommendations([_rec()])
        flip = a.accept_recommendation(100, now=1.0)
        self.assertEqual(a.workflow.step, "await_search")

        a.on_widget_snapshot(WidgetSnapshot(offer_open=True, selected_item_id=100), now=2.0)
        self.assertEqual(a.request_auto_fill().value, 100)

        a.on_slot_snapshot([_slot()], now=3.0)
        self.assertEqual(a.ledger.get_flip(flip.flip_id).status, "pending_buy")

        a.on_slot_snapshot([_slot(filled=100, status="finished")], now=4.0)
        a.on_slot_snapshot([], now=5.0)
        self.assertEqual(a.ledger.get_flip(flip.flip_id).status, "active")

        a.on_widget_snapshot(WidgetSnapshot(offer_open=False), now=6.0)
        self.assertEqual(a.workflow.session.action, "sell")
        self.assertEqual(a.workflow.step, "await_search")

        a.on_slot_snapshot([_slot(index=1, side="sell", price=8)], now=7.0)
        changes = a.on_slot_snapshot([_slot(index=1, side="sell", price=8, filled=100, status="finished")], now=8.0)
        self.assertEqual(changes[-1].new_status, "completed")
        self.assertEqual(a.ledger.get_flip(flip.flip_id).realized_profit, 284)
        self.assertIsNone(a.workflow.session)

        summary = a.status_summary()
        self.assertEqual(summary["session"]["total_profit"], 284)
        self.assertEqual(summary["flips_by_status"], {"completed": 1})
        self.assertEqual(summary["workflow_step"], "idle")

    def test_dismiss_drops_focus(self):
        a = _assistant()
        a.update_recommendations([_rec()])
        flip = a.accept_recommendation(100, now=1.0)
        change = a.dismiss(flip.flip_id, now=2.0)
        self.assertEqual(change.new_status, "dismissed")
        self.assertIsNone(a.workflow.focused_flip_id)
        with self.assertRaises(InvalidStateError):
            a.request_auto_fill()

    def test_history_is_pruned(self):
        a = _assistant(history_limit=1)
        for item in (1, 2, 3):
            a.update_recommendations([_rec(item=item)])
            f = a.accept_recommendation(item, now=float(item), focus=False)
            a.dismiss(f.flip_id, now=float(item))
        a.on_slot_snapshot([], now=10.0)
        self.assertEqual(len(a.ledger.flips()), 1)

    def test_completed_flip_is_queued_for_webhook(self):
        a = assistant.FlipAssistant(LedgerConfig(tax_rate=0.02), WorkflowConfig(), notify=True)
        a.update_recommendations([_rec()])
        a.accept_recommendation(100, now=1.0, focus=False)
        with mock.patch.object(notifier, "notify_flip_completed") as notify, \
                mock.patch.object(notifier, "flush", return_value=0):
            a.on_slot_snapshot([_slot(filled=100, status="finished")], now=2.0)
            a.on_slot_snapshot([_slot(index=1, side="sell", price=8, filled=100, status="finished")], now=3.0)
        self.assertEqual(notify.call_count, 1)
        self.assertEqual(notify.call_args[0][0].status, "completed")

    def test_snapshot_restore_keeps_slot_baseline(self):
        a = _assistant()
        a.update_recommendations([_rec()])
        a.accept_recommendation(100, now=1.0)
        a.on_slot_snapshot([_slot(filled=40)], now=2.0)

        b = _assistant()
        b.restore_state(json.loads(json.dumps(a.snapshot_state())))
        self.assertEqual(b.on_slot_snapshot([_slot(filled=40)], now=3.0), [])
        changes = b.on_slot_snapshot([_slot(filled=100, status="finished")], now=4.0)
        self.assertEqual(changes[-1].quantity_bought, 100)


class ReplayTests(unittest.TestCase):
    def test_replay_capture(self):
        lines = [
            json.dumps({"t": 1, "recommendations": [{"item_id": 100, "buy_price": 5, "sell_price": 8, "quantity_limit": 100}]}),
            json.dumps({"t": 2, "intent": {"type": "accept", "item_id": 100}}),
            json.dumps({"t": 3, "widget": {"offer_open": True, "selected_item_id": 100}}),
            json.dumps({"t": 4, "intent": {"type": "auto_fill"}}),
            "not json",
            json.dumps({"t": 5, "slots": [{"index": 0, "side": "buy", "item_id": 100, "quantity_total": 100,
                                           "quantity_filled": 100, "price": 5, "status": "finished"}]}),
            json.dumps({"t": 6, "intent": {"type": "dismiss", "flip_id": 99}}),
        ]
        out = assistant.replay(lines, _assistant(), strict_invariants=True)
        self.assertEqual(out["lines_processed"], 6)
        self.assertEqual(out["fill_commands"], [{"field": "quantity", "value": 100, "flip_id": 1, "item_id": 100}])
        self.assertEqual(out["flips"][0]["status"], "active")
        self.assertEqual(out["flips"][0]["quantity_bought"], 100)


if __name__ == "__main__":
    unittest.main()
