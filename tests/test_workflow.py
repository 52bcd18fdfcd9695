import unittest

import workflow as wf
from flip_ledger import Flip


def _flip(status="recommended", **kw):
    base = dict(
        flip_id=1,
        item_id=100,
        status=status,
        item_name="Swordfish",
        recommended_buy_price=5,
        recommended_sell_price=8,
        quantity_limit=50,
    )
    base.update(kw)
    return Flip(**base)


def _widget(open_=True, item=100, qty="", price="", side=None):
    return wf.WidgetSnapshot(
        offer_open=open_,
        selected_item_id=item,
        quantity_text=qty,
        price_text=price,
        offer_side=side,
    )


class FocusTargetTests(unittest.TestCase):
    def test_buy_target_uses_limit_and_recommended_price(self):
        t = wf.focus_target(_flip(), wf.WorkflowConfig())
        self.assertEqual(t.action, "buy")
        self.assertEqual(t.quantity, 50)
        self.assertEqual(t.price, 5)

    def test_buy_quantity_subtracts_held(self):
        flip = _flip(status="pending_buy", quantity_bought=20)
        self.assertEqual(wf.focus_target(flip, wf.WorkflowConfig()).quantity, 30)

    def test_buy_quantity_falls_back_to_remaining_target(self):
        flip = _flip(status="pending_buy", quantity_limit=None, buy_target=40, quantity_bought=15,
                     recommended_buy_price=None, buy_price=9)
        t = wf.focus_target(flip, wf.WorkflowConfig(price_offset=2))
        self.assertEqual(t.quantity, 25)
        self.assertEqual(t.price, 11)

    def test_sell_target_uses_held_and_offset(self):
        flip = _flip(status="active", quantity_bought=50, gross_spent=250)
        t = wf.focus_target(flip, wf.WorkflowConfig(price_offset=3))
        self.assertEqual(t.action, "sell")
        self.assertEqual(t.quantity, 50)
        self.assertEqual(t.price, 5)

    def test_sell_without_recommendation_uses_min_profitable_price(self):
        flip = _flip(status="active", recommended_buy_price=None, recommended_sell_price=None,
                     quantity_bought=10, gross_spent=1000)
        t = wf.focus_target(flip, wf.WorkflowConfig(tax_rate=0.02))
        # ceil(101 / 0.98) = 104
        self.assertEqual(t.price, 104)

    def test_price_never_below_one(self):
        flip = _flip(status="active", recommended_sell_price=2, quantity_bought=1, gross_spent=1)
        self.assertEqual(wf.focus_target(flip, wf.WorkflowConfig(price_offset=10)).price, 1)

    def test_terminal_flip_has_no_action(self):
        t = wf.focus_target(_flip(status="completed"), wf.WorkflowConfig())
        self.assertIsNone(t.action)


class ParseAmountTests(unittest.TestCase):
    def test_plain_and_suffixed_amounts(self):
        self.assertEqual(wf.parse_amount("1,234"), 1234)
        self.assertEqual(wf.parse_amount("5k"), 5000)
        self.assertEqual(wf.parse_amount("1.5M"), 1_500_000)
        self.assertEqual(wf.parse_amount(" 2b "), 2_000_000_000)

    def test_blank_or_garbage_is_zero(self):
        self.assertEqual(wf.parse_amount(""), 0)
        self.assertEqual(wf.parse_amount(None), 0)
        self.assertEqual(wf.parse_amount("abc"), 0)
        self.assertEqual(wf.parse_amount("*"), 0)


class AdvanceTests(unittest.TestCase):
    def setUp(self):
        self.cfg = wf.WorkflowConfig()
        self.flip = _flip()
        self.target = wf.focus_target(self.flip, self.cfg)
        self.session = wf.start_session(self.target, 1.0)

    def test_focus_starts_at_await_search(self):
        self.assertEqual(self.session.step, "await_search")
        self.assertEqual(self.session.action, "buy")

    def test_correct_item_moves_to_quantity(self):
        s = wf.advance(self.session, _widget(), self.target, 2.0)
        self.assertEqual(s.step, "await_quantity")
        self.assertEqual(s.last_progress_at, 2.0)

    def test_wrong_item_stays_in_search(self):
        s = wf.advance(self.session, _widget(item=999), self.target, 2.0)
        self.assertEqual(s.step, "await_search")

    def test_wrong_offer_side_stays_in_search(self):
        s = wf.advance(self.session, _widget(side="sell"), self.target, 2.0)
        self.assertEqual(s.step, "await_search")

    def test_full_sequence_to_done(self):
        s = wf.advance(self.session, _widget(), self.target, 2.0)
        s = wf.advance(s, _widget(qty="50"), self.target, 3.0)
        self.assertEqual(s.step, "await_price")
        s = wf.advance(s, _widget(qty="50", price="5"), self.target, 4.0)
        self.assertEqual(s.step, "await_confirm")
        s = wf.advance(s, _widget(open_=False, item=None), self.target, 5.0)
        self.assertEqual(s.step, "done")

    def test_progress_cascades_within_one_snapshot(self):
        s = wf.advance(self.session, _widget(qty="50", price="5"), self.target, 2.0)
        self.assertEqual(s.step, "await_confirm")

    def test_cleared_quantity_steps_back(self):
        s = wf.advance(self.session, _widget(qty="50", price="5"), self.target, 2.0)
        s = wf.advance(s, _widget(qty="", price="5"), self.target, 3.0)
        self.assertEqual(s.step, "await_quantity")

    def test_backing_out_returns_to_search(self):
        s = wf.advance(self.session, _widget(qty="50"), self.target, 2.0)
        s = wf.advance(s, _widget(item=None), self.target, 3.0)
        self.assertEqual(s.step, "await_search")

    def test_closing_before_confirm_keeps_step(self):
        s = wf.advance(self.session, _widget(qty="50"), self.target, 2.0)
        s = wf.advance(s, _widget(open_=False, item=None), self.target, 3.0)
        self.assertEqual(s.step, "await_price")

    def test_terminal_flip_goes_idle(self):
        done = wf.focus_target(_flip(status="dismissed"), self.cfg)
        s = wf.advance(self.session, _widget(), done, 2.0)
        self.assertEqual(s.step, "idle")

    def test_missing_target_goes_idle(self):
        self.assertEqual(wf.advance(self.session, _widget(), None, 2.0).step, "idle")

    def test_action_change_restarts_at_search(self):
        s = wf.advance(self.session, _widget(qty="50", price="5"), self.target, 2.0)
        s = wf.advance(s, _widget(open_=False, item=None), self.target, 3.0)
        self.assertEqual(s.step, "done")

        sell_target = wf.focus_target(_flip(status="active", quantity_bought=50, gross_spent=250), self.cfg)
        s = wf.advance(s, _widget(open_=False, item=None), sell_target, 4.0)
        self.assertEqual(s.action, "sell")
        self.assertEqual(s.step, "await_search")


class AutoFillTests(unittest.TestCase):
    def setUp(self):
        self.target = wf.focus_target(_flip(), wf.WorkflowConfig())
        self.session = wf.start_session(self.target, 1.0)

    def test_auto_fill_quantity(self):
        s = wf.advance(self.session, _widget(), self.target, 2.0)
        cmd = wf.request_auto_fill(s, self.target)
        self.assertEqual(cmd, wf.FillCommand(field="quantity", value=50, flip_id=1, item_id=100))

    def test_auto_fill_price(self):
        s = wf.advance(self.session, _widget(qty="50"), self.target, 2.0)
        cmd = wf.request_auto_fill(s, self.target)
        self.assertEqual(cmd.field, "price")
        self.assertEqual(cmd.value, 5)

    def test_auto_fill_in_search_raises_without_side_effect(self):
        with self.assertRaises(wf.InvalidStateError) as ctx:
            wf.request_auto_fill(self.session, self.target)
        self.assertEqual(ctx.exception.step, "await_search")
        self.assertEqual(self.session.step, "await_search")

    def test_auto_fill_in_confirm_raises(self):
        s = wf.advance(self.session, _widget(qty="50", price="5"), self.target, 2.0)
        with self.assertRaises(wf.InvalidStateError):
            wf.request_auto_fill(s, self.target)


class GuidedWorkflowTests(unittest.TestCase):
    def test_focus_observe_and_fill(self):
        flow = wf.GuidedWorkflow()
        flip = _flip()
        flow.focus(flip, now=1.0)
        self.assertEqual(flow.focused_flip_id, 1)
        flow.observe(_widget(), flip, now=2.0)
        self.assertEqual(flow.step, "await_quantity")
        self.assertEqual(flow.request_auto_fill(flip).value, 50)
        self.assertEqual(flow.instruction(flip), "Set quantity: 50")

    def test_focus_terminal_flip_has_no_session(self):
        flow = wf.GuidedWorkflow()
        self.assertIsNone(flow.focus(_flip(status="completed"), now=1.0))
        self.assertEqual(flow.step, "idle")

    def test_sync_drops_session_when_flip_terminal(self):
        flow = wf.GuidedWorkflow()
        flow.focus(_flip(), now=1.0)
        flow.sync(_flip(status="dismissed"), now=2.0)
        self.assertIsNone(flow.session)
        with self.assertRaises(wf.InvalidStateError):
            flow.request_auto_fill(_flip())

    def test_observe_idle_result_destroys_session(self):
        flow = wf.GuidedWorkflow()
        flow.focus(_flip(), now=1.0)
        s = flow.observe(_widget(), None, now=2.0)
        self.assertEqual(s.step, "idle")
        self.assertIsNone(flow.focused_flip_id)


if __name__ == "__main__":
    unittest.main()
