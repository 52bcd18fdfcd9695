import unittest

import flip_stats
from flip_ledger import Flip


def _done(flip_id, profit, spent=1000, bought_at=0.0, sold_at=3600.0, item_id=1):
    received = spent + profit
    return Flip(
        flip_id=flip_id,
        item_id=item_id,
        status="completed",
        quantity_bought=10,
        quantity_sold=10,
        gross_spent=spent,
        gross_received=received,
        tax_paid=0,
        realized_profit=profit,
        created_at=bought_at,
        bought_at=bought_at,
        sold_at=sold_at,
    )


class SummarizeTests(unittest.TestCase):
    def test_empty_input_gives_zero_summary(self):
        s = flip_stats.summarize([])
        self.assertEqual(s.completed, 0)
        self.assertEqual(s.total_profit, 0)
        self.assertEqual(s.win_rate, 0.0)

    def test_ignores_open_flips(self):
        open_flip = Flip(flip_id=9, item_id=1, status="active", quantity_bought=5, gross_spent=50)
        s = flip_stats.summarize([open_flip, _done(1, 100)])
        self.assertEqual(s.completed, 1)

    def test_profit_roi_and_rates(self):
        flips = [
            _done(1, 100, bought_at=0.0, sold_at=1800.0),
            _done(2, -50, bought_at=600.0, sold_at=2400.0),
            _done(3, 250, bought_at=1200.0, sold_at=3600.0),
        ]
        s = flip_stats.summarize(flips)
        self.assertEqual(s.completed, 3)
        self.assertEqual(s.wins, 2)
        self.assertEqual(s.losses, 1)
        self.assertAlmostEqual(s.win_rate, 2 / 3)
        self.assertEqual(s.total_profit, 300)
        self.assertAlmostEqual(s.mean_profit, 100.0)
        self.assertAlmostEqual(s.median_profit, 100.0)
        self.assertEqual(s.best_profit, 250)
        self.assertEqual(s.worst_profit, -50)
        self.assertEqual(s.total_spent, 3000)
        self.assertAlmostEqual(s.roi_pct, 10.0)
        self.assertAlmostEqual(s.mean_hold_sec, 2000.0)
        # 300 gp over one hour of wall-clock
        self.assertAlmostEqual(s.gp_per_hour, 300.0)

    def test_per_item_profit_sorted_best_first(self):
        flips = [_done(1, 10, item_id=5), _done(2, 90, item_id=6), _done(3, 20, item_id=5)]
        self.assertEqual(list(flip_stats.per_item_profit(flips).items()), [(6, 90), (5, 30)])


class FormatTests(unittest.TestCase):
    def test_format_gp(self):
        self.assertEqual(flip_stats.format_gp(1_500_000), "1.5M")
        self.assertEqual(flip_stats.format_gp(500_000), "500.0K")
        self.assertEqual(flip_stats.format_gp(100), "100")

    def test_format_gp_signed(self):
        self.assertEqual(flip_stats.format_gp_signed(-1_500_000), "-1.5M")
        self.assertEqual(flip_stats.format_gp_signed(-100), "-100")
        self.assertEqual(flip_stats.format_gp_signed(2_000), "2.0K")

    def test_format_roi_and_duration(self):
        self.assertEqual(flip_stats.format_roi(5.234), "5.2%")
        self.assertEqual(flip_stats.format_duration(3900), "1h 5m")
        self.assertEqual(flip_stats.format_duration(59), "0m")


if __name__ == "__main__":
    unittest.main()
