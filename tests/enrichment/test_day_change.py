"""
Unit tests for day change and country derivation.
"""

import unittest

from portsync.enrichment.country import derive_country
from portsync.enrichment.day_change import compute_day_change


class TestComputeDayChange(unittest.TestCase):
    def test_equity_change(self):
        change = compute_day_change("STK", 130.0, 125.0, 100)

        self.assertAlmostEqual(change.amount, 500.0)
        self.assertAlmostEqual(change.percent, 4.0)

    def test_negative_change(self):
        change = compute_day_change("STK", 95.0, 100.0, 10)

        self.assertAlmostEqual(change.amount, -50.0)
        self.assertAlmostEqual(change.percent, -5.0)

    def test_bond_amount_is_scaled_by_ten(self):
        # 101.5 vs 100 percent of par on 10,000 units
        change = compute_day_change("BOND", 101.5, 100.0, 10000)

        self.assertAlmostEqual(change.amount, 150000.0)
        self.assertAlmostEqual(change.percent, 1.5)

    def test_short_position_sign(self):
        change = compute_day_change("STK", 110.0, 100.0, -20)

        self.assertAlmostEqual(change.amount, -200.0)
        self.assertAlmostEqual(change.percent, 10.0)

    def test_guards(self):
        self.assertIsNone(compute_day_change("STK", None, 100.0, 10))
        self.assertIsNone(compute_day_change("STK", 100.0, None, 10))
        self.assertIsNone(compute_day_change("STK", 0.0, 100.0, 10))
        self.assertIsNone(compute_day_change("STK", 100.0, -1.0, 10))
        self.assertIsNone(compute_day_change("STK", 100.0, 100.0, 10))
        self.assertIsNone(compute_day_change("STK", float("nan"), 100.0, 10))


class TestDeriveCountry(unittest.TestCase):
    def test_known_exchanges(self):
        self.assertEqual(derive_country("NASDAQ"), "United States")
        self.assertEqual(derive_country("sehk"), "Hong Kong")
        self.assertEqual(derive_country("LSE"), "United Kingdom")

    def test_unknown_or_missing_exchange(self):
        self.assertEqual(derive_country("MOON"), "")
        self.assertEqual(derive_country(""), "")
        self.assertEqual(derive_country(None), "")

    def test_treasury_symbol_wins_over_exchange(self):
        self.assertEqual(derive_country("SMART", "US-T 4 1/2 11/15/33"), "United States")


if __name__ == "__main__":
    unittest.main()
