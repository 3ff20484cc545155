"""
Unit tests for the LedgerEngine wiring: positions, liquidation and reporting.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from ledger_config import DECIMAL_PRECISION
from ledger_engine import LedgerEngine, LiquidationValues, PriceFeed
from ledger_errors import PreconditionError

TOKEN = DECIMAL_PRECISION
PRICES = {"WETH": 2000 * TOKEN, "WBTC": 60000 * TOKEN}


class TestPositions(unittest.TestCase):
    def setUp(self):
        self.engine = LedgerEngine(PRICES)

    def test_open_adjust_close(self):
        self.engine.open_position("bob", {"WETH": TOKEN}, 0)
        self.engine.open_position("alice", {"WETH": 10 * TOKEN}, 10000 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_coll_balance("WETH"), 11 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_debt(), 10000 * TOKEN)

        self.engine.adjust_position("alice", {"WETH": 5 * TOKEN}, -1000 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_coll_balance("WETH"), 16 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_debt(), 9000 * TOKEN)
        self.assertEqual(self.engine.redistribution.get_stake("alice", "WETH"), 15 * TOKEN)

        coll, debt = self.engine.close_position("alice")
        self.assertEqual(coll, {"WETH": 15 * TOKEN})
        self.assertEqual(debt, 9000 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_coll_balance("WETH"), TOKEN)
        self.assertEqual(self.engine.active_pool.get_debt(), 0)
        self.assertEqual(self.engine.redistribution.get_total_stake("WETH"), TOKEN)

    def test_invalid_position_changes(self):
        self.engine.open_position("alice", {"WETH": 10 * TOKEN}, 10000 * TOKEN)
        with self.assertRaises(PreconditionError):
            self.engine.open_position("alice", {"WETH": TOKEN}, 0)
        with self.assertRaises(PreconditionError):
            self.engine.open_position("bob", {"WETH": 0}, 0)
        with self.assertRaises(PreconditionError):
            self.engine.adjust_position("alice", {"WETH": -11 * TOKEN})
        with self.assertRaises(PreconditionError):
            self.engine.adjust_position("alice", debt_change=-10001 * TOKEN)
        with self.assertRaises(PreconditionError):
            self.engine.close_position("nobody")

        position = self.engine.redistribution.get_position("alice")
        self.assertEqual(position.coll, {"WETH": 10 * TOKEN})
        self.assertEqual(position.debt, 10000 * TOKEN)

    def test_price_feed(self):
        feed = PriceFeed({"WETH": 2000 * TOKEN})
        self.assertEqual(feed.fetch_price("WETH"), 2000 * TOKEN)
        with self.assertRaises(PreconditionError):
            feed.fetch_price("WBTC")
        feed.set_price("WBTC", 60000 * TOKEN)
        self.assertEqual(feed.fetch_price("WBTC"), 60000 * TOKEN)


class TestLiquidation(unittest.TestCase):
    def setUp(self):
        self.engine = LedgerEngine(PRICES)
        self.engine.open_position("alice", {"WETH": 10 * TOKEN}, 12000 * TOKEN)
        self.engine.open_position("bob", {"WETH": 20 * TOKEN}, 10000 * TOKEN)
        self.engine.open_position("carol", {"WETH": 10 * TOKEN, "WBTC": TOKEN}, 20000 * TOKEN)

    def test_liquidation_fully_offset(self):
        self.engine.stability_pool.provide_to_sp("dave", 20000 * TOKEN)

        values = self.engine.liquidate_position("alice")
        self.assertEqual(values.debt_to_offset, 12000 * TOKEN)
        self.assertEqual(values.debt_to_redistribute, 0)
        self.assertEqual(values.coll_to_send_to_sp, {"WETH": 10 * TOKEN})

        self.assertNotIn("alice", self.engine.redistribution.positions)
        self.assertEqual(self.engine.stability_pool.get_total_deposits(), 8000 * TOKEN)
        self.assertEqual(self.engine.stability_pool.get_coll_balance("WETH"), 10 * TOKEN)
        self.assertEqual(self.engine.stability_pool.get_depositor_coll_gains("dave"), {"WETH": 10 * TOKEN})
        self.assertEqual(self.engine.active_pool.get_debt(), 30000 * TOKEN)
        self.assertEqual(self.engine.active_pool.get_coll_balance("WETH"), 30 * TOKEN)
        self.assertEqual(self.engine.redistribution.get_total_stake("WETH"), 30 * TOKEN)

    def test_liquidation_partly_redistributed(self):
        self.engine.stability_pool.provide_to_sp("dave", 8000 * TOKEN)

        values = self.engine.liquidate_position("alice")
        self.assertEqual(values.debt_to_offset, 8000 * TOKEN)
        self.assertEqual(values.debt_to_redistribute, 4000 * TOKEN)
        to_sp = 10 * TOKEN * 8000 // 12000
        self.assertEqual(values.coll_to_send_to_sp, {"WETH": to_sp})
        self.assertEqual(values.coll_to_redistribute, {"WETH": 10 * TOKEN - to_sp})

        # The pool was emptied
        self.assertEqual(self.engine.accumulator.current_epoch, 1)
        self.assertEqual(self.engine.default_pool.get_debt(), 4000 * TOKEN)
        self.assertEqual(self.engine.default_pool.get_coll_balance("WETH"), 10 * TOKEN - to_sp)

        bob = self.engine.redistribution.get_pending_rewards("bob")
        carol = self.engine.redistribution.get_pending_rewards("carol")
        pending_debt = bob.total_debt + carol.total_debt
        self.assertLessEqual(pending_debt, 4000 * TOKEN)
        # Each position floors its share: under one wei per token of stake
        self.assertGreaterEqual(pending_debt, 4000 * TOKEN - 30)
        self.assertAlmostEqual(bob.total_debt, 2 * carol.total_debt, delta=2)
        self.assertNotIn("WBTC", carol.debt)

        # One system snapshot after the liquidation
        redistribution = self.engine.redistribution
        self.assertEqual(redistribution.total_stakes_snapshot["WETH"], 30 * TOKEN)
        self.assertEqual(redistribution.total_collateral_snapshot["WETH"], 40 * TOKEN - to_sp)

    def test_adjust_applies_pending_rewards(self):
        self.engine.stability_pool.provide_to_sp("dave", 8000 * TOKEN)
        self.engine.liquidate_position("alice")
        pending = self.engine.redistribution.get_pending_rewards("bob")
        active_debt = self.engine.active_pool.get_debt()

        position = self.engine.adjust_position("bob")
        self.assertEqual(position.debt, 10000 * TOKEN + pending.total_debt)
        self.assertEqual(position.coll["WETH"], 20 * TOKEN + pending.coll["WETH"])
        self.assertEqual(self.engine.active_pool.get_debt(), active_debt + pending.total_debt)
        self.assertEqual(self.engine.default_pool.get_debt(), 4000 * TOKEN - pending.total_debt)
        self.assertFalse(self.engine.redistribution.has_pending_rewards("bob"))

        # The new stake is priced off the post-liquidation snapshot
        snapshot = self.engine.redistribution
        expected_stake = (position.coll["WETH"] * snapshot.total_stakes_snapshot["WETH"]
                          // snapshot.total_collateral_snapshot["WETH"])
        self.assertEqual(self.engine.redistribution.get_stake("bob", "WETH"), expected_stake)

    def test_liquidation_without_other_stakers_fails_cleanly(self):
        engine = LedgerEngine(PRICES)
        engine.open_position("alice", {"WBTC": TOKEN}, 30000 * TOKEN)
        engine.open_position("bob", {"WETH": 20 * TOKEN}, 10000 * TOKEN)

        with self.assertRaises(PreconditionError):
            engine.liquidate_position("alice")
        self.assertIn("alice", engine.redistribution.positions)
        self.assertEqual(engine.active_pool.get_debt(), 40000 * TOKEN)
        self.assertEqual(engine.redistribution.get_total_stake("WBTC"), TOKEN)

    def test_last_holder_of_an_asset_is_kept(self):
        self.engine.stability_pool.provide_to_sp("dave", 50000 * TOKEN)
        # carol holds the only WBTC stake
        with self.assertRaises(PreconditionError):
            self.engine.liquidate_position("carol")
        with self.assertRaises(PreconditionError):
            self.engine.close_position("carol")
        with self.assertRaises(PreconditionError):
            self.engine.adjust_position("carol", {"WBTC": -TOKEN})
        self.assertEqual(self.engine.redistribution.get_total_stake("WBTC"), TOKEN)

        # Withdrawing part of it is fine
        self.engine.adjust_position("carol", {"WBTC": -TOKEN // 2})
        self.assertEqual(self.engine.redistribution.get_total_stake("WBTC"), TOKEN // 2)

    def test_batch_liquidation_skips_failures(self):
        self.engine.open_position("erin", {"WETH": TOKEN}, 0)
        self.engine.stability_pool.provide_to_sp("dave", 5000 * TOKEN)

        with self.assertLogs("ledger_engine", level="WARNING"):
            totals, liquidated = self.engine.liquidate_positions(["erin", "alice"])
        self.assertEqual(liquidated, ["alice"])
        self.assertIsInstance(totals, LiquidationValues)
        self.assertEqual(totals.debt_to_offset + totals.debt_to_redistribute, 12000 * TOKEN)

        # erin picked up a share of alice's redistributed debt
        self.assertGreater(self.engine.redistribution.get_pending_rewards("erin").total_debt, 0)

        # frank opens after the batch, so nothing was redistributed to him
        self.engine.open_position("frank", {"WETH": TOKEN}, 0)
        with self.assertRaises(PreconditionError):
            self.engine.liquidate_positions(["frank"])
        self.assertIn("frank", self.engine.redistribution.positions)

    def test_system_state(self):
        self.engine.stability_pool.provide_to_sp("dave", 3000 * TOKEN)
        self.engine.stability_pool.provide_to_sp("erin", 3000 * TOKEN)
        self.engine.liquidate_position("bob")

        state = self.engine.get_system_state()
        self.assertEqual(state["active_positions"], 2)
        self.assertEqual(state["total_deposits"], 0)
        self.assertEqual(state["epoch"], 1)
        self.assertEqual(state["pending_debt"], 4000 * TOKEN)
        self.assertGreaterEqual(state["deposit_gap"], 0)

        # 28 WETH and 1 WBTC back 32000 active and 4000 pending debt
        self.assertEqual(state["tcr"], 116000 * TOKEN * DECIMAL_PRECISION // (36000 * TOKEN))
        self.assertEqual(LedgerEngine(PRICES).get_total_collateral_ratio(), None)


if __name__ == "__main__":
    unittest.main()
