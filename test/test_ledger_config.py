"""
Unit tests for the ledger configuration.
"""

import unittest
import sys
import os
from dataclasses import FrozenInstanceError

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from distribution_accumulator import DistributionAccumulator
from ledger_config import DECIMAL_PRECISION, DEFAULT_CONFIG, SCALE_FACTOR, LedgerConfig


class TestLedgerConfig(unittest.TestCase):
    def test_defaults(self):
        self.assertEqual(DEFAULT_CONFIG.decimal_precision, 10 ** 18)
        self.assertEqual(DEFAULT_CONFIG.scale_factor, 10 ** 9)
        self.assertEqual(DEFAULT_CONFIG.dust_divisor, 10 ** 9)
        self.assertEqual(DEFAULT_CONFIG.min_product, SCALE_FACTOR)

    def test_validation(self):
        with self.assertRaises(ValueError):
            LedgerConfig(scale_factor=1)
        with self.assertRaises(ValueError):
            LedgerConfig(scale_factor=7)
        with self.assertRaises(ValueError):
            LedgerConfig(dust_divisor=0)

    def test_frozen(self):
        with self.assertRaises(FrozenInstanceError):
            DEFAULT_CONFIG.scale_factor = 10

    def test_from_env(self):
        config = LedgerConfig.from_env({
            "CDP_LEDGER_SCALE_FACTOR": "1000",
            "CDP_LEDGER_LOG_LEVEL": "DEBUG",
        })
        self.assertEqual(config.scale_factor, 1000)
        self.assertEqual(config.dust_divisor, 10 ** 9)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.decimal_precision, DECIMAL_PRECISION)

        self.assertEqual(LedgerConfig.from_env({}), DEFAULT_CONFIG)

        with self.assertRaises(ValueError):
            LedgerConfig.from_env({"CDP_LEDGER_DUST_DIVISOR": "lots"})
        with self.assertRaises(ValueError):
            LedgerConfig.from_env({"CDP_LEDGER_SCALE_FACTOR": "3"})

    def test_small_scale_factor_shifts_sooner(self):
        acc = DistributionAccumulator(LedgerConfig(scale_factor=10 ** 3))
        acc.update_and_snapshot("alice", 10 ** 21)
        # Leaves 1e-16 of the pool: P would drop to 99, under the 1000 floor
        acc.offset(10 ** 21 - 10 ** 5, ["WETH"], [10 ** 18])
        self.assertEqual(acc.current_scale, 1)
        self.assertGreaterEqual(acc.P, 10 ** 3)


if __name__ == "__main__":
    unittest.main()
