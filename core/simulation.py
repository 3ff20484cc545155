"""
Random scenario simulation for the CDP ledger engine.

Drives deposits, withdrawals, position changes and liquidations with a seeded
numpy generator and records how the accumulators evolve. The recorded
`deposit_gap` (recorded total deposits minus the sum of compounded deposits) is
the rounding the ledger has kept. It is mostly positive, and can dip below
zero by about one rounding unit per offset.
"""

import logging

import matplotlib.pyplot as plt
import numpy as np

from ledger_config import DECIMAL_PRECISION
from ledger_engine import LedgerEngine
from ledger_errors import PreconditionError

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {
    "WETH": 2000 * DECIMAL_PRECISION,
    "WBTC": 60000 * DECIMAL_PRECISION,
}

ACTIONS = ("deposit", "withdraw", "open", "adjust", "liquidate", "price")


def _tokens(amount):
    """numpy scalar token count -> fixed-point Python int."""
    return int(amount) * DECIMAL_PRECISION


def _open_random_position(engine, rng, account, assets):
    coll = {}
    value = 0
    for asset in assets:
        if rng.random() < 0.7 or not coll:
            price = engine.price_feed.fetch_price(asset)
            amount = _tokens(rng.integers(1, 50)) * DECIMAL_PRECISION // price * 1000
            if amount == 0:
                continue
            coll[asset] = amount
            value += amount * price // DECIMAL_PRECISION
    debt = value * 100 // int(rng.integers(150, 300))
    engine.open_position(account, coll, debt)


def run_random_scenario(seed=0, n_steps=200, n_depositors=5, initial_positions=6,
                        prices=None, config=None):
    """
    Runs a random sequence of ledger operations.

    Args:
        seed: Seed for the numpy generator
        n_steps: Number of random actions
        n_depositors: Size of the depositor population
        initial_positions: Positions opened before the first step
        prices: Optional dict of asset -> fixed-point price
        config: Optional LedgerConfig

    Returns:
        Dictionary of numpy arrays (one entry per step) plus the final engine
    """
    rng = np.random.default_rng(seed)
    engine = LedgerEngine(prices or DEFAULT_PRICES, config=config)
    assets = sorted(engine.price_feed.prices)
    depositors = [f"depositor{i}" for i in range(n_depositors)]

    next_position = 0
    for _ in range(initial_positions):
        _open_random_position(engine, rng, f"position{next_position}", assets)
        next_position += 1

    history = {
        "P": np.zeros(n_steps, dtype=object),
        "epoch": np.zeros(n_steps, dtype=np.int64),
        "scale": np.zeros(n_steps, dtype=np.int64),
        "total_deposits": np.zeros(n_steps, dtype=object),
        "deposit_gap": np.zeros(n_steps, dtype=object),
        "active_positions": np.zeros(n_steps, dtype=np.int64),
        "pending_debt": np.zeros(n_steps, dtype=object),
    }
    counts = {action: 0 for action in ACTIONS}
    skipped = 0

    for step in range(n_steps):
        action = ACTIONS[int(rng.integers(len(ACTIONS)))]
        try:
            if action == "deposit":
                depositor = depositors[int(rng.integers(n_depositors))]
                engine.stability_pool.provide_to_sp(depositor, _tokens(rng.integers(100, 5000)))
            elif action == "withdraw":
                depositor = depositors[int(rng.integers(n_depositors))]
                engine.stability_pool.withdraw_from_sp(depositor, _tokens(rng.integers(50, 3000)))
            elif action == "open" or len(engine.redistribution.positions) < 3:
                _open_random_position(engine, rng, f"position{next_position}", assets)
                next_position += 1
            elif action == "adjust":
                account = rng.choice(sorted(engine.redistribution.positions))
                engine.adjust_position(str(account), debt_change=-_tokens(rng.integers(0, 10)) // 100)
            elif action == "liquidate":
                account = rng.choice(sorted(engine.redistribution.positions))
                engine.liquidate_position(str(account))
            elif action == "price":
                asset = assets[int(rng.integers(len(assets)))]
                price = engine.price_feed.fetch_price(asset)
                shock = int(rng.integers(90, 111))
                engine.price_feed.set_price(asset, price * shock // 100)
            counts[action] += 1
        except PreconditionError as e:
            logger.debug("Step %d %s skipped: %s", step, action, e)
            skipped += 1

        state = engine.get_system_state()
        history["P"][step] = state["P"]
        history["epoch"][step] = state["epoch"]
        history["scale"][step] = state["scale"]
        history["total_deposits"][step] = state["total_deposits"]
        history["deposit_gap"][step] = state["deposit_gap"]
        history["active_positions"][step] = state["active_positions"]
        history["pending_debt"][step] = state["pending_debt"]

    history["counts"] = counts
    history["skipped"] = skipped
    history["engine"] = engine
    return history


def plot_history(history, show=True):
    """
    Plots P, epoch/scale, total deposits and pending redistributed debt.

    Args:
        history: Result of run_random_scenario
        show: Whether to call plt.show()

    Returns:
        The matplotlib Figure
    """
    steps = np.arange(len(history["epoch"]))
    fig, axs = plt.subplots(4, 1, figsize=(12, 16), sharex=True)

    # P is an arbitrary-precision int; plot it as a fraction of 1.0
    axs[0].plot(steps, [p / DECIMAL_PRECISION for p in history["P"]])
    axs[0].set_title('Product P')
    axs[0].set_ylabel('P / 1e18')

    axs[1].step(steps, history["epoch"], label='epoch')
    axs[1].step(steps, history["scale"], label='scale')
    axs[1].set_title('Epoch and Scale')
    axs[1].legend()

    axs[2].plot(steps, [d / DECIMAL_PRECISION for d in history["total_deposits"]])
    axs[2].set_title('Total Stability Pool Deposits')
    axs[2].set_ylabel('Tokens')

    axs[3].plot(steps, [d / DECIMAL_PRECISION for d in history["pending_debt"]])
    axs[3].set_title('Debt Pending Redistribution')
    axs[3].set_ylabel('Tokens')
    axs[3].set_xlabel('Step')

    plt.tight_layout()
    if show:
        plt.show()
    return fig
