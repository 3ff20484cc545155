"""
Simple simulation for the CDP ledger engine.

This script walks through one liquidation that is partly offset by the Stability
Pool and partly redistributed, printing the ledger state at each stage.
"""

import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from fixed_point import from_fixed, to_fixed
from ledger_config import LedgerConfig, configure_logging
from ledger_engine import LedgerEngine


def print_state(engine):
    state = engine.get_system_state()
    print(f"  P: {from_fixed(state['P'])} (epoch {state['epoch']}, scale {state['scale']})")
    print(f"  Stability pool deposits: {from_fixed(state['total_deposits']):.4f}")
    print(f"  Active debt: {from_fixed(state['active_debt']):.4f}")
    print(f"  Debt pending redistribution: {from_fixed(state['pending_debt']):.4f}")
    print(f"  Number of positions: {state['active_positions']}")
    if state['tcr'] is not None:
        print(f"  TCR: {from_fixed(state['tcr']):.4f}")


def run_basic_simulation():
    config = LedgerConfig.from_env()
    configure_logging(config.log_level)

    engine = LedgerEngine({"WETH": to_fixed(2000), "WBTC": to_fixed(60000)}, config=config)

    print("Opening positions...")
    engine.open_position("alice", {"WETH": to_fixed(10)}, to_fixed(12000))
    engine.open_position("bob", {"WETH": to_fixed(5), "WBTC": to_fixed("0.5")}, to_fixed(20000))
    engine.open_position("carol", {"WETH": to_fixed(20), "WBTC": to_fixed(1)}, to_fixed(30000))
    for account, position in engine.redistribution.positions.items():
        coll = ", ".join(f"{from_fixed(v)} {a}" for a, v in sorted(position.coll.items()))
        print(f"  {account}: {coll}, debt {from_fixed(position.debt)}")

    print("\nAdding to stability pool...")
    engine.stability_pool.provide_to_sp("sp_user_1", to_fixed(5000))
    engine.stability_pool.provide_to_sp("sp_user_2", to_fixed(3000))
    print_state(engine)

    print("\nLiquidating alice (12000 debt against 8000 in the pool)...")
    values = engine.liquidate_position("alice")
    print(f"  Offset: {from_fixed(values.debt_to_offset)}")
    print(f"  Redistributed: {from_fixed(values.debt_to_redistribute)}")
    print_state(engine)

    print("\nDepositor gains:")
    for depositor in ("sp_user_1", "sp_user_2"):
        gains = engine.stability_pool.get_depositor_coll_gains(depositor)
        deposit = engine.stability_pool.get_compounded_deposit(depositor)
        print(f"  {depositor}: deposit {from_fixed(deposit):.4f}, "
              f"gain {from_fixed(gains.get('WETH', 0)):.6f} WETH")

    print("\nPending redistribution rewards:")
    for account in sorted(engine.redistribution.positions):
        coll, debt = engine.redistribution.get_entire_position(account)
        pending = engine.redistribution.get_pending_rewards(account)
        print(f"  {account}: +{from_fixed(pending.coll.get('WETH', 0)):.6f} WETH, "
              f"+{from_fixed(pending.total_debt):.4f} debt (entire debt {from_fixed(debt):.4f})")


if __name__ == "__main__":
    run_basic_simulation()
