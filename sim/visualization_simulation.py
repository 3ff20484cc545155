"""
Visualization simulation for the CDP ledger engine.

This script runs a random scenario and plots how P, the epoch/scale counters and
the pool balances evolve.
"""

import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from ledger_config import LedgerConfig, configure_logging
from simulation import plot_history, run_random_scenario


def run_visualization_simulation(seed=42, n_steps=300):
    config = LedgerConfig.from_env()
    configure_logging(config.log_level)

    print(f"\nRunning {n_steps} random steps (seed {seed})...")
    history = run_random_scenario(seed=seed, n_steps=n_steps, config=config)

    print("\nSimulation Results:")
    for action, count in history["counts"].items():
        print(f"  {action}: {count}")
    print(f"  skipped: {history['skipped']}")
    print(f"  final epoch: {history['epoch'][-1]}, final scale: {history['scale'][-1]}")
    print(f"  largest deposit gap (wei): {max(history['deposit_gap'])}")

    plot_history(history, show=True)


if __name__ == "__main__":
    run_visualization_simulation()
