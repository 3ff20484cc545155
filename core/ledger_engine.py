"""
Ledger Engine for the CDP protocol model.

This module wires the pools and both ledgers together. It is the collaborator that
hands liquidated debt and collateral to the Stability Pool and the Redistribution
Ledger, and it keeps the Active and Default Pools in step with the recorded
positions. Which positions to liquidate, penalties and collateral ratio policy are
left to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from active_pool import ActivePool
from default_pool import DefaultPool
from fixed_point import dec_div, dec_mul, mul_div, require_int, require_non_negative
from ledger_config import DEFAULT_CONFIG, LedgerConfig
from ledger_errors import PreconditionError
from redistribution_ledger import RedistributionLedger
from stability_pool import StabilityPool

logger = logging.getLogger(__name__)


class PriceFeed:
    """Simple per-asset price feed for simulations. Prices are fixed point."""

    def __init__(self, prices=None):
        self.prices = dict(prices or {})

    def fetch_price(self, asset):
        """Returns the current price of an asset."""
        if asset not in self.prices:
            raise PreconditionError(f"No price for {asset}")
        return self.prices[asset]

    def set_price(self, asset, price):
        """Sets a new price."""
        require_non_negative(price, "price")
        self.prices[asset] = price


@dataclass
class LiquidationValues:
    """
    How a liquidated position's debt and collateral were split.
    """
    debt_to_offset: int = 0
    coll_to_send_to_sp: Dict[str, int] = field(default_factory=dict)
    debt_to_redistribute: int = 0
    coll_to_redistribute: Dict[str, int] = field(default_factory=dict)

    def add(self, other):
        """Adds another liquidation's values to these running totals."""
        self.debt_to_offset += other.debt_to_offset
        self.debt_to_redistribute += other.debt_to_redistribute
        for asset, amount in other.coll_to_send_to_sp.items():
            self.coll_to_send_to_sp[asset] = self.coll_to_send_to_sp.get(asset, 0) + amount
        for asset, amount in other.coll_to_redistribute.items():
            self.coll_to_redistribute[asset] = self.coll_to_redistribute.get(asset, 0) + amount


class LedgerEngine:
    """
    Combines the pools, the Stability Pool and the Redistribution Ledger.
    """

    def __init__(self, prices=None, config: Optional[LedgerConfig] = None):
        self.config = config or DEFAULT_CONFIG

        # Set up price feed
        self.price_feed = PriceFeed(prices)

        # Create pools
        self.active_pool = ActivePool()
        self.default_pool = DefaultPool(self.active_pool)
        self.active_pool.default_pool = self.default_pool
        self.stability_pool = StabilityPool(self.active_pool, config=self.config)

        self.redistribution = RedistributionLedger(
            self.active_pool, self.default_pool, self.price_feed, config=self.config
        )

    @property
    def accumulator(self):
        return self.stability_pool.accumulator

    # --- Position hooks ---

    def open_position(self, account, coll: Dict[str, int], debt):
        """
        Records a new position and moves its collateral and debt into the Active Pool.

        Args:
            account: Account id
            coll: Dict of asset -> collateral amount
            debt: Debt drawn against the collateral

        Returns:
            The recorded Position
        """
        if account in self.redistribution.positions:
            raise PreconditionError(f"Position {account!r} already exists")
        for asset, amount in coll.items():
            require_non_negative(amount, f"collateral for {asset}")
        require_non_negative(debt, "debt")
        if not any(coll.values()):
            raise PreconditionError("A position needs some collateral")

        position = self.redistribution.record_position(account, coll, debt)

        for asset, amount in coll.items():
            if amount > 0:
                self.active_pool.receive_coll(asset, amount)
        if debt > 0:
            self.active_pool.increase_debt(debt)
        return position

    def adjust_position(self, account, coll_changes: Optional[Dict[str, int]] = None, debt_change=0):
        """
        Applies pending rewards, then changes a position's collateral and debt.

        Args:
            account: Account id
            coll_changes: Dict of asset -> signed collateral change
            debt_change: Signed debt change

        Returns:
            The updated Position
        """
        coll_changes = coll_changes or {}
        for asset, change in coll_changes.items():
            require_int(change, f"collateral change for {asset}")
        require_int(debt_change, "debt_change")

        self.redistribution.apply_pending_rewards(account)
        position = self.redistribution.get_position(account)

        new_coll = dict(position.coll)
        for asset, change in coll_changes.items():
            new_coll[asset] = new_coll.get(asset, 0) + change
            if new_coll[asset] < 0:
                raise PreconditionError(f"Cannot withdraw more {asset} than the position holds")
        new_debt = position.debt + debt_change
        if new_debt < 0:
            raise PreconditionError("Cannot repay more than the position owes")
        self._require_not_last_staker(position, [a for a, amount in new_coll.items() if amount == 0])

        self.redistribution.record_position(account, new_coll, new_debt)

        for asset, change in coll_changes.items():
            if change > 0:
                self.active_pool.receive_coll(asset, change)
            elif change < 0:
                self.active_pool.send_coll(asset, -change)
        if debt_change > 0:
            self.active_pool.increase_debt(debt_change)
        elif debt_change < 0:
            self.active_pool.decrease_debt(-debt_change)
        return position

    def close_position(self, account):
        """
        Applies pending rewards and releases a position's collateral and debt.

        Returns:
            Tuple of (collateral returned, debt repaid)
        """
        self.redistribution.apply_pending_rewards(account)
        self._require_not_last_staker(self.redistribution.get_position(account))
        position = self.redistribution.remove_stake(account)

        for asset, amount in position.coll.items():
            if amount > 0:
                self.active_pool.send_coll(asset, amount)
        if position.debt > 0:
            self.active_pool.decrease_debt(position.debt)
        return dict(position.coll), position.debt

    def _require_not_last_staker(self, position, assets=None):
        # Every pooled asset keeps at least one staked position
        for asset in position.stakes if assets is None else assets:
            stake = position.stakes.get(asset, 0)
            if stake > 0 and self.redistribution.get_total_stake(asset) == stake:
                raise PreconditionError(f"Cannot remove the last position holding {asset}")

    # --- Liquidation ---

    def _get_offset_and_redistribution_vals(self, debt, coll, deposits_in_sp):
        """
        Splits a position's debt between the Stability Pool and redistribution.

        Collateral follows the debt pro rata; the floor remainder is redistributed.
        """
        values = LiquidationValues()
        values.debt_to_offset = min(debt, deposits_in_sp)
        values.debt_to_redistribute = debt - values.debt_to_offset
        for asset, amount in coll.items():
            to_sp = mul_div(amount, values.debt_to_offset, debt)
            values.coll_to_send_to_sp[asset] = to_sp
            values.coll_to_redistribute[asset] = amount - to_sp
        return values

    def _check_redistribution_has_stakers(self, account, values):
        if values.debt_to_redistribute == 0:
            return
        total_value = sum(
            dec_mul(amount, self.price_feed.fetch_price(asset), self.config.decimal_precision)
            for asset, amount in values.coll_to_redistribute.items()
        )
        if total_value == 0:
            raise PreconditionError("No collateral value left to redistribute the debt against")
        position = self.redistribution.get_position(account)
        for asset, amount in values.coll_to_redistribute.items():
            if amount == 0:
                continue
            remaining = self.redistribution.get_total_stake(asset) - position.stakes.get(asset, 0)
            if remaining == 0:
                raise PreconditionError(
                    f"Cannot redistribute {asset}: no other active position holds it"
                )

    def liquidate_position(self, account, take_snapshot=True):
        """
        Liquidates a single position chosen by the caller.

        The debt is offset against the Stability Pool as far as deposits allow and
        the rest is redistributed to the remaining positions.

        Args:
            account: Account id of the position to liquidate
            take_snapshot: Whether to update the system snapshots afterwards

        Returns:
            LiquidationValues with the split that was applied

        Raises:
            PreconditionError: If the position has no debt, holds the last stake
                in an asset, or redistribution has nobody to receive an asset
        """
        self.redistribution.apply_pending_rewards(account)
        position = self.redistribution.get_position(account)
        if position.debt == 0:
            raise PreconditionError(f"Position {account!r} has no debt to liquidate")
        if not position.coll:
            raise PreconditionError(f"Position {account!r} has no collateral to liquidate")
        self._require_not_last_staker(position)

        values = self._get_offset_and_redistribution_vals(
            position.debt, position.coll, self.stability_pool.get_total_deposits()
        )
        self._check_redistribution_has_stakers(account, values)

        # The liquidated position must not share in its own redistribution
        self.redistribution.remove_stake(account)
        self.active_pool.decrease_debt(position.debt)

        assets = list(position.coll)
        if values.debt_to_offset > 0:
            self.stability_pool.offset(
                values.debt_to_offset, assets, [values.coll_to_send_to_sp[a] for a in assets]
            )
        if values.debt_to_redistribute > 0:
            self.redistribution.redistribute(
                values.debt_to_redistribute, assets, [values.coll_to_redistribute[a] for a in assets]
            )

        if take_snapshot:
            self.redistribution.take_system_snapshot()

        logger.info(
            "Liquidated %s: %d offset, %d redistributed",
            account, values.debt_to_offset, values.debt_to_redistribute,
        )
        return values

    def liquidate_positions(self, accounts: Iterable[str]):
        """
        Liquidates several positions and takes one system snapshot at the end.

        Positions that cannot be liquidated are skipped.

        Returns:
            Tuple of (LiquidationValues totals, list of liquidated account ids)
        """
        totals = LiquidationValues()
        liquidated = []
        for account in accounts:
            try:
                values = self.liquidate_position(account, take_snapshot=False)
            except PreconditionError as e:
                logger.warning("Skipping %s: %s", account, e)
                continue
            totals.add(values)
            liquidated.append(account)

        if not liquidated:
            raise PreconditionError("Nothing to liquidate")

        self.redistribution.take_system_snapshot()
        return totals, liquidated

    # --- Reporting ---

    def get_total_collateral_ratio(self):
        """
        Value of all position collateral over all position debt, pending included.

        Returns:
            Fixed-point ratio, or None while no debt is outstanding
        """
        total_debt = self.active_pool.get_debt() + self.default_pool.get_debt()
        if total_debt == 0:
            return None
        total_value = sum(
            dec_mul(
                self.active_pool.get_coll_balance(asset) + self.default_pool.get_coll_balance(asset),
                price,
                self.config.decimal_precision,
            )
            for asset, price in self.price_feed.prices.items()
        )
        return dec_div(total_value, total_debt, self.config.decimal_precision)

    def get_system_state(self):
        """Returns the current system state as a dictionary."""
        depositors = list(self.accumulator.deposits)
        compounded = sum(self.accumulator.get_compounded_principal(d) for d in depositors)
        return {
            'P': self.accumulator.P,
            'epoch': self.accumulator.current_epoch,
            'scale': self.accumulator.current_scale,
            'total_deposits': self.accumulator.get_total_principal(),
            'sum_compounded_deposits': compounded,
            'deposit_gap': self.accumulator.get_total_principal() - compounded,
            'active_positions': len(self.redistribution.positions),
            'active_debt': self.active_pool.get_debt(),
            'pending_debt': self.default_pool.get_debt(),
            'tcr': self.get_total_collateral_ratio(),
        }
