"""
Stake-Weighted Redistribution Ledger.

When a liquidation cannot be (fully) absorbed by the Stability Pool, the leftover
debt and collateral are spread across every active position, weighted by stake.
Like the Stability Pool this is done in O(1) with running sums:

- L_coll[asset]: collateral of that asset redistributed per unit of stake
- L_debt[asset]: debt attributed to holders of that asset per unit of stake

A position's pending rewards are stake * (L - snapshot.L). They must be applied
(merged into the recorded position and re-snapshotted) before the position's
collateral changes, otherwise the delta would be lost.

Stakes are not raw collateral amounts. After each liquidation batch the system
snapshots total stakes and total collateral, and new stakes are computed as
coll * total_stakes_snapshot / total_collateral_snapshot. This keeps late
positions from claiming rewards that accrued before they existed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from distribution_accumulator import validate_asset_amounts
from error_feedback import error_corrected_ratio
from fixed_point import dec_mul, mul_div, require_non_negative
from ledger_config import DEFAULT_CONFIG, LedgerConfig
from ledger_errors import InvariantViolation, PreconditionError, require_authorized

logger = logging.getLogger(__name__)


@dataclass
class Position:
    """Recorded collateral, debt and stakes of an active position."""
    coll: Dict[str, int] = field(default_factory=dict)    # asset -> collateral
    debt: int = 0
    stakes: Dict[str, int] = field(default_factory=dict)  # asset -> stake


@dataclass
class RewardSnapshot:
    """
    Values of L_coll and L_debt when the position was last updated.
    """
    coll: Dict[str, int] = field(default_factory=dict)  # asset -> L_coll
    debt: Dict[str, int] = field(default_factory=dict)  # asset -> L_debt


@dataclass
class PendingRewards:
    """Redistribution gains a position has accrued but not yet applied."""
    coll: Dict[str, int] = field(default_factory=dict)
    debt: Dict[str, int] = field(default_factory=dict)  # debt attributed via each asset's stake

    @property
    def total_debt(self):
        return sum(self.debt.values())

    def is_empty(self):
        return not any(self.coll.values()) and not any(self.debt.values())


@dataclass
class RedistributedShare:
    """What one asset's stakers received in a redistribution."""
    coll: int
    debt: int


class RedistributionLedger:
    """
    Tracks per-asset redistribution sums, stakes and the system snapshots used to price new stakes.
    """

    def __init__(self, active_pool=None, default_pool=None, price_feed=None,
                 config: Optional[LedgerConfig] = None, authorized_callers=None):
        # Connected collaborators
        self.active_pool = active_pool
        self.default_pool = default_pool
        self.price_feed = price_feed

        self.config = config or DEFAULT_CONFIG
        self.DECIMAL_PRECISION = self.config.decimal_precision

        # Running sums per unit staked
        self.L_coll: Dict[str, int] = {}
        self.L_debt: Dict[str, int] = {}

        self.total_stakes: Dict[str, int] = {}
        self.total_stakes_snapshot: Dict[str, int] = {}
        self.total_collateral_snapshot: Dict[str, int] = {}

        # Error trackers for redistribution calculation
        self.last_coll_error_redistribution: Dict[str, int] = {}
        self.last_debt_error_redistribution: Dict[str, int] = {}

        self.positions: Dict[str, Position] = {}
        self.reward_snapshots: Dict[str, RewardSnapshot] = {}

        self.authorized_callers = set(authorized_callers) if authorized_callers else set()

    # --- Getters ---

    def get_position(self, account):
        if account not in self.positions:
            raise PreconditionError(f"Position {account!r} does not exist")
        return self.positions[account]

    def get_total_stake(self, asset):
        return self.total_stakes.get(asset, 0)

    def get_stake(self, account, asset):
        position = self.positions.get(account)
        return position.stakes.get(asset, 0) if position else 0

    # --- Redistribution ---

    def _resolve_prices(self, assets, prices):
        if prices is not None:
            if len(prices) != len(assets):
                raise PreconditionError("Prices must be parallel to assets")
            for asset, price in zip(assets, prices):
                require_non_negative(price, f"price for {asset}")
            return list(prices)
        if self.price_feed is None:
            raise PreconditionError("No prices given and no price feed connected")
        return [self.price_feed.fetch_price(asset) for asset in assets]

    def _prorate_debt(self, debt_amount, values):
        """Splits debt by value share; the floor remainder goes to the largest-value asset."""
        total_value = sum(values)
        if total_value == 0:
            raise PreconditionError("Cannot prorate debt across collateral worth nothing")

        shares = [mul_div(debt_amount, value, total_value) for value in values]
        remainder = debt_amount - sum(shares)
        if remainder:
            shares[values.index(max(values))] += remainder
        return shares

    def redistribute(self, debt_amount, assets: Sequence[str], amounts: Sequence[int],
                     prices: Optional[Sequence[int]] = None, caller=None):
        """
        Redistributes debt and collateral to all active positions, weighted by stake.

        Debt is first prorated across the assets by the value of the collateral
        being redistributed, then each asset's collateral and debt share are
        spread over that asset's total stake. Assets nobody stakes are skipped.

        Args:
            debt_amount: Debt to redistribute
            assets: Collateral asset ids, unique
            amounts: Collateral amounts, parallel to assets
            prices: Optional fixed-point prices parallel to assets; read from the
                price feed when omitted
            caller: Identity of the calling collaborator

        Returns:
            Dict of asset -> RedistributedShare for every asset actually distributed

        Raises:
            PreconditionError: On malformed input, missing prices, or collateral
                the Active Pool does not hold
        """
        require_authorized(self.authorized_callers, caller)
        validate_asset_amounts(assets, amounts)
        require_non_negative(debt_amount, "debt_amount")

        if debt_amount == 0:
            logger.debug("Redistribution skipped: zero debt")
            return {}

        prices = self._resolve_prices(assets, prices)
        values = [dec_mul(amount, price, self.DECIMAL_PRECISION) for amount, price in zip(amounts, prices)]
        debt_shares = self._prorate_debt(debt_amount, values)

        updates = {}
        for asset, coll, debt_share in zip(assets, amounts, debt_shares):
            total_stake = self.total_stakes.get(asset, 0)
            if total_stake == 0:
                logger.debug("No stake in %s, skipping its share of the redistribution", asset)
                continue

            coll_per_unit, coll_error = error_corrected_ratio(
                coll, self.last_coll_error_redistribution.get(asset, 0), total_stake,
                precision=self.DECIMAL_PRECISION,
            )
            debt_per_unit, debt_error = error_corrected_ratio(
                debt_share, self.last_debt_error_redistribution.get(asset, 0), total_stake,
                precision=self.DECIMAL_PRECISION,
            )
            updates[asset] = (coll, debt_share, coll_per_unit, coll_error, debt_per_unit, debt_error)

        if self.active_pool is not None:
            for asset, (coll, *_rest) in updates.items():
                if coll > self.active_pool.get_coll_balance(asset):
                    raise PreconditionError(f"Active Pool does not hold {coll} of {asset} to redistribute")

        # Commit
        distributed = {}
        for asset, (coll, debt_share, coll_per_unit, coll_error, debt_per_unit, debt_error) in updates.items():
            self.L_coll[asset] = self.L_coll.get(asset, 0) + coll_per_unit
            self.L_debt[asset] = self.L_debt.get(asset, 0) + debt_per_unit
            self.last_coll_error_redistribution[asset] = coll_error
            self.last_debt_error_redistribution[asset] = debt_error

            if self.default_pool is not None and debt_share > 0:
                self.default_pool.increase_debt(asset, debt_share)
            if self.active_pool is not None and coll > 0:
                self.active_pool.send_coll_to_default_pool(asset, coll)

            distributed[asset] = RedistributedShare(coll=coll, debt=debt_share)

        logger.debug("Redistributed %d debt across %s", debt_amount, sorted(distributed))
        return distributed

    # --- Pending rewards ---

    def get_pending_rewards(self, account):
        """
        Calculates the redistribution rewards a position has accrued since its snapshot.

        Args:
            account: Account id

        Returns:
            PendingRewards with per-asset collateral and debt
        """
        pending = PendingRewards()
        position = self.positions.get(account)
        if position is None:
            return pending

        snapshot = self.reward_snapshots.get(account, RewardSnapshot())
        for asset, stake in position.stakes.items():
            if stake == 0:
                continue
            coll_delta = self.L_coll.get(asset, 0) - snapshot.coll.get(asset, 0)
            if coll_delta != 0:
                pending.coll[asset] = dec_mul(stake, coll_delta, self.DECIMAL_PRECISION)
            debt_delta = self.L_debt.get(asset, 0) - snapshot.debt.get(asset, 0)
            if debt_delta != 0:
                pending.debt[asset] = dec_mul(stake, debt_delta, self.DECIMAL_PRECISION)
        return pending

    def has_pending_rewards(self, account):
        position = self.positions.get(account)
        if position is None:
            return False
        snapshot = self.reward_snapshots.get(account, RewardSnapshot())
        for asset, stake in position.stakes.items():
            if stake == 0:
                continue
            if (self.L_coll.get(asset, 0) != snapshot.coll.get(asset, 0)
                    or self.L_debt.get(asset, 0) != snapshot.debt.get(asset, 0)):
                return True
        return False

    def get_entire_position(self, account):
        """Returns (coll, debt) including pending rewards, without applying them."""
        position = self.get_position(account)
        pending = self.get_pending_rewards(account)
        coll = dict(position.coll)
        for asset, amount in pending.coll.items():
            coll[asset] = coll.get(asset, 0) + amount
        return coll, position.debt + pending.total_debt

    def apply_pending_rewards(self, account, caller=None):
        """
        Merges pending rewards into the recorded position and re-snapshots it.

        Moves the applied collateral and debt from the Default Pool back to the
        Active Pool when the pools are connected.

        Returns:
            The PendingRewards that were applied
        """
        require_authorized(self.authorized_callers, caller)
        position = self.get_position(account)
        pending = self.get_pending_rewards(account)

        if self.default_pool is not None:
            for asset, amount in pending.coll.items():
                if amount > self.default_pool.get_coll_balance(asset):
                    raise InvariantViolation(f"Default Pool holds less {asset} than is owed")
            for asset, amount in pending.debt.items():
                if amount > self.default_pool.get_debt(asset):
                    raise InvariantViolation(f"Default Pool holds less {asset} debt than is owed")

            for asset, amount in pending.coll.items():
                if amount > 0:
                    self.default_pool.send_coll_to_active_pool(asset, amount)
            for asset, amount in pending.debt.items():
                if amount > 0:
                    self.default_pool.decrease_debt(asset, amount)
                    if self.active_pool is not None:
                        self.active_pool.increase_debt(amount)

        for asset, amount in pending.coll.items():
            position.coll[asset] = position.coll.get(asset, 0) + amount
        position.debt += pending.total_debt

        self._update_reward_snapshots(account)
        return pending

    def _update_reward_snapshots(self, account):
        position = self.positions[account]
        self.reward_snapshots[account] = RewardSnapshot(
            coll={asset: self.L_coll.get(asset, 0) for asset in position.coll},
            debt={asset: self.L_debt.get(asset, 0) for asset in position.coll},
        )

    # --- Stakes ---

    def _compute_new_stake(self, asset, coll):
        total_coll_snapshot = self.total_collateral_snapshot.get(asset, 0)
        if total_coll_snapshot == 0:
            return coll

        total_stakes_snapshot = self.total_stakes_snapshot.get(asset, 0)
        # Collateral is pending redistribution but nobody is left to hold stake in it
        if total_stakes_snapshot == 0:
            raise InvariantViolation(f"Total stakes snapshot for {asset} is zero while collateral remains")
        return mul_div(coll, total_stakes_snapshot, total_coll_snapshot)

    def update_stake(self, account, caller=None):
        """
        Recomputes a position's per-asset stakes from its current collateral.

        Total stakes are adjusted by the delta between the old and new stake,
        never re-derived from scratch.

        Args:
            account: Account id
            caller: Identity of the calling collaborator

        Returns:
            Dict of asset -> new stake

        Raises:
            PreconditionError: If the position has unapplied pending rewards
        """
        require_authorized(self.authorized_callers, caller)
        position = self.get_position(account)
        if self.has_pending_rewards(account):
            raise PreconditionError(f"Apply pending rewards for {account!r} before updating its stake")

        new_stakes = {asset: self._compute_new_stake(asset, coll) for asset, coll in position.coll.items()}

        for asset in set(position.stakes) | set(new_stakes):
            old_stake = position.stakes.get(asset, 0)
            new_stake = new_stakes.get(asset, 0)
            if new_stake != old_stake:
                self.total_stakes[asset] = self.total_stakes.get(asset, 0) - old_stake + new_stake

        position.stakes = {asset: stake for asset, stake in new_stakes.items() if stake > 0}
        return new_stakes

    def remove_stake(self, account, caller=None):
        """
        Removes a closed position's stake from the totals and forgets its snapshot.

        Returns:
            The removed Position
        """
        require_authorized(self.authorized_callers, caller)
        position = self.get_position(account)
        if self.has_pending_rewards(account):
            raise PreconditionError(f"Apply pending rewards for {account!r} before removing its stake")

        for asset, stake in position.stakes.items():
            self.total_stakes[asset] = self.total_stakes.get(asset, 0) - stake

        del self.positions[account]
        self.reward_snapshots.pop(account, None)
        return position

    def record_position(self, account, coll: Dict[str, int], debt, caller=None):
        """
        Records a position's collateral and debt, then refreshes its stake and snapshot.

        This is the hook the position registry calls after opening or adjusting a
        position. Pending rewards must already have been applied.

        Args:
            account: Account id
            coll: Dict of asset -> collateral amount
            debt: Recorded debt

        Returns:
            The updated Position
        """
        require_authorized(self.authorized_callers, caller)
        for asset, amount in coll.items():
            require_non_negative(amount, f"collateral for {asset}")
        require_non_negative(debt, "debt")
        if self.has_pending_rewards(account):
            raise PreconditionError(f"Apply pending rewards for {account!r} before recording it")

        # Compute stakes before touching state so a failure leaves nothing half-written
        for asset, amount in coll.items():
            if amount > 0:
                self._compute_new_stake(asset, amount)

        position = self.positions.setdefault(account, Position())
        position.coll = {asset: amount for asset, amount in coll.items() if amount > 0}
        position.debt = debt

        self.update_stake(account, caller=caller)
        self._update_reward_snapshots(account)
        return position

    # --- System snapshots ---

    def take_system_snapshot(self, excluded_remainder: Optional[Dict[str, int]] = None, caller=None):
        """
        Updates the stake/collateral snapshots after a liquidation batch.

        Args:
            excluded_remainder: asset -> collateral still in the Active Pool that
                no position owns (e.g. liquidator compensation about to leave)
            caller: Identity of the calling collaborator

        Returns:
            None
        """
        require_authorized(self.authorized_callers, caller)
        excluded_remainder = excluded_remainder or {}

        assets = set(self.total_stakes) | set(excluded_remainder)
        if self.active_pool is not None:
            assets |= set(self.active_pool.coll_balances)
        if self.default_pool is not None:
            assets |= set(self.default_pool.coll_balances)

        new_coll_snapshot = {}
        for asset in assets:
            active_coll = self.active_pool.get_coll_balance(asset) if self.active_pool else 0
            default_coll = self.default_pool.get_coll_balance(asset) if self.default_pool else 0
            total_coll = active_coll - excluded_remainder.get(asset, 0) + default_coll
            if total_coll < 0:
                raise PreconditionError(f"Excluded remainder for {asset} exceeds pooled collateral")
            new_coll_snapshot[asset] = total_coll

        for asset in assets:
            self.total_stakes_snapshot[asset] = self.total_stakes.get(asset, 0)
            self.total_collateral_snapshot[asset] = new_coll_snapshot[asset]

        logger.info(
            "System snapshot: stakes %s, collateral %s",
            self.total_stakes_snapshot, self.total_collateral_snapshot,
        )
