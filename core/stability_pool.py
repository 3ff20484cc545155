"""
Stability Pool Model for the CDP ledger engine.

This module models the pool of stable-token deposits that absorbs liquidated debt.
When a position is liquidated, the Stability Pool offsets the debt and receives the
position's collateral as compensation. The per-depositor accounting lives in the
DistributionAccumulator; this class handles the deposit/withdraw/claim flow and
the collateral actually held by the pool.
"""

import logging
from typing import Dict, Optional, Sequence

from distribution_accumulator import DistributionAccumulator
from fixed_point import dec_min, require_int
from ledger_config import LedgerConfig
from ledger_errors import InvariantViolation, PreconditionError

logger = logging.getLogger(__name__)


class StabilityPool:
    """
    Holds stable-token deposits and the collateral gained from offsets.
    """

    def __init__(self, active_pool=None, accumulator: Optional[DistributionAccumulator] = None,
                 config: Optional[LedgerConfig] = None):
        self.accumulator = accumulator or DistributionAccumulator(config=config)

        # asset -> collateral held for depositors
        self.coll_balances: Dict[str, int] = {}

        # account -> asset -> collateral gains kept in the pool instead of sent
        self.stashed_coll: Dict[str, Dict[str, int]] = {}

        # account -> asset -> collateral paid out so far
        self.coll_sent: Dict[str, Dict[str, int]] = {}

        # External contracts
        self.active_pool = active_pool

    def get_coll_balance(self, asset):
        """Returns the collateral balance of an asset in the Stability Pool."""
        return self.coll_balances.get(asset, 0)

    def get_total_deposits(self):
        """Returns the total recorded deposits."""
        return self.accumulator.get_total_principal()

    def get_compounded_deposit(self, depositor):
        return self.accumulator.get_compounded_principal(depositor)

    def get_depositor_coll_gains(self, depositor):
        """
        Calculates a depositor's collateral gains, capped by what the pool holds.

        Args:
            depositor: Address of the depositor

        Returns:
            Dict of asset -> collateral gain
        """
        gains = self.accumulator.get_gains(depositor)
        return {asset: dec_min(gain, self.get_coll_balance(asset)) for asset, gain in gains.items()}

    def get_stashed_coll(self, depositor):
        return dict(self.stashed_coll.get(depositor, {}))

    def _settle_gains(self, depositor, do_claim):
        """Splits current gains into (to_send, new_stash) according to do_claim."""
        gains = self.get_depositor_coll_gains(depositor)
        stash = dict(self.stashed_coll.get(depositor, {}))
        for asset, gain in gains.items():
            if gain > 0:
                stash[asset] = stash.get(asset, 0) + gain
        if do_claim:
            return stash, {}
        return {}, stash

    def provide_to_sp(self, depositor, top_up_amount, do_claim=True):
        """
        Adds stable tokens to a depositor's compounded deposit.

        Args:
            depositor: Address of the depositor
            top_up_amount: Amount to add to the pool
            do_claim: Whether to send collateral gains or keep them stashed

        Returns:
            Dict of asset -> collateral sent to the depositor
        """
        require_int(top_up_amount, "top_up_amount")
        if top_up_amount <= 0:
            raise PreconditionError("Amount must be greater than zero")

        coll_to_send, new_stash = self._settle_gains(depositor, do_claim)
        compounded = self.accumulator.get_compounded_principal(depositor)
        new_deposit = compounded + top_up_amount

        self.accumulator.update_and_snapshot(depositor, new_deposit)
        self.stashed_coll[depositor] = new_stash
        self._send_coll_gains_to_depositor(depositor, coll_to_send)

        logger.debug("%s provided %d, deposit now %d", depositor, top_up_amount, new_deposit)
        return coll_to_send

    def withdraw_from_sp(self, depositor, amount, do_claim=True):
        """
        Withdraws stable tokens from a depositor's compounded deposit.

        Args:
            depositor: Address of the depositor
            amount: Amount to withdraw, capped at the compounded deposit and
                at the recorded total
            do_claim: Whether to send collateral gains or keep them stashed

        Returns:
            Tuple of (amount withdrawn, dict of asset -> collateral sent)
        """
        require_int(amount, "amount")
        if amount < 0:
            raise PreconditionError("Amount must not be negative")
        if self.accumulator.get_principal(depositor) == 0:
            raise PreconditionError("User must have a non-zero deposit")

        coll_to_send, new_stash = self._settle_gains(depositor, do_claim)
        compounded = self.accumulator.get_compounded_principal(depositor)
        # The recorded total can trail the summed compounded deposits by a few wei
        to_withdraw = dec_min(dec_min(amount, compounded), self.get_total_deposits())
        new_deposit = compounded - to_withdraw
        if to_withdraw == self.get_total_deposits():
            # The pool is empty, so nothing backs a leftover
            new_deposit = 0

        self.accumulator.update_and_snapshot(depositor, new_deposit)
        self.stashed_coll[depositor] = new_stash
        self._send_coll_gains_to_depositor(depositor, coll_to_send)

        logger.debug("%s withdrew %d of %d", depositor, to_withdraw, compounded)
        return to_withdraw, coll_to_send

    def claim_all_coll_gains(self, depositor):
        """
        Lets a user with no deposit claim all stashed collateral gains.

        Returns:
            Dict of asset -> collateral sent
        """
        if self.accumulator.get_principal(depositor) > 0:
            raise PreconditionError("User must have no deposit")

        coll_to_send = {a: v for a, v in self.stashed_coll.get(depositor, {}).items() if v > 0}
        if not coll_to_send:
            raise PreconditionError("No collateral available to claim")

        self.stashed_coll[depositor] = {}
        self._send_coll_gains_to_depositor(depositor, coll_to_send)
        return coll_to_send

    def offset(self, debt_to_offset, assets: Sequence[str], amounts: Sequence[int]):
        """
        Offsets liquidated debt with deposits and takes the collateral from the Active Pool.

        Args:
            debt_to_offset: Debt to cancel with deposits
            assets: Collateral asset ids
            amounts: Collateral amounts, parallel to assets

        Returns:
            True if the offset changed the pool
        """
        if self.active_pool is not None:
            for asset, amount in zip(assets, amounts):
                if amount > self.active_pool.get_coll_balance(asset):
                    raise PreconditionError(f"Active Pool does not hold {amount} of {asset}")

        if not self.accumulator.offset(debt_to_offset, assets, amounts):
            return False

        for asset, amount in zip(assets, amounts):
            if amount == 0:
                continue
            self.coll_balances[asset] = self.coll_balances.get(asset, 0) + amount
            if self.active_pool is not None:
                self.active_pool.send_coll(asset, amount)
        return True

    def _send_coll_gains_to_depositor(self, depositor, coll_amounts):
        for asset, amount in coll_amounts.items():
            if amount == 0:
                continue
            balance = self.coll_balances.get(asset, 0)
            if amount > balance:
                raise InvariantViolation(f"Stability Pool holds {balance} {asset}, cannot send {amount}")
            self.coll_balances[asset] = balance - amount
            sent = self.coll_sent.setdefault(depositor, {})
            sent[asset] = sent.get(asset, 0) + amount
