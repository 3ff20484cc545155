"""
Active Pool Model for the CDP ledger engine.

This module models the pool holding the collateral and recorded debt of all active
positions. When a position is liquidated, its collateral and debt leave the Active
Pool for either the Stability Pool, the Default Pool, or both.
"""

import logging

from fixed_point import require_int
from ledger_errors import PreconditionError

logger = logging.getLogger(__name__)


class ActivePool:
    """
    Holds per-asset collateral and the aggregate debt of active positions.
    """

    def __init__(self):
        # asset -> collateral held for active positions
        self.coll_balances = {}

        # Aggregate recorded debt of active positions
        self.debt = 0

        # Reference to the Default Pool, wired by the engine
        self.default_pool = None

    def get_coll_balance(self, asset):
        """Returns the collateral balance of an asset in the Active Pool."""
        return self.coll_balances.get(asset, 0)

    def get_debt(self):
        """Returns the aggregate recorded debt."""
        return self.debt

    def _check_amount(self, amount, what):
        require_int(amount, what)
        if amount <= 0:
            raise PreconditionError(f"Invalid {what}: {amount}")

    def receive_coll(self, asset, amount):
        """Receive collateral from a borrower or from the Default Pool."""
        self._check_amount(amount, "collateral amount")
        self.coll_balances[asset] = self.coll_balances.get(asset, 0) + amount
        return True

    def send_coll(self, asset, amount):
        """
        Send collateral out of the pool (to the Stability Pool, a borrower, etc.).

        Args:
            asset: Collateral asset id
            amount: Amount to send

        Returns:
            True if successful
        """
        self._check_amount(amount, "collateral amount")
        balance = self.coll_balances.get(asset, 0)
        if amount > balance:
            raise PreconditionError(
                f"Insufficient {asset} in Active Pool: requested {amount}, held {balance}"
            )

        self.coll_balances[asset] = balance - amount
        return True

    def send_coll_to_default_pool(self, asset, amount):
        """Send collateral to the Default Pool for redistribution."""
        self.send_coll(asset, amount)
        if self.default_pool is not None:
            self.default_pool.receive_coll(asset, amount)
        return True

    def increase_debt(self, amount):
        self._check_amount(amount, "debt amount")
        self.debt += amount
        return True

    def decrease_debt(self, amount):
        self._check_amount(amount, "debt amount")
        if amount > self.debt:
            raise PreconditionError(f"Cannot decrease debt by {amount}, only {self.debt} recorded")
        self.debt -= amount
        return True
