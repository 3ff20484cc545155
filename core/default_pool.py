"""
Default Pool Model for the CDP ledger engine.

This module models the pool holding collateral and debt from liquidated positions
that could not be offset with the Stability Pool. The amounts sit here until each
active position applies its pending redistribution rewards.
"""


from fixed_point import require_int
from ledger_errors import PreconditionError


class DefaultPool:
    """
    Holds per-asset collateral and per-asset debt awaiting redistribution.
    """

    def __init__(self, active_pool=None):
        # asset -> collateral pending redistribution
        self.coll_balances = {}

        # asset -> debt pending redistribution
        self.debts = {}

        # Reference to ActivePool
        self.active_pool = active_pool

    def get_coll_balance(self, asset):
        """Returns the collateral balance of an asset in the Default Pool."""
        return self.coll_balances.get(asset, 0)

    def get_debt(self, asset=None):
        """Returns the pending debt for one asset, or across all assets."""
        if asset is None:
            return sum(self.debts.values())
        return self.debts.get(asset, 0)

    def receive_coll(self, asset, amount):
        """
        Receives collateral into the Default Pool.
        Called by the Active Pool when position collateral is redistributed.
        """
        require_int(amount, "collateral amount")
        if amount <= 0:
            raise PreconditionError(f"Invalid collateral amount: {amount}")

        self.coll_balances[asset] = self.coll_balances.get(asset, 0) + amount
        return True

    def send_coll_to_active_pool(self, asset, amount):
        """
        Sends collateral from the Default Pool to the Active Pool.
        Called when a position's pending collateral rewards are applied.
        """
        require_int(amount, "collateral amount")
        balance = self.coll_balances.get(asset, 0)
        if amount <= 0 or amount > balance:
            raise PreconditionError(f"Invalid collateral amount: {amount} (held {balance})")

        self.coll_balances[asset] = balance - amount

        if self.active_pool is not None:
            self.active_pool.receive_coll(asset, amount)

        return True

    def increase_debt(self, asset, amount):
        """Records redistributed debt attributed to holders of an asset."""
        require_int(amount, "debt amount")
        if amount <= 0:
            raise PreconditionError(f"Invalid debt amount: {amount}")

        self.debts[asset] = self.debts.get(asset, 0) + amount
        return True

    def decrease_debt(self, asset, amount):
        """Releases debt when a position applies its pending rewards."""
        require_int(amount, "debt amount")
        held = self.debts.get(asset, 0)
        if amount <= 0 or amount > held:
            raise PreconditionError(f"Invalid debt amount: {amount} (held {held})")

        self.debts[asset] = held - amount
        return True
