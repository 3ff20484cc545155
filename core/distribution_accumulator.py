"""
Distribution Accumulator for the stability pool.

Depositors absorb liquidated debt in exchange for the liquidated collateral.
Rather than touching every deposit on each liquidation, the accumulator keeps:

- P: a running product. A deposit made when the product was P_0 is now worth
  deposit * P / P_0.
- S[asset][epoch][scale]: a running sum of collateral gained per unit deposited,
  pre-multiplied by the P in force when the gain occurred.

Each deposit stores a snapshot of P, S, epoch and scale, which is enough to
compute its compounded value and collateral gains in O(1).

P only shrinks. When an offset would push it below SCALE_FACTOR it is multiplied
back up by SCALE_FACTOR and the scale counter advances; when an offset empties
the pool entirely the epoch advances and P resets. Deposits snapshotted in an
earlier epoch, or two or more scales ago, are worth 0.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from error_feedback import error_corrected_ratio, principal_loss_ratio
from fixed_point import dec_min, mul_div, require_non_negative
from ledger_config import DEFAULT_CONFIG, LedgerConfig
from ledger_errors import InvariantViolation, PreconditionError, require_authorized

logger = logging.getLogger(__name__)


@dataclass
class DepositSnapshot:
    """Global accumulator values captured when a deposit was last recorded."""
    P: int = 0
    S: Dict[str, int] = field(default_factory=dict)  # asset -> S at (epoch, scale)
    epoch: int = 0
    scale: int = 0


def validate_asset_amounts(assets: Sequence[str], amounts: Sequence[int]):
    """
    Checks the parallel asset/amount arrays handed over by the liquidation caller.

    Raises:
        PreconditionError: If the arrays are empty, differ in length, repeat an
            asset, or contain a negative or non-int amount
    """
    if len(assets) == 0:
        raise PreconditionError("Asset list must not be empty")
    if len(assets) != len(amounts):
        raise PreconditionError(
            f"Assets and amounts must have equal length ({len(assets)} != {len(amounts)})"
        )
    if len(set(assets)) != len(assets):
        raise PreconditionError("Assets must be unique within a call")
    for asset, amount in zip(assets, amounts):
        require_non_negative(amount, f"amount for {asset}")


class DistributionAccumulator:
    """
    Tracks depositor principal depletion and collateral gains with the P/S/epoch/scale scheme.
    """

    def __init__(self, config: Optional[LedgerConfig] = None, authorized_callers=None):
        self.config = config or DEFAULT_CONFIG
        self.DECIMAL_PRECISION = self.config.decimal_precision
        self.SCALE_FACTOR = self.config.scale_factor

        # Running product, starts at 1.0
        self.P = self.DECIMAL_PRECISION
        self.current_epoch = 0
        self.current_scale = 0

        # asset -> [epoch][scale] -> S; append-only since epoch and scale only grow
        self.epoch_to_scale_to_sum: Dict[str, List[List[int]]] = {}

        # Rounding remainders carried into the next offset
        self.last_asset_error: Dict[str, int] = {}
        self.last_principal_loss_error = 0

        # Recorded total principal, net of all offsets
        self.total_principal = 0

        self.deposits: Dict[str, int] = {}  # account -> principal
        self.deposit_snapshots: Dict[str, DepositSnapshot] = {}

        self.authorized_callers = set(authorized_callers) if authorized_callers else set()

    # --- Sum table ---

    @property
    def known_assets(self):
        return list(self.epoch_to_scale_to_sum.keys())

    def get_sum(self, asset, epoch, scale):
        """Returns S for (asset, epoch, scale), or 0 if nothing was ever recorded there."""
        epochs = self.epoch_to_scale_to_sum.get(asset)
        if epochs is None or epoch >= len(epochs):
            return 0
        scales = epochs[epoch]
        if scale >= len(scales):
            return 0
        return scales[scale]

    def _set_sum(self, asset, epoch, scale, value):
        epochs = self.epoch_to_scale_to_sum.setdefault(asset, [])
        while len(epochs) <= epoch:
            epochs.append([])
        scales = epochs[epoch]
        while len(scales) <= scale:
            scales.append(0)
        scales[scale] = value

    # --- Queries ---

    def get_principal(self, account):
        return self.deposits.get(account, 0)

    def get_snapshot(self, account):
        return self.deposit_snapshots.get(account, DepositSnapshot())

    def get_total_principal(self):
        return self.total_principal

    def get_compounded_principal(self, account):
        """
        Calculates an account's principal after every offset since its snapshot.

        Args:
            account: Account id

        Returns:
            The compounded principal, or 0 if the deposit was wiped out by a full
            depletion, has decayed across two or more scales, or is dust
        """
        principal = self.deposits.get(account, 0)
        if principal == 0:
            return 0

        snapshot = self.deposit_snapshots[account]

        # The pool was emptied after this deposit was made
        if snapshot.epoch < self.current_epoch:
            return 0

        scale_diff = self.current_scale - snapshot.scale
        if scale_diff == 0:
            compounded = mul_div(principal, self.P, snapshot.P)
        elif scale_diff == 1:
            compounded = mul_div(principal, self.P, snapshot.P * self.SCALE_FACTOR)
        else:
            return 0

        # Dust floor: anything below a billionth of the original principal is 0
        if compounded * self.config.dust_divisor < principal:
            return 0

        return compounded

    def get_gains(self, account):
        """
        Calculates an account's collateral gains since its snapshot.

        Gains are tracked within the snapshot's own scale and the next one. Any
        accrual further out belongs to a deposit that is already dust.

        Args:
            account: Account id

        Returns:
            Dict of asset -> gain for every asset the accumulator has seen
        """
        principal = self.deposits.get(account, 0)
        if principal == 0:
            return {asset: 0 for asset in self.known_assets}

        snapshot = self.deposit_snapshots[account]
        gains = {}
        for asset in self.known_assets:
            first_portion = (
                self.get_sum(asset, snapshot.epoch, snapshot.scale) - snapshot.S.get(asset, 0)
            )
            second_portion = (
                self.get_sum(asset, snapshot.epoch, snapshot.scale + 1) // self.SCALE_FACTOR
            )
            gains[asset] = (
                mul_div(principal, first_portion + second_portion, snapshot.P * self.DECIMAL_PRECISION)
            )
        return gains

    # --- Mutations ---

    def offset(self, debt_to_absorb, assets: Sequence[str], amounts: Sequence[int], caller=None):
        """
        Absorbs liquidated debt with depositor principal and credits the collateral.

        Args:
            debt_to_absorb: Debt cancelled against deposits
            assets: Collateral asset ids, unique
            amounts: Collateral amounts, parallel to assets
            caller: Identity of the calling collaborator

        Returns:
            True if the accumulator changed, False for a no-op

        Raises:
            PreconditionError: On malformed input or an unauthorized caller
            InvariantViolation: If the debt exceeds total principal or P would hit 0
        """
        require_authorized(self.authorized_callers, caller)
        validate_asset_amounts(assets, amounts)
        require_non_negative(debt_to_absorb, "debt_to_absorb")

        total = self.total_principal
        if total == 0 or debt_to_absorb == 0:
            logger.debug("Offset skipped: total principal %d, debt %d", total, debt_to_absorb)
            return False

        if debt_to_absorb > total:
            raise InvariantViolation(
                f"Debt to offset ({debt_to_absorb}) exceeds total principal ({total})"
            )

        current_P = self.P
        epoch = self.current_epoch
        scale = self.current_scale

        # Gains use the pre-offset P: they are proportional to principal before depletion
        gain_updates = {}
        new_asset_errors = {}
        for asset, amount in zip(assets, amounts):
            gain_per_unit, new_asset_errors[asset] = error_corrected_ratio(
                amount,
                self.last_asset_error.get(asset, 0),
                total,
                weight=current_P,
                precision=self.DECIMAL_PRECISION,
            )
            gain_updates[asset] = self.get_sum(asset, epoch, scale) + gain_per_unit

        loss_per_unit, new_loss_error = principal_loss_ratio(
            debt_to_absorb, self.last_principal_loss_error, total, precision=self.DECIMAL_PRECISION
        )

        new_product_factor = self.DECIMAL_PRECISION - loss_per_unit
        new_epoch, new_scale = epoch, scale
        if new_product_factor == 0:
            new_epoch = epoch + 1
            new_scale = 0
            new_P = self.DECIMAL_PRECISION
        else:
            numerator = current_P * new_product_factor
            new_P = numerator // self.DECIMAL_PRECISION
            while new_P < self.config.min_product:
                numerator *= self.SCALE_FACTOR
                new_P = numerator // self.DECIMAL_PRECISION
                new_scale += 1

        if new_P == 0:
            raise InvariantViolation("P must never decrease to 0")

        # Commit
        for asset, value in gain_updates.items():
            self._set_sum(asset, epoch, scale, value)
        self.last_asset_error.update(new_asset_errors)
        self.last_principal_loss_error = new_loss_error
        self.P = new_P
        self.current_epoch = new_epoch
        self.current_scale = new_scale
        self.total_principal = total - debt_to_absorb

        if new_epoch != epoch:
            logger.info("Stability pool fully depleted, epoch advanced to %d", new_epoch)
        elif new_scale != scale:
            logger.info("Product P crossed the precision floor, scale advanced to %d", new_scale)
        logger.debug(
            "Offset %d debt against %d principal: P %d -> %d, loss/unit %d",
            debt_to_absorb, total, current_P, new_P, loss_per_unit,
        )
        return True

    def update_and_snapshot(self, account, new_principal, caller=None):
        """
        Records a new principal for an account and snapshots the global state.

        The caller is responsible for paying out the account's current gains
        first, since the old snapshot is discarded here.

        Args:
            account: Account id
            new_principal: Principal to record
            caller: Identity of the calling collaborator

        Returns:
            The new total principal
        """
        require_authorized(self.authorized_callers, caller)
        require_non_negative(new_principal, "new_principal")

        # No account takes more out of the total than the total holds
        old_compounded = dec_min(self.get_compounded_principal(account), self.total_principal)
        new_total = self.total_principal + new_principal - old_compounded
        if new_total < 0:
            raise InvariantViolation("Total principal must never be negative")

        self.total_principal = new_total
        self.deposits[account] = new_principal

        if new_principal == 0:
            # Explicit tombstone, so a stale snapshot can never be misread
            self.deposit_snapshots[account] = DepositSnapshot(
                P=0, S={asset: 0 for asset in self.known_assets}, epoch=0, scale=0
            )
            return self.total_principal

        self.deposit_snapshots[account] = DepositSnapshot(
            P=self.P,
            S={
                asset: self.get_sum(asset, self.current_epoch, self.current_scale)
                for asset in self.known_assets
            },
            epoch=self.current_epoch,
            scale=self.current_scale,
        )
        return self.total_principal
