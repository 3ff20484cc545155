"""
Configuration for the CDP ledger engine.

Defaults mirror the on-chain constants. A few knobs can be overridden from the
environment, which is handy when running the simulation scripts with a smaller
scale factor to force scale transitions quickly.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

DECIMAL_PRECISION = 10 ** 18
SCALE_FACTOR = 10 ** 9
# Compounded deposits below principal / DUST_DIVISOR are reported as 0
DUST_DIVISOR = 10 ** 9

# (field, env var, cast)
_ENV_MAP = (
    ("scale_factor", "CDP_LEDGER_SCALE_FACTOR", int),
    ("dust_divisor", "CDP_LEDGER_DUST_DIVISOR", int),
    ("log_level", "CDP_LEDGER_LOG_LEVEL", str),
)


@dataclass(frozen=True)
class LedgerConfig:
    """Fixed-point constants shared by both ledgers."""
    decimal_precision: int = DECIMAL_PRECISION
    scale_factor: int = SCALE_FACTOR
    dust_divisor: int = DUST_DIVISOR
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.scale_factor <= 1:
            raise ValueError(f"scale_factor must be greater than 1, got {self.scale_factor}")
        if self.decimal_precision % self.scale_factor != 0:
            raise ValueError("scale_factor must divide decimal_precision")
        if self.dust_divisor <= 0:
            raise ValueError(f"dust_divisor must be positive, got {self.dust_divisor}")

    @property
    def min_product(self) -> int:
        """Lowest value P may hold before the accumulator shifts to a new scale."""
        return self.scale_factor

    @classmethod
    def from_env(cls, environ=None) -> "LedgerConfig":
        """
        Build a config from the defaults plus any CDP_LEDGER_* overrides.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            A validated LedgerConfig

        Raises:
            ValueError: If an override cannot be cast or fails validation
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for field_name, env_name, cast in _ENV_MAP:
            raw = environ.get(env_name)
            if raw is None:
                continue
            try:
                overrides[field_name] = cast(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e
        return replace(cls(), **overrides)


DEFAULT_CONFIG = LedgerConfig()


def configure_logging(level: Optional[str] = None):
    """Set up root logging for scripts. Library modules only create loggers."""
    level = level or DEFAULT_CONFIG.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
