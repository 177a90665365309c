"""
Impermanent-loss helpers for Liquidity Book positions.

Bin price: price = (1 + binStep / 10000) ** (binId - 2**23), quoted as Y per X.
"""

from dataclasses import dataclass

import numpy as np

from binkeeper.config import REFERENCE_BIN_ID


@dataclass(frozen=True)
class ILResult:
    impermanent_loss_pct: float  # negative = loss
    lp_value_in_x: float
    hold_value_in_x: float
    price_ratio: float


def bin_id_to_price(bin_id: int, bin_step: int) -> float:
    base = 1.0 + bin_step / 10_000
    return float(np.power(base, bin_id - REFERENCE_BIN_ID))


def price_ratio(entry_bin: int, current_bin: int, bin_step: int) -> float:
    """Current price / entry price. Computed from the bin delta to stay finite."""
    if entry_bin == current_bin:
        return 1.0
    return float(np.power(1.0 + bin_step / 10_000, current_bin - entry_bin))


def impermanent_loss(ratio: float, range_width: int = 3) -> float:
    """Tight-range approximation: -0.5 * (ratio - 1)^2 / sqrt(width), in percent."""
    if ratio <= 0:
        return -100.0
    range_factor = 1.0 / np.sqrt(range_width)
    return float(-0.5 * range_factor * (ratio - 1.0) ** 2 * 100.0)


def il_for_amounts(
    amount_x: int,
    amount_y: int,
    entry_price: float,
    current_price: float,
    decimals_x: int,
    decimals_y: int,
) -> ILResult:
    """Compare the LP holdings against simply holding them, valued in X."""
    x = amount_x / 10**decimals_x
    y = amount_y / 10**decimals_y

    lp_value = x + y / current_price
    hold_value = x + y / entry_price
    il_pct = (lp_value / hold_value - 1.0) * 100.0 if hold_value > 0 else 0.0
    ratio = current_price / entry_price if entry_price > 0 else 1.0

    return ILResult(float(il_pct), float(lp_value), float(hold_value), float(ratio))


def il_from_bins(entry_bin: int, current_bin: int, bin_step: int, range_width: int = 3) -> ILResult:
    ratio = price_ratio(entry_bin, current_bin, bin_step)
    return ILResult(impermanent_loss(ratio, range_width), 0.0, 0.0, ratio)
