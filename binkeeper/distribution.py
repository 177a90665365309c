"""
Bin distribution for Liquidity Book deposits.

Splits the available X and Y amounts across the bins center-w..center+w.
Bins above the active bin can only hold one token and bins below only the
other; the active bin takes both. Shares are fixed-point with UNIT == 1e18
and, for every token with a positive amount, sum to exactly UNIT.
"""

import logging
from dataclasses import dataclass

from binkeeper.config import DISTRIBUTION_UNIT

logger = logging.getLogger(__name__)

UNIT = DISTRIBUTION_UNIT


@dataclass(frozen=True)
class Distribution:
    """Parallel arrays in the router's LiquidityParameters layout."""

    delta_ids: tuple[int, ...]
    distribution_x: tuple[int, ...]
    distribution_y: tuple[int, ...]

    def bins(self, center: int) -> list[int]:
        return [center + d for d in self.delta_ids]

    def __len__(self) -> int:
        return len(self.delta_ids)


@dataclass(frozen=True)
class _Candidate:
    delta: int
    takes_x: bool
    takes_y: bool


def candidate_bins(half_width: int = 1, x_above: bool = True) -> list[_Candidate]:
    """Ascending candidates with the token(s) each may receive."""
    candidates = []
    for delta in range(-half_width, half_width + 1):
        if delta == 0:
            candidates.append(_Candidate(0, True, True))
        elif delta > 0:
            candidates.append(_Candidate(delta, x_above, not x_above))
        else:
            candidates.append(_Candidate(delta, not x_above, x_above))
    return candidates


def _shares(flags: list[bool]) -> list[int]:
    """Split UNIT over the True slots; the last True slot absorbs the remainder."""
    count = sum(flags)
    if count == 0:
        return [0] * len(flags)
    share = UNIT // count
    last = max(i for i, f in enumerate(flags) if f)
    out = []
    allocated = 0
    for i, f in enumerate(flags):
        if not f:
            out.append(0)
        elif i == last:
            out.append(UNIT - allocated)
        else:
            out.append(share)
            allocated += share
    return out


def calculate(
    amount_x: int,
    amount_y: int,
    half_width: int = 1,
    x_above: bool = True,
) -> Distribution | None:
    """Build the per-bin distribution, or None when no valid one exists.

    A bin is included only if it can receive a token whose amount is > 0.
    Returns None when nothing is included, or when the center bin would be
    left out while other bins are included.
    """
    has_x = amount_x > 0
    has_y = amount_y > 0

    active = [
        c for c in candidate_bins(half_width, x_above)
        if (c.takes_x and has_x) or (c.takes_y and has_y)
    ]
    if not active:
        logger.warning("No bins can receive liquidity (amount_x=%d amount_y=%d)", amount_x, amount_y)
        return None

    if not any(c.delta == 0 for c in active):
        logger.error(
            "Center bin excluded from distribution over deltas %s; refusing",
            [c.delta for c in active],
        )
        return None

    dist_x = _shares([c.takes_x and has_x for c in active])
    dist_y = _shares([c.takes_y and has_y for c in active])

    return Distribution(
        delta_ids=tuple(c.delta for c in active),
        distribution_x=tuple(dist_x),
        distribution_y=tuple(dist_y),
    )
