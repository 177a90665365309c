"""
Ledger: in-memory record of the managed position and safety counters.

Nothing is persisted. On restart the coordinator reconciles against on-chain
bin balances.
"""

import logging
from dataclasses import dataclass, field

from binkeeper.range_tracker import range_bins
from binkeeper.safety import SafetyCounters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    center: int
    half_width: int
    entry_bin: int
    entry_ts: float

    @property
    def bins(self) -> list[int]:
        return range_bins(self.center, self.half_width)


@dataclass
class Ledger:
    half_width: int = 1
    position: Position | None = None
    counters: SafetyCounters = field(default_factory=SafetyCounters)
    # Bins holding our liquidity outside the managed range (found on reconcile)
    stray_bins: list[int] = field(default_factory=list)
    # In-memory position may not match chain state after a mid-sequence failure
    stale: bool = False

    def held_bins(self) -> list[int]:
        """Every bin that may hold our liquidity, ascending."""
        bins = set(self.stray_bins)
        if self.position is not None:
            bins.update(self.position.bins)
        return sorted(bins)

    def has_position(self) -> bool:
        return self.position is not None or bool(self.stray_bins)

    def open_position(self, center: int, now: float, reason: str) -> Position:
        """Record a fresh deposit around center.

        Maintenance keeps the original entry point; other reasons start a new one.
        """
        previous = self.position
        if reason == "maintenance" and previous is not None:
            entry_bin, entry_ts = previous.entry_bin, previous.entry_ts
        else:
            entry_bin, entry_ts = center, now
        self.position = Position(center, self.half_width, entry_bin, entry_ts)
        self.stray_bins = []
        self.stale = False
        return self.position

    def adopt(self, held: list[int], now: float) -> Position | None:
        """Adopt liquidity found on-chain as the current position.

        The managed range is centred on the middle of the held bins; anything
        outside it is tracked as stray and removed on the next rebalance.
        """
        if not held:
            self.position = None
            self.stray_bins = []
            self.stale = False
            return None
        held = sorted(held)
        center = held[len(held) // 2]
        self.position = Position(center, self.half_width, center, now)
        in_range = set(self.position.bins)
        self.stray_bins = [b for b in held if b not in in_range]
        self.stale = False
        logger.info(
            "Adopted on-chain liquidity: center=%d bins=%s stray=%s",
            center,
            self.position.bins,
            self.stray_bins,
        )
        return self.position

    def clear(self) -> None:
        self.position = None
        self.stray_bins = []

    def mark_stale(self) -> None:
        self.stale = True

    def record_success(self, now: float) -> None:
        self.counters.record_success(now)

    def record_failure(self) -> int:
        return self.counters.record_failure()
