"""
RangeTracker: classifies active-bin samples against the managed range.

Emits rebalance requests:
  initial       no position yet
  out_of_range  active bin left [center-w, center+w] (unless churn or overlap)
  maintenance   position stayed in range for a full maintenance interval
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

WINDOW_SIZE = 3


class RangeState(Enum):
    UNINITIALIZED = "uninitialized"
    IN_RANGE = "in_range"
    OUT_OF_RANGE = "out_of_range"


REASONS = ("initial", "out_of_range", "maintenance")


@dataclass(frozen=True)
class RebalanceRequest:
    reason: str
    target: int

    def __post_init__(self):
        if self.reason not in REASONS:
            raise ValueError(f"unknown rebalance reason {self.reason!r}")


@dataclass
class MaintenanceTimer:
    interval: float
    armed: bool = False
    deadline: float | None = None

    def arm(self, now: float) -> None:
        self.armed = True
        self.deadline = now + self.interval

    def cancel(self) -> None:
        self.armed = False
        self.deadline = None

    def due(self, now: float) -> bool:
        return self.armed and now >= self.deadline


@dataclass(frozen=True)
class Observation:
    active_bin: int
    state: RangeState
    churn: bool
    overlap: int
    request: RebalanceRequest | None
    suppressed: str | None = None


def range_bins(center: int, half_width: int) -> list[int]:
    return list(range(center - half_width, center + half_width + 1))


def overlap(center: int, target: int, half_width: int) -> int:
    """Number of bins shared by the ranges centred on center and target."""
    return len(set(range_bins(center, half_width)) & set(range_bins(target, half_width)))


def is_churn(window) -> bool:
    """True iff the window is exactly [a, b, a] with a != b."""
    if len(window) < WINDOW_SIZE:
        return False
    a, b, c = list(window)[-WINDOW_SIZE:]
    return a == c and a != b


class RangeTracker:
    def __init__(self, half_width: int, overlap_threshold: int, maintenance_interval: float):
        self.half_width = half_width
        self.overlap_threshold = overlap_threshold
        self.timer = MaintenanceTimer(maintenance_interval)

        self.state = RangeState.UNINITIALIZED
        self.center: int | None = None
        self.window: deque[int] = deque(maxlen=WINDOW_SIZE)
        self.in_range_since: float | None = None
        self.out_of_range_since: float | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_in_range(self, active_bin: int) -> bool:
        return self.center is not None and abs(active_bin - self.center) <= self.half_width

    def detect_churn(self) -> bool:
        return is_churn(self.window)

    def last_jump(self) -> int:
        if len(self.window) < 2:
            return 0
        return abs(self.window[-1] - self.window[-2])

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _enter_in_range(self, now: float) -> None:
        self.timer.cancel()
        self.timer.arm(now)
        self.state = RangeState.IN_RANGE
        self.in_range_since = now
        self.out_of_range_since = None
        logger.info(
            "Range state -> IN_RANGE (center=%s); maintenance due at %.0f",
            self.center,
            self.timer.deadline,
        )

    def _enter_out_of_range(self, now: float, active_bin: int) -> None:
        self.timer.cancel()
        self.state = RangeState.OUT_OF_RANGE
        self.out_of_range_since = now
        self.in_range_since = None
        logger.info("Range state -> OUT_OF_RANGE (active=%d center=%s)", active_bin, self.center)

    def observe(self, active_bin: int, now: float) -> Observation:
        self.window.append(active_bin)
        churn = self.detect_churn()

        if self.center is None:
            return Observation(
                active_bin, self.state, churn, 0, RebalanceRequest("initial", active_bin)
            )

        if self.is_in_range(active_bin):
            if self.state is not RangeState.IN_RANGE:
                self._enter_in_range(now)
            return Observation(active_bin, self.state, churn, self.half_width * 2 + 1, None)

        if self.state is not RangeState.OUT_OF_RANGE:
            self._enter_out_of_range(now, active_bin)

        shared = overlap(self.center, active_bin, self.half_width)
        if churn:
            logger.warning(
                "Churn detected %s; withholding out_of_range request", list(self.window)
            )
            return Observation(active_bin, self.state, churn, shared, None, "churn")
        if shared >= self.overlap_threshold:
            logger.info(
                "Partial overlap %d >= %d bins with target %d; holding",
                shared,
                self.overlap_threshold,
                active_bin,
            )
            return Observation(active_bin, self.state, churn, shared, None, "overlap")

        return Observation(
            active_bin, self.state, churn, shared, RebalanceRequest("out_of_range", active_bin)
        )

    def poll_maintenance(self, now: float) -> RebalanceRequest | None:
        """Fire at most once per IN_RANGE entry once the timer is due."""
        if self.state is not RangeState.IN_RANGE or not self.timer.due(now):
            return None
        self.timer.cancel()
        logger.info("Maintenance interval elapsed; requesting same-range rebalance")
        return RebalanceRequest("maintenance", self.center)

    def cancel_timers(self) -> None:
        self.timer.cancel()

    def resume(self, now: float) -> None:
        """Re-arm after an execution that cancelled the timer but did not finish."""
        if self.state is RangeState.IN_RANGE and not self.timer.armed:
            self.timer.arm(now)

    def recenter(self, center: int, now: float) -> None:
        """New position placed around center; the active bin is center."""
        self.center = center
        self._enter_in_range(now)

    def track(self, center: int) -> None:
        """Follow an existing position; the next observation classifies it."""
        self.timer.cancel()
        self.center = center
        self.state = RangeState.UNINITIALIZED
        self.in_range_since = None
        self.out_of_range_since = None

    def reset(self) -> None:
        """Forget the position; the next observation requests an initial deposit."""
        self.timer.cancel()
        self.center = None
        self.state = RangeState.UNINITIALIZED
        self.in_range_since = None
        self.out_of_range_since = None
