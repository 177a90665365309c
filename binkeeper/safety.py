"""
SafetyGovernor: decides whether a rebalance request may execute.

Checks run in a fixed order and the first failure wins:
daily cap, cooldown, grace period, gas ceiling, low balance.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime

from binkeeper.config import StrategyConfig
from binkeeper.range_tracker import RebalanceRequest

logger = logging.getLogger(__name__)


def local_day(ts: float) -> date:
    return datetime.fromtimestamp(ts).date()


@dataclass
class SafetyCounters:
    daily_rebalance_count: int = 0
    consecutive_failures: int = 0
    last_rebalance_ts: float = 0.0
    day: date | None = None

    def roll_day(self, now: float) -> bool:
        """Reset the daily count on local-day change. Returns True on reset."""
        today = local_day(now)
        if self.day is None:
            self.day = today
            return False
        if today != self.day:
            logger.info(
                "Day rollover %s -> %s: resetting daily rebalance count (%d)",
                self.day,
                today,
                self.daily_rebalance_count,
            )
            self.day = today
            self.daily_rebalance_count = 0
            return True
        return False

    def record_success(self, now: float) -> None:
        self.roll_day(now)
        self.daily_rebalance_count += 1
        self.consecutive_failures = 0
        self.last_rebalance_ts = now

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures


@dataclass(frozen=True)
class GateSnapshot:
    now: float
    last_jump: int
    out_of_range_since: float | None
    gas_price: int
    native_balance: int


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str = "ok"
    fatal: bool = False
    detail: str = ""

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = GateDecision(True)


class SafetyGovernor:
    def __init__(self, strategy: StrategyConfig, counters: SafetyCounters):
        self.strategy = strategy
        self.counters = counters

    def evaluate(self, request: RebalanceRequest, snapshot: GateSnapshot) -> GateDecision:
        for check in (
            self.check_daily_cap,
            self.check_cooldown,
            self.check_grace_period,
            self.check_gas_ceiling,
            self.check_low_balance,
        ):
            decision = check(request, snapshot)
            if not decision.allowed:
                log = logger.error if decision.fatal else logger.info
                log(
                    "Rebalance [%s -> %d] denied: %s %s",
                    request.reason,
                    request.target,
                    decision.reason,
                    decision.detail,
                )
                return decision
        return ALLOW

    def check_daily_cap(self, request, snapshot) -> GateDecision:
        self.counters.roll_day(snapshot.now)
        cap = self.strategy.max_rebalances_per_day
        if self.counters.daily_rebalance_count >= cap:
            return GateDecision(
                False, "daily_cap", detail=f"{self.counters.daily_rebalance_count}/{cap}"
            )
        return ALLOW

    def active_cooldown(self, last_jump: int) -> float:
        if last_jump >= self.strategy.volatility_jump_bins:
            return self.strategy.cooldown * self.strategy.volatility_multiplier
        return self.strategy.cooldown

    def check_cooldown(self, request, snapshot) -> GateDecision:
        cooldown = self.active_cooldown(snapshot.last_jump)
        elapsed = snapshot.now - self.counters.last_rebalance_ts
        if elapsed < cooldown:
            return GateDecision(
                False, "cooldown", detail=f"{elapsed:.0f}s < {cooldown:.0f}s (jump={snapshot.last_jump})"
            )
        return ALLOW

    def check_grace_period(self, request, snapshot) -> GateDecision:
        if request.reason != "out_of_range":
            return ALLOW
        since = snapshot.out_of_range_since
        if since is None:
            return ALLOW
        dwell = snapshot.now - since
        if dwell < self.strategy.grace_period:
            return GateDecision(
                False, "grace_period", detail=f"{dwell:.0f}s < {self.strategy.grace_period:.0f}s"
            )
        return ALLOW

    def estimated_gas_cost(self, gas_price: int) -> int:
        return gas_price * self.strategy.gas_budget

    def check_gas_ceiling(self, request, snapshot) -> GateDecision:
        cost = self.estimated_gas_cost(snapshot.gas_price)
        if cost > self.strategy.max_gas_cost_wei:
            return GateDecision(
                False, "gas_ceiling", detail=f"{cost} > {self.strategy.max_gas_cost_wei} wei"
            )
        return ALLOW

    def check_low_balance(self, request, snapshot) -> GateDecision:
        # Buffer is this rebalance's gas; gas_reserve_wei only sizes deposits
        spendable = snapshot.native_balance - self.estimated_gas_cost(snapshot.gas_price)
        if spendable < self.strategy.min_safe_balance_wei:
            return GateDecision(
                False,
                "low_balance",
                fatal=True,
                detail=f"balance after gas {spendable} < {self.strategy.min_safe_balance_wei} wei",
            )
        return ALLOW
