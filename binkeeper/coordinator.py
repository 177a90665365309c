"""
ExecutionCoordinator: runs one rebalance at a time.

remove all -> re-read active bin -> distribute wallet balances -> add, with
every remote step wrapped in the retry policy. A second trigger arriving
while a rebalance is executing is dropped, not queued.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from binkeeper import distribution
from binkeeper.config import MAX_UINT256, StrategyConfig
from binkeeper.errors import DistributionError, FatalConditionError, TransactionReverted
from binkeeper.il_calculator import bin_id_to_price, il_for_amounts, il_from_bins
from binkeeper.ledger import Ledger
from binkeeper.pool_observer import PoolObserver, WalletBalances
from binkeeper.range_tracker import RangeTracker, RebalanceRequest
from binkeeper.retry import RetryPolicy

logger = logging.getLogger(__name__)


class CoordinatorStatus(Enum):
    IDLE = "idle"
    EXECUTING = "executing"


@dataclass(frozen=True)
class ExecutionResult:
    request: RebalanceRequest
    center: int
    bins: list[int]
    removed_bins: list[int] = field(default_factory=list)
    tx_hashes: list[str] = field(default_factory=list)


class ExecutionCoordinator:
    SHUTDOWN_LOCK_TIMEOUT = 300

    def __init__(
        self,
        chain,
        observer: PoolObserver,
        tracker: RangeTracker,
        ledger: Ledger,
        strategy: StrategyConfig,
        owner: str,
        router: str,
        retry: RetryPolicy | None = None,
        clock=time.time,
    ):
        self.chain = chain
        self.observer = observer
        self.tracker = tracker
        self.ledger = ledger
        self.strategy = strategy
        self.owner = owner
        self.router = router
        self.retry = retry or RetryPolicy(strategy.retry_attempts, strategy.retry_base_delay)
        self.clock = clock

        # Reentrant so the decision loop can hold it across observe -> execute
        self._lock = threading.RLock()
        self.status = CoordinatorStatus.IDLE

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def exclusive(self, source: str):
        """Yield True if the lock was taken, False if another thread holds it."""
        if not self._lock.acquire(blocking=False):
            logger.warning("Trigger [%s] dropped: execution in progress", source)
            yield False
            return
        try:
            yield True
        finally:
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self.status is CoordinatorStatus.EXECUTING

    def execute(self, request: RebalanceRequest) -> ExecutionResult | None:
        """Run a rebalance. Returns None if dropped because one is already running."""
        with self.exclusive(request.reason) as acquired:
            if not acquired:
                return None
            if self.status is not CoordinatorStatus.IDLE:
                logger.warning("Rebalance [%s] dropped: coordinator is %s", request.reason, self.status.value)
                return None
            self.status = CoordinatorStatus.EXECUTING
            try:
                return self._run(request)
            finally:
                self.status = CoordinatorStatus.IDLE

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------

    def _run(self, request: RebalanceRequest) -> ExecutionResult:
        logger.info("Starting rebalance [%s] @ bin %d", request.reason, request.target)
        self.tracker.cancel_timers()
        tx_hashes: list[str] = []

        try:
            self._health_check()
            if self.ledger.stale:
                self._reconcile_locked()

            removed = self._remove_all(tx_hashes)

            # Price may have moved while removing
            center = self.retry.call(self.observer.refresh_active_bin, "getActiveId")
            if center != request.target:
                logger.info("Active bin moved %d -> %d during rebalance", request.target, center)

            wallet = self.retry.call(lambda: self.observer.read_wallet(self.owner), "walletBalances")
            dist, amount_native, amount_token = self._build_distribution(wallet)

            self._ensure_token_allowance(amount_token, tx_hashes)
            tx_hashes.append(self._add(center, dist, amount_native, amount_token))
        except FatalConditionError:
            raise
        except Exception as e:
            self.ledger.mark_stale()
            self.tracker.resume(self.clock())
            logger.error("Rebalance [%s] failed: %s", request.reason, e)
            raise

        now = self.clock()
        previous = self.ledger.position
        position = self.ledger.open_position(center, now, request.reason)
        self.ledger.record_success(now)
        self.tracker.recenter(center, now)

        if previous is not None:
            self._log_il(previous.entry_bin, center, amount_native, amount_token)
        logger.info(
            "SUCCESS [%s]: active in bins %s (today: %d)",
            request.reason,
            position.bins,
            self.ledger.counters.daily_rebalance_count,
        )
        return ExecutionResult(request, center, dist.bins(center), removed, tx_hashes)

    def _health_check(self) -> None:
        balance = self.retry.call(lambda: self.chain.get_native_balance(self.owner), "getBalance")
        if balance < self.strategy.min_safe_balance_wei:
            raise FatalConditionError(
                f"native balance {balance} below minimum {self.strategy.min_safe_balance_wei}"
            )

    def usable_amounts(self, wallet: WalletBalances) -> tuple[int, int]:
        """Returns (native, token) amounts to deposit after the gas reserve."""
        bps = self.strategy.liquidity_usage_bps
        native = max(wallet.native - self.strategy.gas_reserve_wei, 0) * bps // 10_000
        token = wallet.token * bps // 10_000
        return native, token

    def _build_distribution(self, wallet: WalletBalances):
        amount_native, amount_token = self.usable_amounts(wallet)
        native_is_x = self.observer.state.native_is_x
        amount_x, amount_y = (
            (amount_native, amount_token) if native_is_x else (amount_token, amount_native)
        )

        dist = distribution.calculate(
            amount_x, amount_y, self.strategy.half_width, self.strategy.x_above
        )
        if dist is None:
            raise DistributionError(
                f"no valid distribution for amount_x={amount_x} amount_y={amount_y}"
            )
        return dist, amount_native, amount_token

    def _log_il(self, entry_bin: int, center: int, amount_native: int, amount_token: int) -> None:
        """Log IL since entry: the bin-delta estimate and the redeposited capital vs holding it."""
        pool = self.observer.state
        estimate = il_from_bins(entry_bin, center, pool.bin_step, self.strategy.half_width * 2 + 1)

        # Bin prices are raw Y units per raw X unit
        scale = 10 ** (pool.token_x.decimals - pool.token_y.decimals)
        entry_price = bin_id_to_price(entry_bin, pool.bin_step) * scale
        current_price = bin_id_to_price(center, pool.bin_step) * scale
        amount_x, amount_y = (
            (amount_native, amount_token) if pool.native_is_x else (amount_token, amount_native)
        )
        vs_hold = il_for_amounts(
            amount_x,
            amount_y,
            entry_price,
            current_price,
            pool.token_x.decimals,
            pool.token_y.decimals,
        )
        logger.info(
            "IL since entry bin %d: %.4f%% estimated, %.4f%% vs hold "
            "(price ratio %.6f, position worth %.6f %s)",
            entry_bin,
            estimate.impermanent_loss_pct,
            vs_hold.impermanent_loss_pct,
            estimate.price_ratio,
            vs_hold.lp_value_in_x,
            pool.token_x.symbol,
        )

    # ------------------------------------------------------------------
    # Remote steps
    # ------------------------------------------------------------------

    def _send(self, call, label: str) -> str:
        tx_hash = self.retry.call(lambda: self.chain.simulate_and_send(call), f"{label} send")
        status = self.retry.call(
            lambda: self.chain.await_confirmation(tx_hash), f"{label} confirmation"
        )
        if status != "success":
            raise TransactionReverted(f"{label} reverted on-chain", tx_hash)
        return tx_hash

    def _deadline(self) -> int:
        return int(self.clock()) + self.strategy.tx_deadline

    def _ensure_pool_approval(self, tx_hashes: list[str]) -> None:
        approved = self.retry.call(
            lambda: self.chain.is_approved_for_all(self.owner, self.router), "isApprovedForAll"
        )
        if not approved:
            tx_hashes.append(self._send(self.chain.set_approval_for_all(self.router), "setApprovalForAll"))

    def _ensure_token_allowance(self, amount: int, tx_hashes: list[str]) -> None:
        if amount <= 0:
            return
        token = self.observer.state.other_token.address
        allowance = self.retry.call(
            lambda: self.chain.get_allowance(token, self.owner, self.router), "allowance"
        )
        if allowance < amount:
            tx_hashes.append(self._send(self.chain.approve(token, self.router, MAX_UINT256), "approve"))

    def _live_bins(self, bins: list[int]) -> dict[int, int]:
        """Per-bin balances at or above the dust threshold."""
        balances = self.retry.call(
            lambda: self.observer.read_bin_balances(self.owner, bins), "binBalances"
        )
        live = {b: amt for b, amt in balances.items() if amt >= self.strategy.min_bin_amount}
        dust = sorted(b for b, amt in balances.items() if 0 < amt < self.strategy.min_bin_amount)
        if dust:
            logger.debug("Ignoring dust in bins %s", dust)
        return live

    def _remove_all(self, tx_hashes: list[str]) -> list[int]:
        if not self.ledger.has_position():
            return []
        bins = self.ledger.held_bins()

        live = self._live_bins(bins)
        if not live:
            logger.info("No liquidity in bins %s; nothing to remove", bins)
            self.ledger.clear()
            return []

        ids = sorted(live)
        amounts = [live[b] for b in ids]
        logger.info("Removing liquidity from %d bin(s): %s", len(ids), ids)

        self._ensure_pool_approval(tx_hashes)
        pool = self.observer.state
        call = self.chain.remove_liquidity_call(
            pool.other_token.address,
            pool.bin_step,
            0,
            0,
            ids,
            amounts,
            self.owner,
            self._deadline(),
        )
        tx_hashes.append(self._send(call, "removeLiquidity"))
        return ids

    def _add(self, center: int, dist, amount_native: int, amount_token: int) -> str:
        pool = self.observer.state
        amount_x, amount_y = (
            (amount_native, amount_token) if pool.native_is_x else (amount_token, amount_native)
        )
        slip = self.strategy.slippage_bps
        params = {
            "tokenX": pool.token_x.address,
            "tokenY": pool.token_y.address,
            "binStep": pool.bin_step,
            "amountX": amount_x,
            "amountY": amount_y,
            "amountXMin": amount_x - amount_x * slip // 10_000,
            "amountYMin": amount_y - amount_y * slip // 10_000,
            "activeIdDesired": center,
            "idSlippage": self.strategy.id_slippage,
            "deltaIds": list(dist.delta_ids),
            "distributionX": list(dist.distribution_x),
            "distributionY": list(dist.distribution_y),
            "to": self.owner,
            "refundTo": self.owner,
            "deadline": self._deadline(),
        }
        logger.info(
            "Adding liquidity @ %d: deltas=%s X=%d Y=%d",
            center,
            list(dist.delta_ids),
            amount_x,
            amount_y,
        )
        return self._send(self.chain.add_liquidity_call(params, value=amount_native), "addLiquidity")

    # ------------------------------------------------------------------
    # Reconciliation & shutdown
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """Re-derive the position from on-chain bin balances."""
        with self.exclusive("reconcile") as acquired:
            if acquired:
                self._reconcile_locked()

    def _reconcile_locked(self) -> None:
        active = self.observer.state.active_bin
        if self.strategy.entry_mode == "scan":
            radius = self.strategy.scan_radius
        else:
            radius = self.strategy.half_width
        candidates = set(self.ledger.held_bins()) | set(range(active - radius, active + radius + 1))

        live = self._live_bins(sorted(candidates))
        position = self.ledger.adopt(sorted(live), self.clock())
        if position is None:
            logger.info("Reconcile: no liquidity found around bin %d", active)
            self.tracker.reset()
        else:
            self.tracker.track(position.center)

    def safe_shutdown(self) -> None:
        """Best-effort removal of all remaining liquidity. Never raises."""
        logger.error("SAFE SHUTDOWN: removing remaining liquidity")
        if not self._lock.acquire(timeout=self.SHUTDOWN_LOCK_TIMEOUT):
            logger.error("Shutdown could not acquire execution lock; skipping cleanup")
            return
        try:
            self.tracker.cancel_timers()
            try:
                self.retry.call(self.observer.refresh_active_bin, "getActiveId")
            except Exception as e:
                logger.warning(
                    "Shutdown could not refresh active bin; scanning around bin %d: %s",
                    self.observer.state.active_bin,
                    e,
                )
            self._reconcile_locked()
            removed = self._remove_all([])
            logger.info("Shutdown cleanup removed bins %s", removed)
        except Exception as e:
            logger.error("Failed to clean up positions during shutdown: %s", e, exc_info=True)
        finally:
            self._lock.release()
