"""
LPAgent: keeps a narrow Liquidity Book position centred on the active bin.

Two trigger sources (new blocks and a fallback timer) feed one guarded
decision step: observe -> classify -> gate -> execute.
"""

import json
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone

from web3 import Web3

from binkeeper import config
from binkeeper.chain import ChainClient
from binkeeper.config import StrategyConfig
from binkeeper.coordinator import ExecutionCoordinator, ExecutionResult
from binkeeper.errors import FatalConditionError, RemoteCallError
from binkeeper.ledger import Ledger
from binkeeper.pool_observer import PoolObserver
from binkeeper.range_tracker import Observation, RangeTracker, RebalanceRequest
from binkeeper.retry import RetryPolicy
from binkeeper.safety import GateDecision, GateSnapshot, SafetyGovernor

logger = logging.getLogger("binkeeper.agent")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_dir: str = config.LOG_DIR) -> str:
    """Console (INFO) + decisions.log (DEBUG) on the package logger.

    Returns the path of the decisions.jsonl file.
    """
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("binkeeper")
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    fh = logging.FileHandler(os.path.join(log_dir, "decisions.log"))
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(fh)

    return os.path.join(log_dir, "decisions.jsonl")


class LPAgent:
    """Autonomous Liquidity Book market maker for a single pool."""

    def __init__(
        self,
        chain,
        strategy: StrategyConfig,
        owner: str,
        router: str,
        clock=time.time,
        decisions_path: str | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.chain = chain
        self.strategy = strategy
        self.owner = owner
        self.clock = clock
        self.decisions_path = decisions_path
        self.retry = retry or RetryPolicy(strategy.retry_attempts, strategy.retry_base_delay)

        self.observer = PoolObserver(chain)
        self.tracker = RangeTracker(
            strategy.half_width, strategy.overlap_threshold, strategy.maintenance_interval
        )
        self.ledger = Ledger(half_width=strategy.half_width)
        self.governor = SafetyGovernor(strategy, self.ledger.counters)
        self.coordinator = ExecutionCoordinator(
            chain,
            self.observer,
            self.tracker,
            self.ledger,
            strategy,
            owner,
            router,
            retry=self.retry,
            clock=clock,
        )

        self.next_iteration_allowed_ts = 0.0
        self.fatal_error: FatalConditionError | None = None
        self._stop = threading.Event()
        self._last_block: int | None = None
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_private_key(cls, private_key: str, strategy: StrategyConfig | None = None, **kwargs):
        strategy = strategy or StrategyConfig.from_env()
        logger.info("Connecting to RPC: %s", config.RPC_URL)
        w3 = Web3(Web3.HTTPProvider(config.RPC_URL))
        if not w3.is_connected():
            raise ConnectionError(f"Cannot connect to RPC at {config.RPC_URL}")
        chain_id = w3.eth.chain_id
        if chain_id != config.CHAIN_ID:
            raise RuntimeError(f"Connected to chain {chain_id}, expected {config.CHAIN_ID}")
        logger.info("Connected. Chain ID: %d", chain_id)

        account = w3.eth.account.from_key(private_key)
        logger.info("Agent address: %s", account.address)
        logger.info("Pool: %s", config.POOL_ADDRESS)

        chain = ChainClient(
            w3,
            account,
            config.POOL_ADDRESS,
            config.ROUTER_ADDRESS,
            receipt_timeout=strategy.receipt_timeout,
        )
        return cls(chain, strategy, account.address, chain.router_address, **kwargs)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """Load pool metadata and adopt any liquidity already on-chain."""
        self.retry.call(self.observer.load, "loadPool")
        self.coordinator.reconcile()
        if not self.ledger.has_position():
            logger.info("No existing liquidity; first observation will deposit.")
        else:
            logger.info("Resuming position centred on bin %d", self.ledger.position.center)

    # ------------------------------------------------------------------
    # Decision step
    # ------------------------------------------------------------------

    def step(self, now: float) -> ExecutionResult | None:
        """One observe -> gate -> execute pass. Caller holds the coordinator lock."""
        active = self.retry.call(self.observer.refresh_active_bin, "getActiveId")
        if self.ledger.stale:
            self.coordinator.reconcile()

        observation = self.tracker.observe(active, now)
        request = observation.request or self.tracker.poll_maintenance(now)
        self.log_decision(observation, request)
        if request is None:
            return None

        gas_price, native = self.retry.call(
            lambda: self.observer.read_gate_inputs(self.owner), "gateInputs"
        )
        snapshot = GateSnapshot(
            now=now,
            last_jump=self.tracker.last_jump(),
            out_of_range_since=self.tracker.out_of_range_since,
            gas_price=gas_price,
            native_balance=native,
        )
        decision = self.governor.evaluate(request, snapshot)
        self.log_decision(observation, request, decision)
        if not decision.allowed:
            if decision.fatal:
                raise FatalConditionError(f"{decision.reason}: {decision.detail}")
            self.tracker.resume(now)
            return None

        result = self.coordinator.execute(request)
        self.log_decision(observation, request, decision, result)
        return result

    def on_trigger(self, source: str) -> ExecutionResult | None:
        """Guarded entry point shared by every trigger source."""
        if self._stop.is_set():
            return None
        now = self.clock()
        if now < self.next_iteration_allowed_ts:
            logger.debug(
                "Trigger [%s] skipped: backing off for %ds",
                source,
                int(self.next_iteration_allowed_ts - now),
            )
            return None

        with self.coordinator.exclusive(source) as acquired:
            if not acquired:
                return None
            try:
                return self.step(now)
            except FatalConditionError as e:
                self._fail_fatal(e)
            except Exception as e:
                failures = self.ledger.record_failure()
                backoff = min(
                    self.strategy.failure_backoff_base * 2 ** (failures - 1),
                    self.strategy.failure_backoff_max,
                )
                self.next_iteration_allowed_ts = now + backoff
                logger.error(
                    "Error in agent loop (%d consecutive). Backing off for %ds: %s",
                    failures,
                    backoff,
                    e,
                    exc_info=True,
                )
                if failures >= self.strategy.failure_limit:
                    self._fail_fatal(
                        FatalConditionError(f"{failures} consecutive failures")
                    )
        return None

    def _fail_fatal(self, error: FatalConditionError) -> None:
        logger.error("FATAL: %s", error)
        self.fatal_error = error
        self._stop.set()

    # ------------------------------------------------------------------
    # Trigger sources
    # ------------------------------------------------------------------

    def _watch_blocks(self) -> None:
        while not self._stop.is_set():
            try:
                block = self.chain.get_block_number()
            except RemoteCallError as e:
                logger.warning("Block watcher: %s", e)
            else:
                if block != self._last_block:
                    self._last_block = block
                    self.on_trigger("block")
            self._stop.wait(self.strategy.block_poll_interval)

    def _fallback_timer(self) -> None:
        while not self._stop.wait(self.strategy.poll_interval):
            self.on_trigger("timer")

    def start(self) -> None:
        self._threads = [
            threading.Thread(target=self._watch_blocks, name="block-watcher", daemon=True),
            threading.Thread(target=self._fallback_timer, name="fallback-timer", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=self.strategy.poll_interval + self.strategy.receipt_timeout)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run until stopped. Returns the process exit status."""
        self.setup()
        logger.info(
            "Agent running: %d-bin range, fallback every %ds. Press Ctrl+C to stop.",
            self.strategy.half_width * 2 + 1,
            self.strategy.poll_interval,
        )
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Agent stopped by user.")
            self.stop()
            return 0

        self.stop()
        if self.fatal_error is not None:
            self.coordinator.safe_shutdown()
            return 1
        return 0

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def log_decision(
        self,
        observation: Observation,
        request: RebalanceRequest | None,
        decision: GateDecision | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        """Log decision details and append a JSON record to decisions.jsonl."""
        position = self.ledger.position
        logger.debug(
            "DECISION: state=%s active=%d center=%s churn=%s overlap=%d request=%s gate=%s",
            observation.state.value,
            observation.active_bin,
            position.center if position else None,
            observation.churn,
            observation.overlap,
            request.reason if request else None,
            decision.reason if decision else None,
        )
        if self.decisions_path is None:
            return

        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "active_bin": observation.active_bin,
            "state": observation.state.value,
            "center": position.center if position else None,
            "churn": observation.churn,
            "overlap": observation.overlap,
            "suppressed": observation.suppressed,
            "request": request.reason if request else None,
            "target": request.target if request else None,
            "gate": decision.reason if decision else None,
            "executed": result is not None,
            "tx_hashes": result.tx_hashes if result else [],
            "daily_count": self.ledger.counters.daily_rebalance_count,
        }
        with open(self.decisions_path, "a") as f:
            f.write(json.dumps(record) + "\n")


def main(argv: list[str]) -> int:
    private_key = argv[1] if len(argv) > 1 else config.PRIVATE_KEY
    if not private_key:
        print("FATAL: PRIVATE_KEY not set (pass it as an argument or in .env)", file=sys.stderr)
        return 1
    decisions_path = setup_logging()
    try:
        agent = LPAgent.from_private_key(private_key, decisions_path=decisions_path)
        return agent.run()
    except Exception as e:
        logger.error("Critical error during startup: %s", e, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
