import threading

import pytest

from binkeeper.chain import ContractCall, PoolMetadata
from binkeeper.config import REFERENCE_BIN_ID, StrategyConfig
from binkeeper.coordinator import ExecutionCoordinator
from binkeeper.errors import TransactionReverted
from binkeeper.ledger import Ledger
from binkeeper.pool_observer import PoolObserver
from binkeeper.range_tracker import RangeTracker
from binkeeper.retry import RetryPolicy

OWNER = "0x" + "aa" * 20
ROUTER = "0x" + "bb" * 20
TOKEN_X = "0x" + "11" * 20
TOKEN_Y = "0x" + "22" * 20
CENTER = REFERENCE_BIN_ID
ETHER = 10**18


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeChain:
    """In-memory Liquidity Book pair + router + wallet."""

    def __init__(self, active_bin: int = CENTER, symbol_x: str = "WMON", symbol_y: str = "USDC"):
        self.active_bin = active_bin
        self.bin_step = 20
        self.symbols = {TOKEN_X: symbol_x, TOKEN_Y: symbol_y}
        self.decimals = {TOKEN_X: 18, TOKEN_Y: 6}

        self.native_balance = 100 * ETHER
        self.token_balance = 1_000 * 10**6
        self.bin_balances: dict[int, int] = {}
        self.allowance = 0
        self.approved_for_all = False
        self.gas_price = 50 * 10**9
        self.block_number = 1

        self.sent: list[ContractCall] = []
        self.reads: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.revert_on_simulate: set[str] = set()
        self.receipt_status = "success"
        # Called with the ContractCall before it takes effect; may block
        self.on_send = None
        # Active bin to move to when liquidity is removed
        self.active_after_remove: int | None = None
        self._lock = threading.Lock()

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _read(self, name: str) -> None:
        with self._lock:
            self.reads.append(name)
            pending = self.failures.get(name)
            if pending:
                raise pending.pop(0)

    def labels(self) -> list[str]:
        return [c.label for c in self.sent]

    # reads
    def get_pool_metadata(self):
        self._read("get_pool_metadata")
        return PoolMetadata(TOKEN_X, TOKEN_Y, self.bin_step)

    def get_active_bin(self):
        self._read("get_active_bin")
        return self.active_bin

    def get_token_metadata(self, token):
        self._read("get_token_metadata")
        return self.decimals[token], self.symbols[token]

    def get_bin_balances(self, owner, bin_ids):
        self._read("get_bin_balances")
        return [self.bin_balances.get(b, 0) for b in bin_ids]

    def get_token_balance(self, token, owner):
        self._read("get_token_balance")
        return self.token_balance

    def get_native_balance(self, owner):
        self._read("get_native_balance")
        return self.native_balance

    def get_allowance(self, token, owner, spender):
        self._read("get_allowance")
        return self.allowance

    def is_approved_for_all(self, owner, operator):
        self._read("is_approved_for_all")
        return self.approved_for_all

    def get_gas_price(self):
        self._read("get_gas_price")
        return self.gas_price

    def get_block_number(self):
        self._read("get_block_number")
        return self.block_number

    # call builders
    def approve(self, token, spender, amount):
        return ContractCall(("approve", {"amount": amount}), 0, f"approve({token})")

    def set_approval_for_all(self, operator):
        return ContractCall(("setApprovalForAll", {}), 0, "setApprovalForAll")

    def add_liquidity_call(self, params, value):
        return ContractCall(("addLiquidityNATIVE", params), value, "addLiquidityNATIVE")

    def remove_liquidity_call(self, token, bin_step, amount_token_min, amount_native_min, ids, amounts, to, deadline):
        payload = {"ids": list(ids), "amounts": list(amounts), "deadline": deadline}
        return ContractCall(("removeLiquidityNATIVE", payload), 0, "removeLiquidityNATIVE")

    # writes
    def simulate_and_send(self, call):
        self._read("simulate_and_send")
        if call.label in self.revert_on_simulate:
            raise TransactionReverted(f"{call.label} reverted: simulated")
        if self.on_send is not None:
            self.on_send(call)
        self.sent.append(call)
        self._apply(call)
        return "0x%064x" % len(self.sent)

    def await_confirmation(self, tx_hash):
        self._read("await_confirmation")
        return self.receipt_status

    def _apply(self, call):
        name, payload = call.function
        if name == "approve":
            self.allowance = payload["amount"]
        elif name == "setApprovalForAll":
            self.approved_for_all = True
        elif name == "removeLiquidityNATIVE":
            for b in payload["ids"]:
                self.bin_balances.pop(b, None)
            if self.active_after_remove is not None:
                self.active_bin = self.active_after_remove
        elif name == "addLiquidityNATIVE":
            center = payload["activeIdDesired"]
            for delta, dx, dy in zip(
                payload["deltaIds"], payload["distributionX"], payload["distributionY"]
            ):
                if dx or dy:
                    self.bin_balances[center + delta] = self.bin_balances.get(center + delta, 0) + ETHER
            self.native_balance -= call.value


def no_sleep(_seconds):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def strategy():
    return StrategyConfig(
        gas_reserve_wei=2 * ETHER,
        min_safe_balance_wei=1 * ETHER,
        retry_base_delay=0.0,
        min_bin_amount=1_000,
    )


@pytest.fixture
def retry(strategy):
    return RetryPolicy(strategy.retry_attempts, strategy.retry_base_delay, sleep=no_sleep)


@pytest.fixture
def coordinator_factory(chain, strategy, retry, clock):
    def build(strategy_override=None):
        strat = strategy_override or strategy
        observer = PoolObserver(chain)
        observer.load()
        tracker = RangeTracker(strat.half_width, strat.overlap_threshold, strat.maintenance_interval)
        ledger = Ledger(half_width=strat.half_width)
        return ExecutionCoordinator(
            chain, observer, tracker, ledger, strat, OWNER, ROUTER, retry=retry, clock=clock
        )

    return build


@pytest.fixture
def coordinator(coordinator_factory):
    return coordinator_factory()
