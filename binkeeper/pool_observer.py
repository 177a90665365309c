"""
PoolObserver: reads Liquidity Book pool, token and wallet state.

Independent reads are issued concurrently on a small thread pool. Nothing here
retries: callers wrap calls in a RetryPolicy.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from binkeeper import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    address: str
    decimals: int
    symbol: str


@dataclass
class PoolState:
    """Pool snapshot. Only active_bin changes after load()."""

    active_bin: int
    bin_step: int
    token_x: TokenInfo
    token_y: TokenInfo
    native_is_x: bool

    @property
    def native_token(self) -> TokenInfo:
        return self.token_x if self.native_is_x else self.token_y

    @property
    def other_token(self) -> TokenInfo:
        return self.token_y if self.native_is_x else self.token_x


@dataclass(frozen=True)
class WalletBalances:
    native: int
    token: int


def classify_native(symbol_x: str, symbol_y: str, native_symbols=config.NATIVE_SYMBOLS) -> bool:
    """Return True when token X is the wrapped-native side.

    Heuristic: symbol match against known wrapped-native aliases. When neither
    side matches, X is assumed.
    """
    known = {s.upper() for s in native_symbols}
    if symbol_x.upper() in known:
        return True
    if symbol_y.upper() in known:
        return False
    logger.warning(
        "Neither %s nor %s is a known native symbol; treating %s as native",
        symbol_x,
        symbol_y,
        symbol_x,
    )
    return True


class PoolObserver:
    """Reads pool metadata and the active bin from the chain client."""

    MAX_WORKERS = 4

    def __init__(self, chain, native_symbols=config.NATIVE_SYMBOLS):
        self.chain = chain
        self.native_symbols = tuple(native_symbols)
        self.state: PoolState | None = None

    def _gather(self, calls: dict[str, Callable]) -> dict:
        """Run independent read closures concurrently; first failure propagates."""
        with ThreadPoolExecutor(max_workers=min(self.MAX_WORKERS, len(calls))) as executor:
            futures = {name: executor.submit(fn) for name, fn in calls.items()}
            return {name: future.result() for name, future in futures.items()}

    def load(self) -> PoolState:
        first = self._gather(
            {
                "metadata": self.chain.get_pool_metadata,
                "active_bin": self.chain.get_active_bin,
            }
        )
        metadata = first["metadata"]

        tokens = self._gather(
            {
                "x": lambda: self.chain.get_token_metadata(metadata.token_x),
                "y": lambda: self.chain.get_token_metadata(metadata.token_y),
            }
        )
        decimals_x, symbol_x = tokens["x"]
        decimals_y, symbol_y = tokens["y"]

        self.state = PoolState(
            active_bin=int(first["active_bin"]),
            bin_step=int(metadata.bin_step),
            token_x=TokenInfo(metadata.token_x, int(decimals_x), symbol_x),
            token_y=TokenInfo(metadata.token_y, int(decimals_y), symbol_y),
            native_is_x=classify_native(symbol_x, symbol_y, self.native_symbols),
        )
        logger.info(
            "Pool loaded: %s/%s bin_step=%d active=%d (native: %s)",
            symbol_x,
            symbol_y,
            self.state.bin_step,
            self.state.active_bin,
            self.state.native_token.symbol,
        )
        return self.state

    def refresh_active_bin(self) -> int:
        if self.state is None:
            raise RuntimeError("PoolObserver.load() must run before refresh_active_bin()")
        active = int(self.chain.get_active_bin())
        self.state.active_bin = active
        return active

    def read_bin_balances(self, owner: str, bin_ids: list[int]) -> dict[int, int]:
        bin_ids = list(bin_ids)
        balances = self.chain.get_bin_balances(owner, bin_ids)
        return dict(zip(bin_ids, balances))

    def read_wallet(self, owner: str) -> WalletBalances:
        token = self.state.other_token.address
        result = self._gather(
            {
                "native": lambda: self.chain.get_native_balance(owner),
                "token": lambda: self.chain.get_token_balance(token, owner),
            }
        )
        return WalletBalances(native=int(result["native"]), token=int(result["token"]))

    def read_gate_inputs(self, owner: str) -> tuple[int, int]:
        """Returns (gas_price, native_balance)."""
        result = self._gather(
            {
                "gas_price": self.chain.get_gas_price,
                "native": lambda: self.chain.get_native_balance(owner),
            }
        )
        return int(result["gas_price"]), int(result["native"])
