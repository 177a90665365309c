import os
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from web3 import Web3

# Load binkeeper/.env into os.environ BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)

# Monad mainnet
RPC_URL = os.environ.get("RPC_URL", "https://rpc.monad.xyz")
CHAIN_ID = int(os.environ.get("CHAIN_ID", "143"))
PRIVATE_KEY = os.environ.get("PRIVATE_KEY", "")

# Liquidity Book contracts
POOL_ADDRESS = os.environ.get(
    "POOL_ADDRESS", "0x0594c7505A667933c7d8CB1064BcA58A2211a3be"
)
ROUTER_ADDRESS = os.environ.get(
    "ROUTER_ADDRESS", "0x18556DA13313f3532c54711497A8FedAC273220E"
)

# Symbols treated as the wrapped native asset when classifying the pool's base token
NATIVE_SYMBOLS = tuple(
    s.strip().upper()
    for s in os.environ.get("NATIVE_SYMBOLS", "WMON,WNATIVE,WETH,WAVAX").split(",")
    if s.strip()
)

# Liquidity Book fixed-point unit for distributions (1e18 == 100%)
DISTRIBUTION_UNIT = 10**18

# Bin id at which price == 1
REFERENCE_BIN_ID = 2**23

MAX_UINT256 = 2**256 - 1

# Decision logs
LOG_DIR = os.environ.get(
    "BK_LOG_DIR", os.path.join(os.path.dirname(__file__), "decisions")
)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_wei(name: str, default_native: str) -> int:
    """Read a native-asset amount given in ether units and return wei."""
    return int(Web3.to_wei(Decimal(os.environ.get(name, default_native)), "ether"))


@dataclass(frozen=True)
class StrategyConfig:
    """Strategy constants, fixed at startup."""

    # Range
    half_width: int = 1
    overlap_threshold: int = 2
    maintenance_interval: float = 600.0
    x_above: bool = True

    # Safety
    max_rebalances_per_day: int = 200
    cooldown: float = 120.0
    volatility_multiplier: int = 2
    volatility_jump_bins: int = 2
    grace_period: float = 60.0
    gas_budget: int = 500_000
    max_gas_cost_wei: int = 5 * 10**17  # 0.5 native
    gas_reserve_wei: int = 50 * 10**18
    min_safe_balance_wei: int = 10**18

    # Execution
    liquidity_usage_bps: int = 10_000
    slippage_bps: int = 10  # 0.1%
    id_slippage: int = 10
    min_bin_amount: int = 1_000
    tx_deadline: int = 300
    receipt_timeout: int = 120
    retry_attempts: int = 3
    retry_base_delay: float = 2.0

    # Loop
    failure_limit: int = 5
    failure_backoff_base: float = 30.0
    failure_backoff_max: float = 600.0
    poll_interval: float = 15.0
    block_poll_interval: float = 1.0

    # Startup: "assume_center" checks active +/- half_width, "scan" checks active +/- scan_radius
    entry_mode: str = "assume_center"
    scan_radius: int = 5

    def __post_init__(self):
        if self.half_width < 1:
            raise ValueError("half_width must be >= 1")
        if self.entry_mode not in ("assume_center", "scan"):
            raise ValueError(f"unknown entry_mode {self.entry_mode!r}")
        if not 0 < self.liquidity_usage_bps <= 10_000:
            raise ValueError("liquidity_usage_bps must be in (0, 10000]")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        """Build from BK_-prefixed environment variables, falling back to defaults."""
        defaults = {f.name: f.default for f in fields(cls)}
        return cls(
            half_width=_env_int("BK_HALF_WIDTH", defaults["half_width"]),
            overlap_threshold=_env_int("BK_OVERLAP_THRESHOLD", defaults["overlap_threshold"]),
            maintenance_interval=_env_float(
                "BK_MAINTENANCE_INTERVAL", defaults["maintenance_interval"]
            ),
            x_above=os.environ.get("BK_X_ABOVE", "true").lower() in ("true", "1", "yes"),
            max_rebalances_per_day=_env_int(
                "BK_MAX_REBALANCES_PER_DAY", defaults["max_rebalances_per_day"]
            ),
            cooldown=_env_float("BK_COOLDOWN", defaults["cooldown"]),
            volatility_multiplier=_env_int(
                "BK_VOLATILITY_MULTIPLIER", defaults["volatility_multiplier"]
            ),
            volatility_jump_bins=_env_int(
                "BK_VOLATILITY_JUMP_BINS", defaults["volatility_jump_bins"]
            ),
            grace_period=_env_float("BK_GRACE_PERIOD", defaults["grace_period"]),
            gas_budget=_env_int("BK_GAS_BUDGET", defaults["gas_budget"]),
            max_gas_cost_wei=_env_wei("BK_MAX_GAS_COST", "0.5"),
            gas_reserve_wei=_env_wei("BK_GAS_RESERVE", "50"),
            min_safe_balance_wei=_env_wei("BK_MIN_SAFE_BALANCE", "1"),
            liquidity_usage_bps=_env_int(
                "BK_LIQUIDITY_USAGE_BPS", defaults["liquidity_usage_bps"]
            ),
            slippage_bps=_env_int("BK_SLIPPAGE_BPS", defaults["slippage_bps"]),
            id_slippage=_env_int("BK_ID_SLIPPAGE", defaults["id_slippage"]),
            min_bin_amount=_env_int("BK_MIN_BIN_AMOUNT", defaults["min_bin_amount"]),
            tx_deadline=_env_int("BK_TX_DEADLINE", defaults["tx_deadline"]),
            receipt_timeout=_env_int("BK_RECEIPT_TIMEOUT", defaults["receipt_timeout"]),
            retry_attempts=_env_int("BK_RETRY_ATTEMPTS", defaults["retry_attempts"]),
            retry_base_delay=_env_float("BK_RETRY_BASE_DELAY", defaults["retry_base_delay"]),
            failure_limit=_env_int("BK_FAILURE_LIMIT", defaults["failure_limit"]),
            failure_backoff_base=_env_float(
                "BK_FAILURE_BACKOFF_BASE", defaults["failure_backoff_base"]
            ),
            failure_backoff_max=_env_float(
                "BK_FAILURE_BACKOFF_MAX", defaults["failure_backoff_max"]
            ),
            poll_interval=_env_float("BK_POLL_INTERVAL", defaults["poll_interval"]),
            block_poll_interval=_env_float(
                "BK_BLOCK_POLL_INTERVAL", defaults["block_poll_interval"]
            ),
            entry_mode=os.environ.get("BK_ENTRY_MODE", defaults["entry_mode"]),
            scan_radius=_env_int("BK_SCAN_RADIUS", defaults["scan_radius"]),
        )
