"""
ChainClient: web3 implementation of the chain capabilities the agent consumes.

Reads go straight to the LB pair / ERC20 contracts. Writes are simulated with
eth_call first, then signed, sent and confirmed separately so callers can
retry each step on its own.
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import requests
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)

from binkeeper.errors import RemoteCallError, TransactionReverted

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")

TRANSIENT_ERRORS = (
    requests.exceptions.RequestException,
    ProviderConnectionError,
    Web3RPCError,
    TimeExhausted,
    TransactionNotFound,
    ConnectionError,
    TimeoutError,
)


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


@dataclass(frozen=True)
class PoolMetadata:
    token_x: str
    token_y: str
    bin_step: int


@dataclass(frozen=True)
class ContractCall:
    """A prepared state-changing call, ready for simulate_and_send."""

    function: Any
    value: int = 0
    label: str = "call"


@contextmanager
def remote(label: str):
    """Translate web3/transport exceptions into the agent's error taxonomy."""
    try:
        yield
    except ContractLogicError as e:
        raise TransactionReverted(f"{label} reverted: {e}") from e
    except TRANSIENT_ERRORS as e:
        raise RemoteCallError(f"{label} failed: {e}") from e


class ChainClient:
    """Liquidity Book pair/router access for a single signing account."""

    def __init__(
        self,
        w3: Web3,
        account,
        pool_address: str,
        router_address: str,
        gas_limit: int = 1_000_000,
        receipt_timeout: int = 120,
    ):
        self.w3 = w3
        self.account = account
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout

        self.pool_address = to_checksum_address(pool_address)
        self.router_address = to_checksum_address(router_address)

        self.pair = w3.eth.contract(address=self.pool_address, abi=_load_abi("lb_pair.json"))
        self.router = w3.eth.contract(
            address=self.router_address, abi=_load_abi("lb_router.json")
        )
        self._erc20_abi = _load_abi("erc20.json")
        self._tokens: dict[str, Any] = {}

    @property
    def owner(self) -> str:
        return self.account.address

    def _erc20(self, token: str):
        address = to_checksum_address(token)
        if address not in self._tokens:
            self._tokens[address] = self.w3.eth.contract(address=address, abi=self._erc20_abi)
        return self._tokens[address]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_pool_metadata(self) -> PoolMetadata:
        with remote("getPoolMetadata"):
            token_x = self.pair.functions.getTokenX().call()
            token_y = self.pair.functions.getTokenY().call()
            bin_step = self.pair.functions.getBinStep().call()
        return PoolMetadata(to_checksum_address(token_x), to_checksum_address(token_y), int(bin_step))

    def get_active_bin(self) -> int:
        with remote("getActiveId"):
            return int(self.pair.functions.getActiveId().call())

    def get_token_metadata(self, token: str) -> tuple[int, str]:
        """Returns (decimals, symbol)."""
        contract = self._erc20(token)
        with remote(f"tokenMetadata({token})"):
            decimals = contract.functions.decimals().call()
            symbol = contract.functions.symbol().call()
        return int(decimals), str(symbol)

    def get_bin_balances(self, owner: str, bin_ids: list[int]) -> list[int]:
        if not bin_ids:
            return []
        owner = to_checksum_address(owner)
        with remote("balanceOfBatch"):
            result = self.pair.functions.balanceOfBatch(
                [owner] * len(bin_ids), list(bin_ids)
            ).call()
        return [int(b) for b in result]

    def get_token_balance(self, token: str, owner: str) -> int:
        with remote(f"balanceOf({token})"):
            return int(self._erc20(token).functions.balanceOf(to_checksum_address(owner)).call())

    def get_native_balance(self, owner: str) -> int:
        with remote("getBalance"):
            return int(self.w3.eth.get_balance(to_checksum_address(owner)))

    def get_allowance(self, token: str, owner: str, spender: str) -> int:
        with remote(f"allowance({token})"):
            return int(
                self._erc20(token)
                .functions.allowance(to_checksum_address(owner), to_checksum_address(spender))
                .call()
            )

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        with remote("isApprovedForAll"):
            return bool(
                self.pair.functions.isApprovedForAll(
                    to_checksum_address(owner), to_checksum_address(operator)
                ).call()
            )

    def get_gas_price(self) -> int:
        with remote("gasPrice"):
            return int(self.w3.eth.gas_price)

    def get_block_number(self) -> int:
        with remote("blockNumber"):
            return int(self.w3.eth.block_number)

    # ------------------------------------------------------------------
    # Call builders
    # ------------------------------------------------------------------

    def approve(self, token: str, spender: str, amount: int) -> ContractCall:
        fn = self._erc20(token).functions.approve(to_checksum_address(spender), amount)
        return ContractCall(fn, 0, f"approve({token})")

    def set_approval_for_all(self, operator: str) -> ContractCall:
        fn = self.pair.functions.setApprovalForAll(to_checksum_address(operator), True)
        return ContractCall(fn, 0, "setApprovalForAll")

    def add_liquidity_call(self, params: dict, value: int) -> ContractCall:
        """addLiquidityNATIVE(LiquidityParameters); value is the native leg."""
        ordered = (
            to_checksum_address(params["tokenX"]),
            to_checksum_address(params["tokenY"]),
            params["binStep"],
            params["amountX"],
            params["amountY"],
            params["amountXMin"],
            params["amountYMin"],
            params["activeIdDesired"],
            params["idSlippage"],
            list(params["deltaIds"]),
            list(params["distributionX"]),
            list(params["distributionY"]),
            to_checksum_address(params["to"]),
            to_checksum_address(params["refundTo"]),
            params["deadline"],
        )
        fn = self.router.functions.addLiquidityNATIVE(ordered)
        return ContractCall(fn, value, "addLiquidityNATIVE")

    def remove_liquidity_call(
        self,
        token: str,
        bin_step: int,
        amount_token_min: int,
        amount_native_min: int,
        ids: list[int],
        amounts: list[int],
        to: str,
        deadline: int,
    ) -> ContractCall:
        fn = self.router.functions.removeLiquidityNATIVE(
            to_checksum_address(token),
            bin_step,
            amount_token_min,
            amount_native_min,
            list(ids),
            list(amounts),
            to_checksum_address(to),
            deadline,
        )
        return ContractCall(fn, 0, "removeLiquidityNATIVE")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def simulate_and_send(self, call: ContractCall) -> str:
        """Dry-run with eth_call, then sign and broadcast. Returns the tx hash."""
        sender = self.account.address
        with remote(f"{call.label} simulation"):
            call.function.call({"from": sender, "value": call.value})

        with remote(f"{call.label} send"):
            tx = call.function.build_transaction(
                {
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender),
                    "value": call.value,
                    "gas": self.gas_limit,
                    "gasPrice": self.w3.eth.gas_price,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("%s tx sent: %s", call.label, tx_hex)
        return tx_hex

    def await_confirmation(self, tx_hash: str) -> str:
        """Wait for the receipt. Returns "success" or "reverted"."""
        with remote(f"receipt({tx_hash})"):
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        status = "success" if receipt["status"] == 1 else "reverted"
        logger.info("tx=%s status=%s block=%s", tx_hash, status, receipt.get("blockNumber"))
        return status
