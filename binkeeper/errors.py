"""
Error taxonomy for the rebalancing engine.

Only RemoteCallError is retried. Everything else fails the current step
immediately.
"""


class BinkeeperError(Exception):
    """Base class for all agent errors."""


class RemoteCallError(BinkeeperError):
    """Transient RPC/network failure. Safe to retry."""


class TransactionReverted(BinkeeperError):
    """Simulation or on-chain execution reverted."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class DistributionError(BinkeeperError):
    """Distribution could not be built without violating its invariants."""


class FatalConditionError(BinkeeperError):
    """Condition that requires cleanup and process termination."""
