"""
ChainAdapter: the ledger capability the facilitator depends on.

The verifier only uses the read side (signature recovery, balance and
allowance queries). The settler uses submit_transfer and await_finality.
All amounts are Python ints end to end.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional


class FinalityStatus(str, Enum):
    """Outcome of waiting for a submitted transaction."""
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class ChainAdapterError(Exception):
    """Base exception for ledger access errors."""

    pass


class ChainUnavailableError(ChainAdapterError):
    """The ledger could not be reached. Nothing was broadcast."""

    pass


class TransferRejectedError(ChainAdapterError):
    """The node refused the transfer before broadcasting it."""

    pass


class BroadcastUnknownError(ChainAdapterError):
    """Sending failed in a way that leaves broadcast status unknown."""

    def __init__(self, message: str, tx_reference: Optional[str] = None):
        super().__init__(message)
        self.tx_reference = tx_reference


class ChainAdapter(ABC):
    """Abstract ledger access."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        """Chain id used in the canonical payment message."""

    @property
    @abstractmethod
    def facilitator_address(self) -> str:
        """Identity that submits transfers and spends payer allowances."""

    @abstractmethod
    def verify_signature(self, identity: str, message_hash: bytes, signature: str) -> bool:
        """Return True if ``signature`` over ``message_hash`` was made by ``identity``."""

    @abstractmethod
    def query_balance(self, token: str, account: str) -> int:
        """Token balance of ``account`` in the smallest unit."""

    @abstractmethod
    def query_allowance(self, token: str, owner: str, spender: str) -> int:
        """Amount of ``token`` that ``spender`` may move on behalf of ``owner``."""

    @abstractmethod
    def submit_transfer(self, token: str, from_address: str, to_address: str, amount: int) -> str:
        """Broadcast a transfer and return its transaction reference.

        Raises:
            ChainUnavailableError: the ledger was unreachable before sending
            TransferRejectedError: the node refused the transaction
            BroadcastUnknownError: the transaction may or may not have been broadcast
        """

    @abstractmethod
    def await_finality(self, tx_reference: str, timeout: float) -> FinalityStatus:
        """Wait up to ``timeout`` seconds for the transaction to become final."""
