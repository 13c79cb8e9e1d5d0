"""
Chain access for the facilitator: signature checks, balance reads, transfer
submission and finality polling.
"""

from facilitator.chain.adapter import (
    BroadcastUnknownError,
    ChainAdapter,
    ChainAdapterError,
    ChainUnavailableError,
    FinalityStatus,
    TransferRejectedError,
)
from facilitator.chain.evm import EvmChainAdapter
from facilitator.chain.providers import ProviderManager, RPCProviderError

__all__ = [
    "BroadcastUnknownError",
    "ChainAdapter",
    "ChainAdapterError",
    "ChainUnavailableError",
    "EvmChainAdapter",
    "FinalityStatus",
    "ProviderManager",
    "RPCProviderError",
    "TransferRejectedError",
]
