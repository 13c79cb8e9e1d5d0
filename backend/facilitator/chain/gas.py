"""
EIP-1559 gas strategy for settlement transactions.

This module provides:
- Base fee lookup from the latest block or fee history
- Priority fee (tip) estimation with bounds
- maxFeePerGas computation with a safety multiplier
- Gas estimation and transaction building for contract calls
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.types import Wei

logger = logging.getLogger(__name__)

# Default gas limit if estimation fails (ERC-20 transferFrom is well below this)
DEFAULT_GAS_LIMIT = 120000

# Base fee is doubled so the tx stays valid if the base fee rises
BASE_FEE_MULTIPLIER = 2

# Gas estimate buffer, percent
GAS_LIMIT_BUFFER_PCT = 20

DEFAULT_PRIORITY_FEE_GWEI = Decimal("0.1")
MIN_PRIORITY_FEE_GWEI = Decimal("0.01")
MAX_PRIORITY_FEE_GWEI = Decimal("10")


@dataclass
class GasParams:
    """Gas parameters for EIP-1559 transactions."""

    max_fee_per_gas: Wei  # baseFee * multiplier + priorityFee
    max_priority_fee_per_gas: Wei
    gas_limit: int


class GasStrategyError(Exception):
    """Base exception for gas strategy errors."""

    pass


class GasStrategy:
    """
    EIP-1559 gas strategy.

    The facilitator pays gas for every settlement, so fees are bounded:
    the tip is clamped and the base fee only gets a fixed multiplier.
    """

    def __init__(
        self,
        web3: Web3,
        base_fee_multiplier: int = BASE_FEE_MULTIPLIER,
        default_priority_fee_gwei: Decimal = DEFAULT_PRIORITY_FEE_GWEI,
    ) -> None:
        self.web3 = web3
        self.base_fee_multiplier = base_fee_multiplier
        self.default_priority_fee_gwei = default_priority_fee_gwei

    def get_base_fee(self) -> Wei:
        """
        Get the current base fee.

        Returns:
            Base fee in Wei

        Raises:
            GasStrategyError: If base fee cannot be determined
        """
        try:
            block = self.web3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is not None:
                return Wei(int(base_fee))

            try:
                fee_history = self.web3.eth.fee_history(1, "latest")
                base_fees = fee_history.get("baseFeePerGas") if fee_history else None
                if base_fees:
                    return Wei(int(base_fees[-1]))
            except Exception as e:
                logger.debug(f"Fee history API not available: {e}")

            gas_price = self.web3.eth.gas_price
            estimated_base_fee = Wei(gas_price // 2)
            logger.warning(f"Could not get base fee, estimating as {estimated_base_fee} wei from gas_price")
            return estimated_base_fee

        except Exception as e:
            raise GasStrategyError(f"Failed to get base fee: {e}") from e

    def get_priority_fee(self) -> Wei:
        """
        Get the priority fee (tip), clamped to sane bounds.

        Returns:
            Priority fee in Wei
        """
        default_priority_wei = Wei(self.web3.to_wei(self.default_priority_fee_gwei, "gwei"))
        try:
            max_priority_fee = self.web3.eth.max_priority_fee
        except Exception as e:
            logger.debug(f"Could not get maxPriorityFeePerGas, using default: {e}")
            return default_priority_wei

        if max_priority_fee:
            max_priority_gwei = self.web3.from_wei(max_priority_fee, "gwei")
            if MIN_PRIORITY_FEE_GWEI <= max_priority_gwei <= MAX_PRIORITY_FEE_GWEI:
                return Wei(max_priority_fee)

        logger.debug(f"Using default priority fee: {self.default_priority_fee_gwei} gwei")
        return default_priority_wei

    def calculate_gas_params(self, gas_limit: Optional[int] = None) -> GasParams:
        """
        Calculate gas parameters for an EIP-1559 transaction.

        Formula:
            maxFeePerGas = (baseFee * multiplier) + priorityFee
            maxPriorityFeePerGas = priorityFee
        """
        base_fee = self.get_base_fee()
        priority_fee = self.get_priority_fee()
        max_fee_per_gas = Wei(base_fee * self.base_fee_multiplier + priority_fee)

        if gas_limit is None:
            gas_limit = DEFAULT_GAS_LIMIT

        logger.debug(
            f"Gas params: baseFee={base_fee} wei, priorityFee={priority_fee} wei, "
            f"maxFeePerGas={max_fee_per_gas} wei, gasLimit={gas_limit}"
        )

        return GasParams(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=priority_fee,
            gas_limit=gas_limit,
        )

    def estimate_and_build_tx(self, contract_function, from_address: str, tx_overrides: Optional[dict] = None) -> dict:
        """
        Estimate gas and build a transaction with EIP-1559 parameters.

        Args:
            contract_function: Web3 contract function to call
            from_address: Sender address
            tx_overrides: Optional dict of transaction fields (nonce, chainId, ...)

        Returns:
            Transaction dict ready for signing

        Raises:
            GasStrategyError: If the base fee cannot be determined
        """
        base_tx = {"from": from_address}
        if tx_overrides:
            base_tx.update(tx_overrides)

        try:
            estimated_gas = contract_function.estimate_gas(base_tx)
            gas_limit = estimated_gas + estimated_gas * GAS_LIMIT_BUFFER_PCT // 100
        except ContractLogicError:
            raise
        except Exception as e:
            logger.warning(f"Gas estimation failed: {e}. Using default gas limit.")
            gas_limit = DEFAULT_GAS_LIMIT

        gas_params = self.calculate_gas_params(gas_limit=gas_limit)

        return contract_function.build_transaction(
            {
                **base_tx,
                "gas": gas_params.gas_limit,
                "maxFeePerGas": gas_params.max_fee_per_gas,
                "maxPriorityFeePerGas": gas_params.max_priority_fee_per_gas,
            }
        )
