"""
EVM ChainAdapter backed by web3.py.

Settlement uses ERC-20 ``transferFrom``: the payer approves the facilitator
once, and the facilitator's own account submits each transfer and pays its
gas. The payer's signed authorization is checked off-chain before the
facilitator spends the allowance; the token contract does not see it.
"""

import logging
import threading
import time
from typing import Dict, List

import requests
from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from facilitator.chain.adapter import (
    BroadcastUnknownError,
    ChainAdapter,
    ChainUnavailableError,
    FinalityStatus,
    TransferRejectedError,
)
from facilitator.chain.gas import GasStrategy, GasStrategyError
from facilitator.chain.providers import ProviderManager, RPCProviderError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0  # seconds
SIGNATURE_LENGTH = 65

# Node errors meaning the transaction is already in the mempool.
_ALREADY_BROADCAST_MARKERS = ("already known", "known transaction")


ERC20_ABI: List[Dict] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_from", "type": "address"},
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transferFrom",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


def recover_signer(message_hash: bytes, signature: str) -> str:
    """Recover the checksum address that produced a 65-byte r||s||v signature.

    Raises:
        ValueError: If the signature is not well formed or recovery fails
    """
    signature_hex = signature[2:] if signature.startswith("0x") else signature
    raw = bytes.fromhex(signature_hex)
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(f"Invalid signature length: {len(raw)}")

    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        raise ValueError(f"Invalid recovery id: {raw[64]}")

    try:
        sig = keys.Signature(vrs=(v, r, s))
        public_key = keys.PublicKey.recover_from_msg_hash(message_hash, sig)
    except (BadSignature, KeyValidationError) as e:
        raise ValueError(f"Signature recovery failed: {e}") from e
    return public_key.to_checksum_address()


class EvmChainAdapter(ChainAdapter):
    """Ledger access for one EVM network."""

    def __init__(
        self,
        provider_manager: ProviderManager,
        private_key: str,
        chain_id: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        confirmations: int = 1,
    ):
        """Initialize with a shared provider pool and the facilitator's key.

        Args:
            provider_manager: RPC pool for this network
            private_key: Facilitator account key (submits transfers, pays gas)
            chain_id: Chain id of the network
            poll_interval: Seconds between receipt polls while awaiting finality
            confirmations: Blocks (including the inclusion block) required for finality
        """
        self.provider_manager = provider_manager
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self.poll_interval = poll_interval
        self.confirmations = max(1, confirmations)
        # Serializes facilitator-account nonce allocation and broadcast.
        self._send_lock = threading.Lock()
        logger.info(f"EVM adapter ready: chain_id={chain_id} facilitator={self._account.address}")

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def facilitator_address(self) -> str:
        return self._account.address

    def _web3(self) -> Web3:
        try:
            return self.provider_manager.get_web3()
        except RPCProviderError as e:
            raise ChainUnavailableError(str(e)) from e

    def _token(self, w3: Web3, token: str):
        return w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def verify_signature(self, identity: str, message_hash: bytes, signature: str) -> bool:
        try:
            signer = recover_signer(message_hash, signature)
        except ValueError as e:
            logger.info(f"Signature rejected: {e}")
            return False
        return signer == Web3.to_checksum_address(identity)

    def _read(self, description: str, call):
        w3 = self._web3()
        try:
            return int(call(w3))
        except requests.exceptions.RequestException as e:
            self.provider_manager.mark_endpoint_unhealthy(error=str(e))
            raise ChainUnavailableError(f"{description} failed: {e}") from e
        except (Web3Exception, ValueError) as e:
            raise ChainUnavailableError(f"{description} failed: {e}") from e

    def query_balance(self, token: str, account: str) -> int:
        return self._read(
            "balanceOf",
            lambda w3: self._token(w3, token).functions.balanceOf(account).call(),
        )

    def query_allowance(self, token: str, owner: str, spender: str) -> int:
        return self._read(
            "allowance",
            lambda w3: self._token(w3, token).functions.allowance(owner, spender).call(),
        )

    def submit_transfer(self, token: str, from_address: str, to_address: str, amount: int) -> str:
        w3 = self._web3()
        transfer = self._token(w3, token).functions.transferFrom(from_address, to_address, amount)

        try:
            tx = GasStrategy(w3).estimate_and_build_tx(
                transfer,
                self.facilitator_address,
                {"chainId": self._chain_id},
            )
        except ContractLogicError as e:
            raise TransferRejectedError(f"transferFrom would revert: {e}") from e
        except requests.exceptions.RequestException as e:
            self.provider_manager.mark_endpoint_unhealthy(error=str(e))
            raise ChainUnavailableError(f"Failed to build transfer: {e}") from e
        except (Web3Exception, GasStrategyError, ValueError) as e:
            raise ChainUnavailableError(f"Failed to build transfer: {e}") from e

        with self._send_lock:
            try:
                tx_nonce = w3.eth.get_transaction_count(self.facilitator_address, "pending")
            except requests.exceptions.RequestException as e:
                self.provider_manager.mark_endpoint_unhealthy(error=str(e))
                raise ChainUnavailableError(f"Failed to read account nonce: {e}") from e
            except (Web3Exception, ValueError) as e:
                raise ChainUnavailableError(f"Failed to read account nonce: {e}") from e

            signed = self._account.sign_transaction({**tx, "nonce": tx_nonce})
            tx_reference = Web3.to_hex(signed.hash)

            try:
                w3.eth.send_raw_transaction(signed.raw_transaction)
            except requests.exceptions.ConnectTimeout as e:
                self.provider_manager.mark_endpoint_unhealthy(error=str(e))
                raise ChainUnavailableError(f"RPC unreachable: {e}") from e
            except requests.exceptions.RequestException as e:
                raise BroadcastUnknownError(f"Broadcast outcome unknown: {e}", tx_reference) from e
            except (Web3Exception, ValueError) as e:
                if any(marker in str(e).lower() for marker in _ALREADY_BROADCAST_MARKERS):
                    raise BroadcastUnknownError(f"Broadcast outcome unknown: {e}", tx_reference) from e
                raise TransferRejectedError(f"Node rejected transfer: {e}") from e

        logger.info(f"Transfer submitted: {tx_reference} ({amount} of {token} {from_address} -> {to_address})")
        return tx_reference

    def _poll_receipt(self, tx_reference: str) -> FinalityStatus:
        try:
            w3 = self._web3()
            receipt = w3.eth.get_transaction_receipt(tx_reference)
        except TransactionNotFound:
            return FinalityStatus.UNKNOWN
        except (ChainUnavailableError, requests.exceptions.RequestException, Web3Exception) as e:
            logger.warning(f"Receipt poll for {tx_reference} failed: {e}")
            return FinalityStatus.UNKNOWN

        if receipt is None:
            return FinalityStatus.UNKNOWN
        if receipt["status"] == 0:
            return FinalityStatus.REJECTED

        if self.confirmations > 1:
            try:
                depth = w3.eth.block_number - receipt["blockNumber"] + 1
            except (requests.exceptions.RequestException, Web3Exception) as e:
                logger.warning(f"Block number lookup failed: {e}")
                return FinalityStatus.UNKNOWN
            if depth < self.confirmations:
                return FinalityStatus.UNKNOWN

        return FinalityStatus.CONFIRMED

    def await_finality(self, tx_reference: str, timeout: float) -> FinalityStatus:
        deadline = time.monotonic() + timeout
        while True:
            status = self._poll_receipt(tx_reference)
            if status is not FinalityStatus.UNKNOWN:
                logger.info(f"Transaction {tx_reference} final: {status.value}")
                return status

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Transaction {tx_reference} not final after {timeout}s")
                return FinalityStatus.UNKNOWN
            time.sleep(min(self.poll_interval, remaining))
