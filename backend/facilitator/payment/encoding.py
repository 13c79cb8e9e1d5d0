"""
Wire encoding for x402 headers and the canonical payment message.
"""

import base64
import binascii
import json
import time
from typing import Optional

from pydantic import BaseModel, ValidationError
from web3 import Web3

from facilitator.payment.errors import MalformedPayloadError
from facilitator.payment.types import (
    ExactEvmAuthorization,
    PaymentPayload,
    SettlementProof,
    SettlementResult,
    parse_payment_payload,
)

# Domain tag binds the signature to this scheme.
EXACT_MESSAGE_TAG = "x402-exact"

EXACT_MESSAGE_TYPES = [
    "string",   # tag
    "uint256",  # chain id
    "address",  # from
    "address",  # to
    "address",  # token
    "uint256",  # amount
    "uint256",  # nonce
    "uint256",  # deadline
]


def _encode_model(model: BaseModel) -> str:
    raw = json.dumps(model.model_dump(mode="json", by_alias=True), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_payment_header(payment_header: str) -> PaymentPayload:
    """Decode a base64-encoded JSON payment header into a validated payload.

    Args:
        payment_header: Value of the X-PAYMENT header

    Returns:
        Validated PaymentPayload

    Raises:
        MalformedPayloadError: If the header is not base64, not JSON, or not a known payload kind
    """
    try:
        decoded_bytes = base64.b64decode(payment_header, validate=True)
        data = json.loads(decoded_bytes.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError) as e:
        raise MalformedPayloadError(f"Failed to decode payment header: {e}") from e

    return parse_payment_payload(data)


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a payment payload for the X-PAYMENT header."""
    return _encode_model(payload)


def build_settlement_proof(result: SettlementResult, timestamp: Optional[int] = None) -> SettlementProof:
    if not result.success or not result.tx_reference:
        raise ValueError("Settlement proof requires a successful settlement")
    return SettlementProof(
        tx_reference=result.tx_reference,
        network_id=result.network_id or "",
        timestamp=int(time.time()) if timestamp is None else timestamp,
        payer=result.payer,
    )


def encode_settlement_proof(proof: SettlementProof) -> str:
    """Encode a settlement proof for the X-PAYMENT-RESPONSE header."""
    return _encode_model(proof)


def decode_settlement_proof(header: str) -> SettlementProof:
    try:
        data = json.loads(base64.b64decode(header, validate=True).decode("utf-8"))
        return SettlementProof.model_validate(data)
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError) as e:
        raise MalformedPayloadError(f"Failed to decode payment response header: {e}") from e


def payment_message_hash(authorization: ExactEvmAuthorization, chain_id: int) -> bytes:
    """Canonical 32-byte digest the payer signs for an ``exact`` authorization.

    Every field of the authorization except the signature is covered, along
    with the chain id, so a signature cannot be replayed across networks.
    """
    digest = Web3.solidity_keccak(
        EXACT_MESSAGE_TYPES,
        [
            EXACT_MESSAGE_TAG,
            chain_id,
            authorization.from_,
            authorization.to,
            authorization.token,
            authorization.amount,
            authorization.nonce,
            authorization.deadline,
        ],
    )
    return bytes(digest)
