"""
Payer-side helpers for building a signed X-PAYMENT header.
"""

import secrets
import time
from typing import Optional

from eth_account import Account
from eth_keys import keys
from hexbytes import HexBytes

from facilitator.payment.encoding import encode_payment_header, payment_message_hash
from facilitator.payment.types import (
    X402_VERSION,
    ExactEvmAuthorization,
    ExactEvmPaymentPayload,
    PaymentRequirements,
)

__all__ = [
    "build_payment_payload",
    "build_payment_header",
    "sign_authorization",
]


def sign_authorization(authorization: ExactEvmAuthorization, private_key: str, chain_id: int) -> str:
    """Sign the canonical message for an authorization.

    Returns:
        0x-prefixed 65-byte ``r || s || v`` signature, v in {27, 28}
    """
    message_hash = payment_message_hash(authorization, chain_id)
    signature = keys.PrivateKey(HexBytes(private_key)).sign_msg_hash(message_hash)
    raw = signature.to_bytes()
    return "0x" + (raw[:64] + bytes([raw[64] + 27])).hex()


def build_payment_payload(
    requirements: PaymentRequirements,
    private_key: str,
    chain_id: int,
    *,
    amount: Optional[int] = None,
    nonce: Optional[int] = None,
    now: Optional[int] = None,
) -> ExactEvmPaymentPayload:
    """Construct and sign an ``exact`` payload that pays the given requirements.

    The deadline is set ``maxTimeoutSeconds`` into the future and the nonce is
    random unless given.
    """
    now = int(time.time()) if now is None else now
    payer = Account.from_key(private_key).address

    unsigned = ExactEvmAuthorization(
        from_=payer,
        to=requirements.pay_to,
        token=requirements.asset,
        amount=requirements.max_amount_required if amount is None else amount,
        nonce=secrets.randbits(256) if nonce is None else nonce,
        deadline=now + requirements.max_timeout_seconds,
    )
    signed = unsigned.model_copy(
        update={"signature": sign_authorization(unsigned, private_key, chain_id)}
    )
    return ExactEvmPaymentPayload(
        x402_version=X402_VERSION,
        scheme=requirements.scheme,
        network=requirements.network,
        payload=signed,
    )


def build_payment_header(
    requirements: PaymentRequirements,
    private_key: str,
    chain_id: int,
    **kwargs,
) -> str:
    """Build the base64 X-PAYMENT header value for the given requirements."""
    return encode_payment_header(build_payment_payload(requirements, private_key, chain_id, **kwargs))
