"""
Verifier - validates a payment payload against declared requirements.

Checks run in a fixed order and stop at the first failure, so every rejection
carries exactly one reason. Verification only reads: it never reserves or
consumes a nonce, and may be repeated any number of times.
"""

import logging
import time
from typing import Callable, Optional

from facilitator.chain.adapter import ChainAdapter
from facilitator.nonces.ledger import NonceLedger
from facilitator.payment.encoding import payment_message_hash
from facilitator.payment.errors import ReasonCode
from facilitator.payment.types import (
    X402_VERSION,
    ExactEvmAuthorization,
    PaymentPayload,
    PaymentRequirements,
    VerificationResult,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEX_LENGTH = 130  # 65 bytes


def signature_present(signature: Optional[str]) -> bool:
    """Structural check: a 0x-prefixed (or bare) 65-byte hex string."""
    if not signature:
        return False
    body = signature[2:] if signature.startswith("0x") else signature
    if len(body) != SIGNATURE_HEX_LENGTH:
        return False
    try:
        bytes.fromhex(body)
    except ValueError:
        return False
    return True


def check_terms(
    authorization: ExactEvmAuthorization,
    requirements: PaymentRequirements,
    now: int,
) -> Optional[ReasonCode]:
    """Recipient, asset, amount and deadline checks shared with the settler."""
    if authorization.to != requirements.pay_to:
        return ReasonCode.RECIPIENT_MISMATCH
    if authorization.token != requirements.asset:
        return ReasonCode.ASSET_MISMATCH
    if authorization.amount < requirements.max_amount_required:
        return ReasonCode.INSUFFICIENT_AMOUNT
    if authorization.deadline < now:
        return ReasonCode.EXPIRED_DEADLINE
    if authorization.deadline - now > requirements.max_timeout_seconds:
        return ReasonCode.DEADLINE_TOO_FAR
    return None


def check_funds(
    chain: ChainAdapter,
    authorization: ExactEvmAuthorization,
    require_allowance: bool,
) -> Optional[ReasonCode]:
    """Balance and, for pre-approved settlement, allowance checks."""
    balance = chain.query_balance(authorization.token, authorization.from_)
    if balance < authorization.amount:
        return ReasonCode.INSUFFICIENT_BALANCE

    if require_allowance:
        allowance = chain.query_allowance(
            authorization.token,
            authorization.from_,
            chain.facilitator_address,
        )
        if allowance < authorization.amount:
            return ReasonCode.INSUFFICIENT_ALLOWANCE
    return None


class Verifier:
    """Validates ``exact`` payments for one network."""

    def __init__(
        self,
        chain: ChainAdapter,
        nonces: NonceLedger,
        require_allowance: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the verifier.

        Args:
            chain: Ledger access for the payload's network
            nonces: Nonce store, read only here
            require_allowance: Whether settlement spends a pre-approved allowance
            clock: Source of the current unix time
        """
        self.chain = chain
        self.nonces = nonces
        self.require_allowance = require_allowance
        self.clock = clock

    def verify(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> VerificationResult:
        """Verify a payment payload.

        Args:
            payload: Validated payment payload
            requirements: Requirements declared by the resource owner
            x402_version: Protocol version of the enclosing request, if any

        Returns:
            VerificationResult with the first failing reason, or valid

        Raises:
            ChainUnavailableError: If a ledger query could not be answered
            NonceLedgerError: If the nonce store could not be read
        """
        authorization = payload.payload
        payer = authorization.from_

        reason = self._check_static(payload, requirements, x402_version)
        if reason is not None:
            logger.info(f"Payment from {payer} rejected: {reason.value}")
            return VerificationResult.invalid(reason, payer)

        message_hash = payment_message_hash(authorization, self.chain.chain_id)
        if not self.chain.verify_signature(payer, message_hash, authorization.signature):
            logger.info(f"Payment from {payer} rejected: invalid signature")
            return VerificationResult.invalid(ReasonCode.INVALID_SIGNATURE, payer)

        if self.nonces.is_consumed(payer, authorization.nonce):
            logger.info(f"Payment from {payer} rejected: nonce {authorization.nonce} already consumed")
            return VerificationResult.invalid(ReasonCode.NONCE_REUSED, payer)

        reason = check_funds(self.chain, authorization, self.require_allowance)
        if reason is not None:
            logger.info(f"Payment from {payer} rejected: {reason.value}")
            return VerificationResult.invalid(reason, payer)

        return VerificationResult.valid(payer)

    def _check_static(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        x402_version: Optional[int],
    ) -> Optional[ReasonCode]:
        if payload.x402_version != X402_VERSION or (
            x402_version is not None and x402_version != payload.x402_version
        ):
            return ReasonCode.VERSION_MISMATCH
        if payload.scheme != requirements.scheme:
            return ReasonCode.SCHEME_MISMATCH
        if payload.network != requirements.network:
            return ReasonCode.NETWORK_MISMATCH

        reason = check_terms(payload.payload, requirements, int(self.clock()))
        if reason is not None:
            return reason

        if not signature_present(payload.payload.signature):
            return ReasonCode.MISSING_SIGNATURE
        return None
