"""
Settler - turns an accepted payment into a final ledger transfer.

The nonce reservation is the only critical section: once a settle call has
reserved (payer, nonce), submission and finality waiting proceed without any
lock shared with other settlements.

Outcomes:
    confirmed                 -> nonce consumed, success
    rejected before effect    -> reservation released, settlement_rejected
    broadcast, outcome unknown-> nonce left pending, settlement_timeout
    ledger unreachable        -> reservation released, InternalError raised
"""

import logging
import time
from typing import Callable, Optional

from facilitator.chain.adapter import (
    BroadcastUnknownError,
    ChainAdapter,
    ChainUnavailableError,
    FinalityStatus,
    TransferRejectedError,
)
from facilitator.nonces.ledger import NonceLedger, NonceLedgerError, NonceState
from facilitator.payment.encoding import payment_message_hash
from facilitator.payment.errors import InternalError, ReasonCode
from facilitator.payment.types import (
    ExactEvmAuthorization,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
)
from facilitator.payment.verifier import check_funds, check_terms, signature_present

logger = logging.getLogger(__name__)

DEFAULT_FINALITY_TIMEOUT = 60.0  # seconds


class Settler:
    """Executes ``exact`` payments on one network, at most once per (payer, nonce)."""

    def __init__(
        self,
        chain: ChainAdapter,
        nonces: NonceLedger,
        network_id: str,
        finality_timeout: float = DEFAULT_FINALITY_TIMEOUT,
        require_allowance: bool = True,
        recheck_funds: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the settler.

        Args:
            chain: Ledger access for this network
            nonces: Nonce store providing the reservation
            network_id: Network name reported in settlement results
            finality_timeout: Seconds to wait for a submitted transfer to become final
            require_allowance: Whether transfers spend a pre-approved allowance
            recheck_funds: Repeat balance/allowance queries before reserving
            clock: Source of the current unix time
        """
        self.chain = chain
        self.nonces = nonces
        self.network_id = network_id
        self.finality_timeout = finality_timeout
        self.require_allowance = require_allowance
        self.recheck_funds = recheck_funds
        self.clock = clock

    def _result(
        self,
        success: bool,
        payer: str,
        reason: Optional[ReasonCode] = None,
        tx_reference: Optional[str] = None,
    ) -> SettlementResult:
        return SettlementResult(
            success=success,
            tx_reference=tx_reference,
            network_id=self.network_id,
            failure_reason=reason,
            payer=payer,
        )

    def _precheck(self, payload: PaymentPayload, requirements: PaymentRequirements) -> Optional[ReasonCode]:
        """Re-check the fields that decide where money goes; no nonce access."""
        authorization = payload.payload
        if payload.scheme != requirements.scheme:
            return ReasonCode.SCHEME_MISMATCH
        if payload.network != requirements.network or payload.network != self.network_id:
            return ReasonCode.NETWORK_MISMATCH

        reason = check_terms(authorization, requirements, int(self.clock()))
        if reason is not None:
            return reason

        if not signature_present(authorization.signature):
            return ReasonCode.MISSING_SIGNATURE
        message_hash = payment_message_hash(authorization, self.chain.chain_id)
        if not self.chain.verify_signature(authorization.from_, message_hash, authorization.signature):
            return ReasonCode.INVALID_SIGNATURE

        if self.recheck_funds:
            try:
                return check_funds(self.chain, authorization, self.require_allowance)
            except ChainUnavailableError as e:
                raise InternalError(f"Funds re-check failed: {e}") from e
        return None

    def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettlementResult:
        """Settle a payment that has just passed verification.

        Returns:
            SettlementResult; failure_reason is nonce_reused when another call
            already owns or consumed this authorization

        Raises:
            InternalError: The ledger or nonce store was unreachable before
                anything was broadcast; nonce state is unchanged
        """
        authorization = payload.payload
        payer = authorization.from_

        reason = self._precheck(payload, requirements)
        if reason is not None:
            logger.warning(f"Settlement refused for {payer}: {reason.value}")
            return self._result(False, payer, reason)

        try:
            reserved = self.nonces.reserve(payer, authorization.nonce, expires_at=authorization.deadline)
        except NonceLedgerError as e:
            raise InternalError(f"Nonce reservation failed: {e}") from e

        if not reserved:
            return self._result(False, payer, ReasonCode.NONCE_REUSED)

        return self._execute(authorization)

    def _execute(self, authorization: ExactEvmAuthorization) -> SettlementResult:
        payer = authorization.from_
        nonce = authorization.nonce

        try:
            tx_reference = self.chain.submit_transfer(
                authorization.token,
                payer,
                authorization.to,
                authorization.amount,
            )
        except TransferRejectedError as e:
            logger.warning(f"Transfer for {payer}/{nonce} rejected before broadcast: {e}")
            self._release(payer, nonce)
            return self._result(False, payer, ReasonCode.SETTLEMENT_REJECTED)
        except BroadcastUnknownError as e:
            logger.error(f"Broadcast for {payer}/{nonce} indeterminate: {e}")
            self._mark_pending(payer, nonce, e.tx_reference)
            return self._result(False, payer, ReasonCode.SETTLEMENT_TIMEOUT, e.tx_reference)
        except ChainUnavailableError as e:
            self._release(payer, nonce)
            raise InternalError(f"Ledger unavailable: {e}") from e

        status = self.chain.await_finality(tx_reference, self.finality_timeout)

        if status is FinalityStatus.CONFIRMED:
            self._commit(payer, nonce, tx_reference)
            return self._result(True, payer, tx_reference=tx_reference)

        if status is FinalityStatus.REJECTED:
            logger.warning(f"Transfer {tx_reference} for {payer}/{nonce} reverted")
            self._release(payer, nonce)
            return self._result(False, payer, ReasonCode.SETTLEMENT_REJECTED, tx_reference)

        self._mark_pending(payer, nonce, tx_reference)
        return self._result(False, payer, ReasonCode.SETTLEMENT_TIMEOUT, tx_reference)

    def reconcile(self, payer: str, nonce: int) -> SettlementResult:
        """Resolve a pending settlement by reading its transaction once.

        A free nonce reports settlement_rejected: nothing is in effect and the
        authorization may be retried.
        """
        try:
            record = self.nonces.get(payer, nonce)
        except NonceLedgerError as e:
            raise InternalError(f"Nonce lookup failed: {e}") from e

        if record.state is NonceState.CONSUMED:
            return self._result(True, payer, tx_reference=record.settlement_reference)
        if record.state is NonceState.FREE:
            return self._result(False, payer, ReasonCode.SETTLEMENT_REJECTED)
        if record.state is NonceState.RESERVED or not record.settlement_reference:
            return self._result(False, payer, ReasonCode.SETTLEMENT_TIMEOUT, record.settlement_reference)

        tx_reference = record.settlement_reference
        status = self.chain.await_finality(tx_reference, 0)
        if status is FinalityStatus.CONFIRMED:
            self._commit(payer, nonce, tx_reference)
            return self._result(True, payer, tx_reference=tx_reference)
        if status is FinalityStatus.REJECTED:
            self._release(payer, nonce)
            return self._result(False, payer, ReasonCode.SETTLEMENT_REJECTED, tx_reference)
        return self._result(False, payer, ReasonCode.SETTLEMENT_TIMEOUT, tx_reference)

    # A failed write below leaves the row reserved or pending, which still blocks replays.

    def _release(self, payer: str, nonce: int) -> None:
        try:
            self.nonces.release(payer, nonce)
        except NonceLedgerError as e:
            logger.error(f"Could not release {payer}/{nonce}; it stays reserved: {e}")

    def _commit(self, payer: str, nonce: int, tx_reference: str) -> None:
        try:
            self.nonces.commit(payer, nonce, tx_reference)
        except NonceLedgerError as e:
            logger.error(f"Could not commit {payer}/{nonce} (tx {tx_reference}); it stays reserved: {e}")

    def _mark_pending(self, payer: str, nonce: int, tx_reference: Optional[str]) -> None:
        try:
            self.nonces.mark_pending(payer, nonce, tx_reference)
        except NonceLedgerError as e:
            logger.error(f"Could not mark {payer}/{nonce} pending (tx {tx_reference}): {e}")
