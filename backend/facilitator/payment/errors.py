"""
Reason codes and exceptions for x402 verification and settlement.

Verification failures are reported as values (a ``ReasonCode`` on a
``VerificationResult``); exceptions are reserved for malformed input and for
internal failures that must not be mistaken for a payment decision.
"""

from enum import Enum
from typing import Any, Optional


class ReasonCode(str, Enum):
    """Single, precise reason for a rejected payment."""

    MALFORMED_PAYLOAD = "malformed_payload"
    VERSION_MISMATCH = "version_mismatch"
    SCHEME_MISMATCH = "scheme_mismatch"
    NETWORK_MISMATCH = "network_mismatch"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    ASSET_MISMATCH = "asset_mismatch"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    EXPIRED_DEADLINE = "expired_deadline"
    DEADLINE_TOO_FAR = "deadline_too_far"
    MISSING_SIGNATURE = "missing_signature"
    INVALID_SIGNATURE = "invalid_signature"
    NONCE_REUSED = "nonce_reused"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    SETTLEMENT_REJECTED = "settlement_rejected"
    SETTLEMENT_TIMEOUT = "settlement_timeout"
    INTERNAL_ERROR = "internal_error"

    @property
    def retry_safe(self) -> bool:
        """Whether the same authorization may be submitted again."""
        return self is not ReasonCode.SETTLEMENT_TIMEOUT


class X402Error(Exception):
    """Base exception for the facilitator."""

    def __init__(self, message: str, code: ReasonCode, details: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class MalformedPayloadError(X402Error):
    """Raised when a payment header cannot be decoded or fails schema validation."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, ReasonCode.MALFORMED_PAYLOAD, details)


class InternalError(X402Error):
    """Raised for failures that say nothing about the payment itself.

    The ledger is unreachable, serialization failed, and so on. No nonce state
    is left changed when this is raised; callers may retry transparently.
    """

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, ReasonCode.INTERNAL_ERROR, details)
