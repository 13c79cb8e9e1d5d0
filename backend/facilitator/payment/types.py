"""
x402 protocol types for the facilitator.

Payment payloads are parsed as a strict discriminated union keyed by
``(scheme, network)``: the envelope is validated first, then the body is
validated against the model registered for that kind. Nothing downstream reads
a field that has not passed validation.
"""

import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    StrictInt,
    StrictStr,
    ValidationError,
)
from pydantic.alias_generators import to_camel
from web3 import Web3

from facilitator.payment.errors import MalformedPayloadError, ReasonCode

X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

UINT256_MAX = 2**256 - 1

_DECIMAL_RE = re.compile(r"^[0-9]+$")
_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")


class Scheme(str, Enum):
    """Supported payment schemes."""
    EXACT = "exact"


class NetworkType(str, Enum):
    """Supported blockchain networks."""
    CRONOS = "cronos"
    CRONOS_TESTNET = "cronos-testnet"


NETWORK_CHAIN_IDS: Dict[str, int] = {
    NetworkType.CRONOS.value: 25,
    NetworkType.CRONOS_TESTNET.value: 338,
}


def parse_uint(value: Any) -> int:
    """Parse an unsigned 256-bit integer from a decimal string, 0x-hex string or int.

    Floats and booleans are refused so that amounts never pass through
    floating point.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer amount")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if _DECIMAL_RE.match(text):
            parsed = int(text)
        elif _HEX_RE.match(text):
            parsed = int(text, 16)
        else:
            raise ValueError(f"not an unsigned integer: {value!r}")
    else:
        raise ValueError(f"unsupported integer type: {type(value).__name__}")

    if parsed < 0 or parsed > UINT256_MAX:
        raise ValueError(f"integer out of uint256 range: {value!r}")
    return parsed


def to_checksum(value: Any) -> str:
    """Canonicalize an EVM address to its EIP-55 checksum form."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return Web3.to_checksum_address(value)


# Integers travel as decimal strings on the wire.
Uint = Annotated[int, BeforeValidator(parse_uint), PlainSerializer(str, return_type=str, when_used="json")]
Address = Annotated[str, BeforeValidator(to_checksum)]


class _X402Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class PaymentRequirements(_X402Model):
    """Terms a payment must satisfy, declared once per protected resource."""

    scheme: StrictStr
    network: StrictStr
    max_amount_required: Uint
    resource: StrictStr
    description: StrictStr = ""
    mime_type: StrictStr = "application/json"
    pay_to: Address
    max_timeout_seconds: int = Field(default=60, ge=0)
    asset: Address
    extra: Optional[Dict[str, Any]] = None


class ExactEvmAuthorization(_X402Model):
    """Signed transfer authorization for the ``exact`` scheme on EVM networks."""

    model_config = ConfigDict(extra="forbid")

    from_: Address = Field(alias="from")
    to: Address
    token: Address
    amount: Uint
    nonce: Uint
    deadline: StrictInt = Field(ge=0)  # unix seconds
    # Presence is checked by the verifier so a missing signature gets its own reason.
    signature: Optional[StrictStr] = None


class ExactEvmPaymentPayload(_X402Model):
    """Payment payload sent in the X-PAYMENT header."""

    model_config = ConfigDict(extra="forbid")

    x402_version: StrictInt
    scheme: Literal["exact"]
    network: Literal["cronos", "cronos-testnet"]
    payload: ExactEvmAuthorization

    @property
    def payer(self) -> str:
        return self.payload.from_


PaymentPayload = ExactEvmPaymentPayload

PAYLOAD_KINDS: Dict[Tuple[str, str], Type[BaseModel]] = {
    (Scheme.EXACT.value, NetworkType.CRONOS.value): ExactEvmPaymentPayload,
    (Scheme.EXACT.value, NetworkType.CRONOS_TESTNET.value): ExactEvmPaymentPayload,
}


class _PaymentEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x402_version: StrictInt = Field(alias="x402Version")
    scheme: StrictStr
    network: StrictStr
    payload: Dict[str, Any]


def parse_payment_payload(data: Any) -> PaymentPayload:
    """Validate decoded JSON against the model registered for its (scheme, network).

    Raises:
        MalformedPayloadError: on any structural problem or an unknown kind
    """
    try:
        envelope = _PaymentEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid payment envelope: {e.errors()}") from e

    model = PAYLOAD_KINDS.get((envelope.scheme, envelope.network))
    if model is None:
        raise MalformedPayloadError(
            f"Unsupported payment kind: scheme={envelope.scheme} network={envelope.network}"
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid {envelope.scheme} payload: {e.errors()}") from e


def supported_kinds() -> List[Tuple[str, str]]:
    return sorted(PAYLOAD_KINDS)


# --- Results -----------------------------------------------------------------------


class VerificationResult(_X402Model):
    """Outcome of verification. A pure value; producing one changes nothing."""

    is_valid: bool
    invalid_reason: Optional[ReasonCode] = None
    payer: Optional[str] = None

    @classmethod
    def valid(cls, payer: str) -> "VerificationResult":
        return cls(is_valid=True, payer=payer)

    @classmethod
    def invalid(cls, reason: ReasonCode, payer: Optional[str] = None) -> "VerificationResult":
        return cls(is_valid=False, invalid_reason=reason, payer=payer)


class SettlementResult(_X402Model):
    """Outcome of one settlement attempt."""

    success: bool
    tx_reference: Optional[str] = None
    network_id: Optional[str] = None
    failure_reason: Optional[ReasonCode] = None
    payer: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.failure_reason is ReasonCode.SETTLEMENT_TIMEOUT


# --- Facilitator HTTP bodies ------------------------------------------------------


class FacilitatorRequest(_X402Model):
    """Request body shared by /verify and /settle."""

    x402_version: StrictInt = Field(validation_alias=AliasChoices("x402Version", "version"))
    payment_header: StrictStr
    payment_requirements: PaymentRequirements


class VerifyResponse(_X402Model):
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerifyResponse":
        return cls(
            is_valid=result.is_valid,
            invalid_reason=result.invalid_reason.value if result.invalid_reason else None,
            payer=result.payer,
        )


class SettleResponse(_X402Model):
    success: bool
    error: Optional[str] = None
    tx_reference: Optional[str] = None
    network_id: Optional[str] = None
    payer: Optional[str] = None

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettleResponse":
        return cls(
            success=result.success,
            error=result.failure_reason.value if result.failure_reason else None,
            tx_reference=result.tx_reference,
            network_id=result.network_id,
            payer=result.payer,
        )


class SupportedKind(_X402Model):
    x402_version: int = X402_VERSION
    scheme: str
    network: str


class SupportedResponse(_X402Model):
    schemes: List[str]
    networks: List[str]
    kinds: List[SupportedKind]


class ReconcileRequest(_X402Model):
    network: StrictStr
    payer: Address
    nonce: Uint


class PaymentRequiredResponse(_X402Model):
    """Body of a 402 response from a protected resource."""

    x402_version: int = X402_VERSION
    accepts: List[PaymentRequirements]
    error: Optional[str] = None


class SettlementProof(_X402Model):
    """Contents of the X-PAYMENT-RESPONSE header."""

    tx_reference: str
    network_id: str
    timestamp: int
    payer: Optional[str] = None
