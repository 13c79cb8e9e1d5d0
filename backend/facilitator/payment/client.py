"""
Clients for both sides of an x402 exchange.

A resource server either embeds a FacilitatorService in-process or talks to a
remote facilitator over HTTP. Both expose the same verify/settle calls.
A payer uses PaymentClient to answer a 402 with a signed X-PAYMENT header.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import requests
from pydantic import ValidationError

from facilitator.payment.encoding import decode_settlement_proof
from facilitator.payment.errors import InternalError, MalformedPayloadError, ReasonCode
from facilitator.payment.signing import build_payment_header
from facilitator.payment.types import (
    NETWORK_CHAIN_IDS,
    X402_VERSION,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentRequiredResponse,
    PaymentRequirements,
    SettlementProof,
    SettlementResult,
    SettleResponse,
    VerificationResult,
    VerifyResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_FACILITATOR_URL = "http://localhost:8000"
DEFAULT_TIMEOUT = 90  # seconds; settle waits for finality


class FacilitatorClient(Protocol):
    def verify(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> VerificationResult:
        ...

    def settle(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> SettlementResult:
        ...


def _reason(value: Optional[str]) -> Optional[ReasonCode]:
    if value is None:
        return None
    try:
        return ReasonCode(value)
    except ValueError as e:
        raise InternalError(f"Facilitator returned unknown reason: {value}") from e


class RemoteFacilitatorClient:
    """Calls a facilitator's /verify and /settle endpoints over HTTP."""

    def __init__(
        self,
        facilitator_url: str = DEFAULT_FACILITATOR_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.facilitator_url = facilitator_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, endpoint: str, payment_header: str, requirements: PaymentRequirements, x402_version: Optional[int]) -> dict:
        body = {
            "x402Version": X402_VERSION if x402_version is None else x402_version,
            "paymentHeader": payment_header,
            "paymentRequirements": requirements.model_dump(mode="json", by_alias=True),
        }
        url = f"{self.facilitator_url}/{endpoint}"
        try:
            response = self.session.post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise InternalError(f"Facilitator unreachable at {url}: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Facilitator {endpoint} returned HTTP {response.status_code}")
            raise InternalError(f"Facilitator {endpoint} failed with HTTP {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"Facilitator {endpoint} returned invalid JSON") from e

    def verify(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> VerificationResult:
        data = self._post("verify", payment_header, requirements, x402_version)
        try:
            response = VerifyResponse.model_validate(data)
        except ValidationError as e:
            raise InternalError(f"Unexpected /verify response: {data}") from e
        return VerificationResult(
            is_valid=response.is_valid,
            invalid_reason=_reason(response.invalid_reason),
            payer=response.payer,
        )

    def settle(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> SettlementResult:
        data = self._post("settle", payment_header, requirements, x402_version)
        try:
            response = SettleResponse.model_validate(data)
        except ValidationError as e:
            raise InternalError(f"Unexpected /settle response: {data}") from e
        return SettlementResult(
            success=response.success,
            tx_reference=response.tx_reference,
            network_id=response.network_id,
            failure_reason=_reason(response.error),
            payer=response.payer,
        )


@dataclass
class PaymentResult:
    """Outcome of a paid request."""

    success: bool
    response: Optional[requests.Response] = None
    proof: Optional[SettlementProof] = None
    error: Optional[str] = None


def _error_message(response) -> str:
    try:
        error = response.json().get("error")
    except (ValueError, AttributeError):
        error = None
    return error or f"Unexpected status code: {response.status_code}"


class PaymentClient:
    """Requests x402-protected resources, paying when the server answers 402."""

    def __init__(
        self,
        private_key: str,
        networks: Optional[Dict[str, int]] = None,
        max_amount: Optional[int] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """Initialize with the payer's key.

        Args:
            private_key: Payer account key used to sign authorizations
            networks: Network name -> chain id the payer is willing to pay on
            max_amount: Refuse requirements asking for more than this (base units)
            timeout: Request timeout in seconds; the paid request waits for settlement
            session: HTTP session (default: new requests.Session)
        """
        self.private_key = private_key
        self.networks = dict(NETWORK_CHAIN_IDS) if networks is None else networks
        self.max_amount = max_amount
        self.timeout = timeout
        self.session = session or requests.Session()

    def pay(self, url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None, **kwargs) -> PaymentResult:
        """Request ``url``, paying the first accepted requirement on a 402.

        A resource that answers without asking for payment is returned as is.
        """
        headers = dict(headers or {})
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Request to {url} failed: {e}")
            return PaymentResult(success=False, error=str(e))

        if response.status_code != 402:
            if 200 <= response.status_code < 300:
                return PaymentResult(success=True, response=response)
            return PaymentResult(success=False, response=response, error=_error_message(response))

        try:
            payment_required = PaymentRequiredResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unreadable 402 response from {url}: {e}")
            return PaymentResult(success=False, response=response, error="Invalid payment requirements")

        if not payment_required.accepts:
            return PaymentResult(
                success=False,
                response=response,
                error=payment_required.error or "No payment options available",
            )

        requirements = payment_required.accepts[0]
        chain_id = self.networks.get(requirements.network)
        if chain_id is None:
            return PaymentResult(
                success=False,
                response=response,
                error=f"Unsupported network: {requirements.network}",
            )
        if self.max_amount is not None and requirements.max_amount_required > self.max_amount:
            return PaymentResult(
                success=False,
                response=response,
                error=f"Payment of {requirements.max_amount_required} exceeds limit of {self.max_amount}",
            )

        headers[X_PAYMENT_HEADER] = build_payment_header(requirements, self.private_key, chain_id)
        logger.info(f"Paying {requirements.max_amount_required} of {requirements.asset} on {requirements.network} for {url}")
        try:
            paid = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Paid request to {url} failed: {e}")
            return PaymentResult(success=False, error=str(e))

        if not 200 <= paid.status_code < 300:
            return PaymentResult(success=False, response=paid, error=_error_message(paid))

        proof = None
        settlement_header = paid.headers.get(X_PAYMENT_RESPONSE_HEADER)
        if settlement_header:
            try:
                proof = decode_settlement_proof(settlement_header)
            except MalformedPayloadError as e:
                logger.warning(f"Failed to decode settlement response: {e}")
        return PaymentResult(success=True, response=paid, proof=proof)
