"""
Payment Module - x402 verification and settlement.

Handles payment verification, at-most-once settlement and the gateway
middleware that protects resource-server routes.
"""

from facilitator.payment.client import FacilitatorClient, PaymentClient, PaymentResult, RemoteFacilitatorClient
from facilitator.payment.errors import InternalError, MalformedPayloadError, ReasonCode, X402Error
from facilitator.payment.middleware import PaymentGatewayMiddleware
from facilitator.payment.routes import router
from facilitator.payment.routes_config import RouteConfig, RouteRegistry
from facilitator.payment.service import FacilitatorService
from facilitator.payment.types import (
    NetworkType,
    PaymentPayload,
    PaymentRequirements,
    Scheme,
    SettlementResult,
    VerificationResult,
)

__all__ = [
    "FacilitatorClient",
    "FacilitatorService",
    "InternalError",
    "MalformedPayloadError",
    "NetworkType",
    "PaymentClient",
    "PaymentGatewayMiddleware",
    "PaymentPayload",
    "PaymentRequirements",
    "PaymentResult",
    "ReasonCode",
    "RemoteFacilitatorClient",
    "RouteConfig",
    "RouteRegistry",
    "Scheme",
    "SettlementResult",
    "VerificationResult",
    "X402Error",
    "router",
]
