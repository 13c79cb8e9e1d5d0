"""
x402 payment gateway middleware.

Intercepts requests to paywalled routes, verifies and settles the attached
payment through a facilitator, and only then lets the request through.
"""

import logging
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from facilitator.payment.client import FacilitatorClient
from facilitator.payment.encoding import build_settlement_proof, decode_payment_header, encode_settlement_proof
from facilitator.payment.errors import InternalError, MalformedPayloadError, ReasonCode
from facilitator.payment.routes_config import RouteConfig, RouteRegistry
from facilitator.payment.types import (
    X402_VERSION,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentRequiredResponse,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)


class PaymentGatewayMiddleware(BaseHTTPMiddleware):
    """Middleware that requires a settled x402 payment before serving protected routes.

    Outcomes:
        no X-PAYMENT header            -> 402 with the route's requirements
        header does not decode         -> 400
        verification fails             -> 403 with the reason
        settlement fails or is pending -> 402 with the reason
        facilitator internal error     -> 500
        settled                        -> request forwarded, X-PAYMENT-RESPONSE attached
    """

    def __init__(
        self,
        app,
        facilitator: FacilitatorClient,
        routes: RouteRegistry,
        pay_to: str,
        skip_paths: Optional[Iterable[str]] = None,
    ):
        """Initialize the payment gateway.

        Args:
            app: The ASGI application
            facilitator: In-process FacilitatorService or a RemoteFacilitatorClient
            routes: Registry of paywalled routes and their prices
            pay_to: Address that receives payments
            skip_paths: Paths that never require payment (e.g. /health)
        """
        super().__init__(app)
        self.facilitator = facilitator
        self.routes = routes
        self.pay_to = pay_to
        self.skip_paths = set(skip_paths or [])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.skip_paths:
            return await call_next(request)

        route = self.routes.match(request.url.path, request.method)
        if route is None:
            return await call_next(request)

        requirements = self._requirements_for(route, request)

        payment_header = request.headers.get(X_PAYMENT_HEADER)
        if not payment_header:
            return self._payment_required(requirements, f"{X_PAYMENT_HEADER} header is required")

        try:
            payload = decode_payment_header(payment_header)
        except MalformedPayloadError as e:
            logger.info(f"Rejected malformed payment for {request.url.path}: {e}")
            return JSONResponse(
                status_code=400,
                content={"error": ReasonCode.MALFORMED_PAYLOAD.value, "message": str(e)},
            )

        try:
            verification = await run_in_threadpool(
                self.facilitator.verify, payment_header, requirements, X402_VERSION
            )
            if not verification.is_valid:
                reason = verification.invalid_reason or ReasonCode.INTERNAL_ERROR
                logger.info(f"Payment from {payload.payer} failed verification: {reason.value}")
                status_code = 400 if reason is ReasonCode.MALFORMED_PAYLOAD else 403
                return JSONResponse(status_code=status_code, content={"error": reason.value})

            settlement = await run_in_threadpool(
                self.facilitator.settle, payment_header, requirements, X402_VERSION
            )
        except InternalError as e:
            logger.error(f"Facilitator error for {request.url.path}: {e}")
            return JSONResponse(status_code=500, content={"error": e.code.value})

        if not settlement.success:
            reason = settlement.failure_reason or ReasonCode.SETTLEMENT_REJECTED
            logger.warning(
                f"Settlement for {payload.payer} failed: {reason.value} (tx={settlement.tx_reference})"
            )
            return self._payment_required(requirements, reason.value)

        request.state.payment = settlement
        response = await call_next(request)
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_settlement_proof(build_settlement_proof(settlement))
        return response

    def _requirements_for(self, route: RouteConfig, request: Request) -> PaymentRequirements:
        return route.to_requirements(resource=str(request.url), pay_to=self.pay_to)

    def _payment_required(self, requirements: PaymentRequirements, error: str) -> JSONResponse:
        body = PaymentRequiredResponse(accepts=[requirements], error=error)
        return JSONResponse(status_code=402, content=body.model_dump(mode="json", by_alias=True))
