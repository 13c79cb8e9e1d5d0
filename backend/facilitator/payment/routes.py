"""
Facilitator API routes.

Endpoints for payment verification, settlement, reconciliation and
supported-kind discovery. Service calls block on the ledger, so they run in
the threadpool and never stall the event loop.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from facilitator.payment.service import FacilitatorService
from facilitator.payment.types import (
    FacilitatorRequest,
    ReconcileRequest,
    SettleResponse,
    SupportedResponse,
    VerifyResponse,
)

router = APIRouter(tags=["facilitator"])


def get_facilitator_service(request: Request) -> FacilitatorService:
    """Resolve the service configured on the application.

    Raises:
        HTTPException: If facilitator service is not configured
    """
    service: Optional[FacilitatorService] = getattr(request.app.state, "facilitator", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Payment facilitator service not configured")
    return service


@router.post("/verify", response_model=VerifyResponse)
async def verify_payment(
    body: FacilitatorRequest,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> VerifyResponse:
    """Verify a payment header against requirements without settling it."""
    result = await run_in_threadpool(
        service.verify,
        body.payment_header,
        body.payment_requirements,
        body.x402_version,
    )
    return VerifyResponse.from_result(result)


@router.post("/settle", response_model=SettleResponse)
async def settle_payment(
    body: FacilitatorRequest,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> SettleResponse:
    """Settle a verified payment on-chain and wait for finality."""
    result = await run_in_threadpool(
        service.settle,
        body.payment_header,
        body.payment_requirements,
        body.x402_version,
    )
    return SettleResponse.from_result(result)


@router.post("/reconcile", response_model=SettleResponse)
async def reconcile_payment(
    body: ReconcileRequest,
    service: FacilitatorService = Depends(get_facilitator_service),
) -> SettleResponse:
    """Resolve a settlement whose outcome was unknown."""
    result = await run_in_threadpool(service.reconcile, body.network, body.payer, body.nonce)
    return SettleResponse.from_result(result)


@router.get("/supported", response_model=SupportedResponse)
async def get_supported(
    service: FacilitatorService = Depends(get_facilitator_service),
) -> SupportedResponse:
    """Get supported payment schemes and networks."""
    return service.get_supported()
