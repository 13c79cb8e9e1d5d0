"""
FacilitatorService - verification and settlement for x402 payments.

Composes a Verifier and a Settler per configured network behind the two
facilitator operations. Payment headers are decoded here; a header that does
not decode to a known payload kind is reported as malformed_payload without
touching the ledger.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from facilitator.chain.adapter import ChainAdapter, ChainUnavailableError
from facilitator.chain.evm import EvmChainAdapter
from facilitator.chain.providers import ProviderManager
from facilitator.config import FacilitatorConfig
from facilitator.nonces.ledger import NonceLedger, NonceLedgerError, SqlNonceLedger
from facilitator.payment.encoding import decode_payment_header
from facilitator.payment.errors import InternalError, MalformedPayloadError, ReasonCode
from facilitator.payment.settler import Settler
from facilitator.payment.types import (
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    SupportedKind,
    SupportedResponse,
    VerificationResult,
    supported_kinds,
)
from facilitator.payment.verifier import Verifier

logger = logging.getLogger(__name__)


@dataclass
class NetworkEngine:
    """Verifier and settler bound to one network's chain adapter."""

    verifier: Verifier
    settler: Settler

    @classmethod
    def create(
        cls,
        network: str,
        chain: ChainAdapter,
        nonces: NonceLedger,
        finality_timeout: float = 60.0,
        require_allowance: bool = True,
        recheck_funds: bool = False,
    ) -> "NetworkEngine":
        return cls(
            verifier=Verifier(chain, nonces, require_allowance=require_allowance),
            settler=Settler(
                chain,
                nonces,
                network_id=network,
                finality_timeout=finality_timeout,
                require_allowance=require_allowance,
                recheck_funds=recheck_funds,
            ),
        )


class FacilitatorService:
    """Main payment facilitator service supporting multiple networks."""

    def __init__(self, engines: Dict[str, NetworkEngine], schemes: Optional[List[str]] = None):
        """Initialize facilitator with per-network engines.

        Args:
            engines: Network name -> NetworkEngine
            schemes: Supported scheme names (default: exact)
        """
        self.engines = engines
        self.schemes = schemes or ["exact"]

    @classmethod
    def from_config(cls, config: FacilitatorConfig, nonces: Optional[NonceLedger] = None) -> "FacilitatorService":
        """Build EVM adapters, a shared nonce ledger and engines from configuration.

        Raises:
            ValueError: If the configuration is incomplete
        """
        config.validate()
        nonces = nonces or SqlNonceLedger(config.database_url)

        engines = {}
        for network, chain_id in config.networks.items():
            providers = ProviderManager(
                config.rpc_urls[network],
                chain_id=chain_id,
                timeout=config.rpc_timeout_seconds,
            )
            chain = EvmChainAdapter(
                providers,
                private_key=config.private_key,
                chain_id=chain_id,
                poll_interval=config.poll_interval_seconds,
                confirmations=config.confirmations,
            )
            engines[network] = NetworkEngine.create(
                network,
                chain,
                nonces,
                finality_timeout=config.finality_timeout_seconds,
                require_allowance=config.require_allowance,
                recheck_funds=config.settle_recheck_funds,
            )
            logger.info(f"Facilitator network enabled: {network} (chain_id={chain_id})")

        return cls(engines, schemes=config.schemes)

    def _decode(self, payment_header: str) -> Optional[PaymentPayload]:
        try:
            return decode_payment_header(payment_header)
        except MalformedPayloadError as e:
            logger.info(f"Malformed payment header: {e}")
            return None

    def verify(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> VerificationResult:
        """Verify a base64 payment header against requirements.

        Raises:
            InternalError: If the ledger or nonce store could not be read
        """
        payload = self._decode(payment_header)
        if payload is None:
            return VerificationResult.invalid(ReasonCode.MALFORMED_PAYLOAD)

        engine = self.engines.get(payload.network)
        if engine is None:
            return VerificationResult.invalid(ReasonCode.NETWORK_MISMATCH, payload.payer)

        try:
            return engine.verifier.verify(payload, requirements, x402_version=x402_version)
        except (ChainUnavailableError, NonceLedgerError) as e:
            raise InternalError(f"Verification could not complete: {e}") from e

    def settle(
        self,
        payment_header: str,
        requirements: PaymentRequirements,
        x402_version: Optional[int] = None,
    ) -> SettlementResult:
        """Settle a base64 payment header that has passed verification.

        Raises:
            InternalError: If nothing was broadcast because a dependency was unreachable
        """
        payload = self._decode(payment_header)
        if payload is None:
            return SettlementResult(success=False, failure_reason=ReasonCode.MALFORMED_PAYLOAD)

        if payload.x402_version != X402_VERSION or (
            x402_version is not None and x402_version != payload.x402_version
        ):
            return SettlementResult(
                success=False,
                failure_reason=ReasonCode.VERSION_MISMATCH,
                network_id=payload.network,
                payer=payload.payer,
            )

        engine = self.engines.get(payload.network)
        if engine is None:
            return SettlementResult(
                success=False,
                failure_reason=ReasonCode.NETWORK_MISMATCH,
                payer=payload.payer,
            )

        return engine.settler.settle(payload, requirements)

    def reconcile(self, network: str, payer: str, nonce: int) -> SettlementResult:
        """Resolve a pending settlement with a read of its recorded transaction."""
        engine = self.engines.get(network)
        if engine is None:
            return SettlementResult(success=False, failure_reason=ReasonCode.NETWORK_MISMATCH, payer=payer)
        return engine.settler.reconcile(payer, nonce)

    def purge_expired_nonces(self, now: Optional[int] = None) -> int:
        """Drop expired nonce records from every ledger the engines use.

        Returns:
            Number of records removed

        Raises:
            InternalError: If a nonce store could not be written
        """
        ledgers = {id(engine.settler.nonces): engine.settler.nonces for engine in self.engines.values()}
        try:
            return sum(ledger.purge_expired(now) for ledger in ledgers.values())
        except NonceLedgerError as e:
            raise InternalError(f"Nonce purge failed: {e}") from e

    def get_supported(self) -> SupportedResponse:
        """Get supported schemes and networks."""
        kinds = [
            SupportedKind(x402_version=X402_VERSION, scheme=scheme, network=network)
            for scheme, network in supported_kinds()
            if scheme in self.schemes and network in self.engines
        ]
        return SupportedResponse(
            schemes=sorted({kind.scheme for kind in kinds}),
            networks=sorted({kind.network for kind in kinds}),
            kinds=kinds,
        )
