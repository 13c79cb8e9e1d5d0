"""
Configuration for the x402 facilitator.

Loads and validates environment variables (prefix ``FACILITATOR_``, or a
``.env`` file) for chain access, settlement and the nonce store.
"""

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from facilitator.nonces.ledger import DEFAULT_DATABASE_URL


class FacilitatorConfig(BaseSettings):
    """Facilitator configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FACILITATOR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # RPC endpoints per network, in order of preference
    rpc_urls: Dict[str, List[str]] = {
        "cronos": [
            "https://evm.cronos.org",
            "https://cronos-evm.publicnode.com",
        ],
        "cronos-testnet": ["https://evm-t3.cronos.org"],
    }

    # Network name -> chain id (25=mainnet, 338=testnet)
    networks: Dict[str, int] = {"cronos": 25, "cronos-testnet": 338}
    schemes: List[str] = ["exact"]

    # Facilitator account: submits transferFrom and pays gas
    private_key: Optional[str] = None

    # Nonce store
    database_url: str = DEFAULT_DATABASE_URL
    # Seconds between purges of expired nonce records; 0 disables purging
    nonce_purge_interval_seconds: float = 3600.0

    # Settlement
    finality_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 2.0
    confirmations: int = 1
    require_allowance: bool = True
    settle_recheck_funds: bool = False

    rpc_timeout_seconds: int = 10
    log_level: str = "INFO"

    def validate(self) -> None:
        """Validate that required configuration is present.

        Raises:
            ValueError: If required configuration is missing
        """
        if not self.private_key:
            raise ValueError("FACILITATOR_PRIVATE_KEY environment variable is required")
        if not self.networks:
            raise ValueError("At least one network must be configured")
        for network in self.networks:
            if not self.rpc_urls.get(network):
                raise ValueError(f"No RPC URLs configured for network '{network}'")
        if self.finality_timeout_seconds <= 0:
            raise ValueError("finality_timeout_seconds must be positive")
        if self.confirmations < 1:
            raise ValueError("confirmations must be at least 1")


# Global config instance
facilitator_config = FacilitatorConfig()
