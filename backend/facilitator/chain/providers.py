"""
RPC provider pool with failover for the facilitator's chain access.

One ProviderManager per network is shared by every request. The Web3 instance
it hands out wraps a single pooled HTTP session, so connections are reused
across verify and settle calls instead of being held by one caller.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

import requests
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

logger = logging.getLogger(__name__)

# Default timeout for RPC calls
DEFAULT_RPC_TIMEOUT = 10  # seconds

# Health check timeout (shorter for quick failover)
HEALTH_CHECK_TIMEOUT = 3  # seconds


class RPCProviderError(Exception):
    """Base exception for RPC provider errors."""

    pass


class ProviderManager:
    """
    Manages a pool of RPC endpoints for one chain with automatic failover.

    Features:
    - Health checks against the expected chain id
    - Failover on errors or timeouts
    - Thread-safe access to a shared Web3 instance
    """

    def __init__(
        self,
        rpc_urls: List[str],
        chain_id: int,
        timeout: int = DEFAULT_RPC_TIMEOUT,
        health_check_interval: int = 60,
    ) -> None:
        """
        Initialize the provider manager.

        Args:
            rpc_urls: List of RPC URLs to use, in order of preference
            chain_id: Chain id every endpoint must report
            timeout: Request timeout in seconds
            health_check_interval: How often to re-check failed endpoints (seconds)
        """
        self.rpc_urls = list(rpc_urls or [])
        if not self.rpc_urls:
            raise RPCProviderError("No RPC URLs provided to ProviderManager.")

        self.chain_id = chain_id
        self.timeout = timeout
        self.health_check_interval = health_check_interval

        self._endpoint_status: Dict[str, dict] = {
            url: {"healthy": True, "last_check": 0.0, "failure_count": 0, "last_error": None}
            for url in self.rpc_urls
        }
        self._current_index = 0
        self._web3_instance: Optional[Web3] = None
        self._lock = threading.RLock()

    def _record_failure(self, url: str, error: str) -> None:
        status = self._endpoint_status[url]
        status["healthy"] = False
        status["last_check"] = time.time()
        status["failure_count"] += 1
        status["last_error"] = error

    def _is_endpoint_healthy(self, url: str) -> bool:
        """Check if an endpoint should be considered healthy."""
        status = self._endpoint_status[url]
        if not status["healthy"]:
            if time.time() - status["last_check"] >= self.health_check_interval:
                return self._check_endpoint_health(url)
        return status["healthy"]

    def _check_endpoint_health(self, url: str) -> bool:
        """
        Perform a quick eth_chainId health check on an RPC endpoint.

        Returns:
            True if endpoint answers with the expected chain id
        """
        try:
            payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []}
            response = requests.post(url, json=payload, timeout=HEALTH_CHECK_TIMEOUT)
        except requests.exceptions.Timeout:
            self._record_failure(url, "Timeout")
            logger.warning(f"RPC {url} health check timed out")
            return False
        except requests.exceptions.RequestException as e:
            self._record_failure(url, str(e))
            logger.warning(f"RPC {url} health check failed: {e}")
            return False

        if response.status_code != 200:
            self._record_failure(url, f"HTTP {response.status_code}")
            return False

        try:
            chain_id_hex = response.json().get("result")
        except ValueError:
            chain_id_hex = None
        try:
            reported_chain_id = int(chain_id_hex, 16)
        except (TypeError, ValueError):
            self._record_failure(url, "Invalid JSON-RPC response")
            return False

        if reported_chain_id != self.chain_id:
            self._record_failure(url, f"Wrong chain id {chain_id_hex}")
            logger.warning(f"RPC {url} returned wrong chain_id: {chain_id_hex} (expected {hex(self.chain_id)})")
            return False

        status = self._endpoint_status[url]
        status.update(healthy=True, last_check=time.time(), failure_count=0, last_error=None)
        return True

    def get_web3(self, force_refresh: bool = False) -> Web3:
        """
        Get a Web3 instance connected to a healthy RPC endpoint.

        Args:
            force_refresh: If True, create a new Web3 instance even if one exists

        Returns:
            Web3 instance connected to a healthy endpoint

        Raises:
            RPCProviderError: If no healthy endpoints are available
        """
        with self._lock:
            if self._web3_instance is not None and not force_refresh:
                if self._is_endpoint_healthy(self.rpc_urls[self._current_index]):
                    return self._web3_instance

            healthy_url = self._find_healthy_endpoint()
            if not healthy_url:
                raise RPCProviderError(
                    f"No healthy RPC endpoints available. Last errors: "
                    f"{[(url, self._endpoint_status[url]['last_error']) for url in self.rpc_urls]}"
                )

            web3 = Web3(Web3.HTTPProvider(healthy_url, request_kwargs={"timeout": self.timeout}))
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._web3_instance = web3
            logger.info(f"Connected to RPC: {healthy_url} (chain_id={self.chain_id})")
            return web3

    def _find_healthy_endpoint(self) -> Optional[str]:
        """
        Find the first healthy endpoint, starting from the current one.

        Returns:
            URL of a healthy endpoint, or None if none are available
        """
        for i in range(len(self.rpc_urls)):
            idx = (self._current_index + i) % len(self.rpc_urls)
            url = self.rpc_urls[idx]
            if self._is_endpoint_healthy(url):
                self._current_index = idx
                return url

        logger.warning("No endpoints marked healthy, attempting to re-check all...")
        for idx, url in enumerate(self.rpc_urls):
            if self._check_endpoint_health(url):
                self._current_index = idx
                return url

        return None

    def mark_endpoint_unhealthy(self, url: Optional[str] = None, error: Optional[str] = None) -> None:
        """
        Mark an endpoint as unhealthy after a failed call.

        Args:
            url: RPC URL to mark (defaults to the current endpoint)
            error: Optional error message
        """
        with self._lock:
            url = url or self.rpc_urls[self._current_index]
            if url not in self._endpoint_status:
                return
            self._record_failure(url, error or "Manually marked unhealthy")
            logger.warning(f"Marked RPC {url} as unhealthy: {error}")

            if self.rpc_urls[self._current_index] == url:
                self._web3_instance = None

    def get_status(self) -> dict:
        """
        Get status of all endpoints.

        Returns:
            Dictionary mapping URLs to their health status
        """
        return {
            url: {
                "healthy": status["healthy"],
                "failure_count": status["failure_count"],
                "last_error": status["last_error"],
            }
            for url, status in self._endpoint_status.items()
        }
