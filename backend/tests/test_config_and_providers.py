import pytest
import requests
from web3 import Web3

import facilitator.chain.providers as providers_module
from facilitator.chain.evm import EvmChainAdapter
from facilitator.chain.providers import ProviderManager, RPCProviderError
from facilitator.config import FacilitatorConfig
from facilitator.payment.service import FacilitatorService

from conftest import FACILITATOR, FACILITATOR_KEY

PRIMARY = "https://rpc-a.example"
BACKUP = "https://rpc-b.example"


class FakeRPCResponse:
    def __init__(self, result, status_code=200):
        self.status_code = status_code
        self._result = result

    def json(self):
        return {"jsonrpc": "2.0", "id": 1, "result": self._result}


def test_config_validation(tmp_path):
    with pytest.raises(ValueError, match="PRIVATE_KEY"):
        FacilitatorConfig(private_key=None, _env_file=None).validate()

    with pytest.raises(ValueError, match="RPC"):
        FacilitatorConfig(
            private_key=FACILITATOR_KEY,
            rpc_urls={"cronos": []},
            networks={"cronos": 25},
            _env_file=None,
        ).validate()


def test_config_from_environment(monkeypatch):
    monkeypatch.setenv("FACILITATOR_FINALITY_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("FACILITATOR_NETWORKS", '{"cronos-testnet": 338}')

    config = FacilitatorConfig(_env_file=None)

    assert config.finality_timeout_seconds == 12.5
    assert config.networks == {"cronos-testnet": 338}


def test_service_from_config(tmp_path):
    config = FacilitatorConfig(
        private_key=FACILITATOR_KEY,
        database_url=f"sqlite:///{tmp_path / 'nonces.db'}",
        _env_file=None,
    )

    service = FacilitatorService.from_config(config)

    assert set(service.engines) == {"cronos", "cronos-testnet"}
    chain = service.engines["cronos"].verifier.chain
    assert isinstance(chain, EvmChainAdapter)
    assert chain.chain_id == 25
    assert chain.facilitator_address == FACILITATOR
    assert service.get_supported().networks == ["cronos", "cronos-testnet"]


def test_provider_failover(monkeypatch):
    manager = ProviderManager([PRIMARY, BACKUP], chain_id=338)
    monkeypatch.setattr(providers_module.requests, "post", lambda *a, **k: FakeRPCResponse("0x152"))

    assert isinstance(manager.get_web3(), Web3)
    assert manager._current_index == 0

    manager.mark_endpoint_unhealthy(error="read timeout")
    manager.get_web3()

    assert manager._current_index == 1
    status = manager.get_status()
    assert status[PRIMARY]["healthy"] is False
    assert status[PRIMARY]["last_error"] == "read timeout"
    assert status[BACKUP]["healthy"] is True


def test_wrong_chain_endpoints_are_unusable(monkeypatch):
    manager = ProviderManager([PRIMARY, BACKUP], chain_id=338)
    manager.mark_endpoint_unhealthy(PRIMARY)
    manager.mark_endpoint_unhealthy(BACKUP)
    monkeypatch.setattr(providers_module.requests, "post", lambda *a, **k: FakeRPCResponse("0x19"))

    with pytest.raises(RPCProviderError):
        manager.get_web3()


def test_unreachable_endpoint_health_check(monkeypatch):
    manager = ProviderManager([PRIMARY], chain_id=338)

    def refuse(*args, **kwargs):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(providers_module.requests, "post", refuse)

    assert manager._check_endpoint_health(PRIMARY) is False
    assert manager.get_status()[PRIMARY]["failure_count"] == 1


def test_provider_requires_urls():
    with pytest.raises(RPCProviderError):
        ProviderManager([], chain_id=25)
