import logging
import time

import pytest
from fastapi.testclient import TestClient

from facilitator.chain.adapter import ChainUnavailableError, FinalityStatus
from facilitator.config import FacilitatorConfig
from facilitator.main import create_app
from facilitator.nonces.ledger import NonceState
from facilitator.payment.errors import InternalError
from facilitator.payment.encoding import encode_payment_header
from facilitator.payment.service import FacilitatorService, NetworkEngine

from conftest import PAYER


@pytest.fixture
def service(chain, ledger):
    return FacilitatorService({"cronos-testnet": NetworkEngine.create("cronos-testnet", chain, ledger)})


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))


@pytest.fixture
def header(make_payload):
    return encode_payment_header(make_payload(now=int(time.time())))


def _body(header, requirements, **extra):
    body = {
        "x402Version": 1,
        "paymentHeader": header,
        "paymentRequirements": requirements.model_dump(mode="json", by_alias=True),
    }
    body.update(extra)
    return body


def test_verify(client, header, requirements):
    response = client.post("/verify", json=_body(header, requirements))

    assert response.status_code == 200
    assert response.json() == {"isValid": True, "invalidReason": None, "payer": PAYER}


def test_verify_accepts_version_alias(client, header, requirements):
    body = _body(header, requirements)
    body["version"] = body.pop("x402Version")

    response = client.post("/verify", json=body)

    assert response.json()["isValid"] is True


def test_verify_malformed_header(client, requirements):
    response = client.post("/verify", json=_body("bm90IGpzb24=", requirements))

    assert response.status_code == 200
    assert response.json() == {"isValid": False, "invalidReason": "malformed_payload", "payer": None}


def test_verify_bad_body(client, header):
    response = client.post("/verify", json={"x402Version": 1, "paymentHeader": header})
    assert response.status_code == 422


def test_verify_unconfigured_network(chain, ledger, make_payload, requirements):
    service = FacilitatorService({"cronos": NetworkEngine.create("cronos", chain, ledger)})
    client = TestClient(create_app(service=service))
    header = encode_payment_header(make_payload(now=int(time.time())))

    response = client.post("/verify", json=_body(header, requirements))

    assert response.json()["invalidReason"] == "network_mismatch"


def test_settle_and_replay(client, header, requirements, chain):
    first = client.post("/settle", json=_body(header, requirements))

    assert first.status_code == 200
    settled = first.json()
    assert settled["success"] is True
    assert settled["error"] is None
    assert settled["networkId"] == "cronos-testnet"
    assert settled["payer"] == PAYER
    assert settled["txReference"].startswith("0x")

    replay = client.post("/settle", json=_body(header, requirements)).json()
    assert replay["success"] is False
    assert replay["error"] == "nonce_reused"
    assert len(chain.transfers) == 1


def test_settle_version_mismatch(client, header, requirements):
    response = client.post("/settle", json=_body(header, requirements, x402Version=2))
    assert response.json()["error"] == "version_mismatch"


def test_settle_internal_error(client, header, requirements, chain):
    chain.submit_error = ChainUnavailableError("no healthy endpoints")

    response = client.post("/settle", json=_body(header, requirements))

    assert response.status_code == 500
    assert response.json() == {"error": "internal_error"}


def test_verify_internal_error(client, header, requirements, chain):
    chain.read_error = ChainUnavailableError("rpc down")

    response = client.post("/verify", json=_body(header, requirements))

    assert response.status_code == 500


def test_reconcile(client, header, requirements, chain):
    chain.finality = FinalityStatus.UNKNOWN
    pending = client.post("/settle", json=_body(header, requirements)).json()
    assert pending["error"] == "settlement_timeout"

    chain.finality = FinalityStatus.CONFIRMED
    response = client.post("/reconcile", json={"network": "cronos-testnet", "payer": PAYER, "nonce": "42"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["txReference"] == pending["txReference"]


def test_supported(client):
    response = client.get("/supported")

    assert response.status_code == 200
    assert response.json() == {
        "schemes": ["exact"],
        "networks": ["cronos-testnet"],
        "kinds": [{"x402Version": 1, "scheme": "exact", "network": "cronos-testnet"}],
    }


def test_health(client):
    response = client.get("/health")
    assert response.json()["status"] == "healthy"


def test_unconfigured_facilitator():
    config = FacilitatorConfig(private_key=None, _env_file=None)
    client = TestClient(create_app(config=config))

    assert client.get("/supported").status_code == 503
    assert client.get("/health").json()["status"] == "degraded"


def _expire(ledger, nonce, pending=False):
    ledger.reserve(PAYER, nonce, expires_at=100)
    if pending:
        ledger.mark_pending(PAYER, nonce, "0xpending")
    else:
        ledger.commit(PAYER, nonce, "0xdone")


def test_purge_covers_shared_ledger_once(chain, ledger):
    service = FacilitatorService(
        {
            "cronos": NetworkEngine.create("cronos", chain, ledger),
            "cronos-testnet": NetworkEngine.create("cronos-testnet", chain, ledger),
        }
    )
    _expire(ledger, 1)
    _expire(ledger, 2)

    assert service.purge_expired_nonces() == 2
    assert service.purge_expired_nonces() == 0


def test_startup_purges_expired_nonces(service, ledger):
    _expire(ledger, 1)
    _expire(ledger, 2, pending=True)
    config = FacilitatorConfig(_env_file=None)

    with TestClient(create_app(service=service, config=config)) as client:
        assert client.get("/health").status_code == 200
        assert ledger.get(PAYER, 1).state is NonceState.FREE

    assert ledger.get(PAYER, 2).state is NonceState.PENDING


def test_periodic_purge(service, ledger):
    config = FacilitatorConfig(nonce_purge_interval_seconds=0.05, _env_file=None)

    with TestClient(create_app(service=service, config=config)):
        _expire(ledger, 1)
        deadline = time.monotonic() + 5
        while ledger.get(PAYER, 1).state is not NonceState.FREE and time.monotonic() < deadline:
            time.sleep(0.02)

    assert ledger.get(PAYER, 1).state is NonceState.FREE


def test_purge_disabled(service, ledger):
    _expire(ledger, 1)
    config = FacilitatorConfig(nonce_purge_interval_seconds=0, _env_file=None)

    with TestClient(create_app(service=service, config=config)):
        pass

    assert ledger.get(PAYER, 1).state is NonceState.CONSUMED


def test_purge_failure_does_not_block_startup(service, monkeypatch, caplog):
    def fail(now=None):
        raise InternalError("nonce store offline")

    monkeypatch.setattr(service, "purge_expired_nonces", fail)
    config = FacilitatorConfig(_env_file=None)

    with caplog.at_level(logging.WARNING, logger="facilitator.main"):
        with TestClient(create_app(service=service, config=config)) as client:
            assert client.get("/health").json()["status"] == "healthy"

    assert "Nonce purge skipped" in caplog.text
