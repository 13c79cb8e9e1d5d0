import time

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from facilitator.chain.adapter import ChainUnavailableError, FinalityStatus, TransferRejectedError
from facilitator.main import create_app
from facilitator.payment.client import PaymentClient, RemoteFacilitatorClient
from facilitator.payment.encoding import decode_settlement_proof, encode_payment_header
from facilitator.payment.middleware import PaymentGatewayMiddleware
from facilitator.payment.routes_config import RouteConfig, RouteRegistry
from facilitator.payment.service import FacilitatorService, NetworkEngine
from facilitator.payment.types import X_PAYMENT_HEADER, X_PAYMENT_RESPONSE_HEADER

from conftest import PAY_TO, PAYER, PAYER_KEY, PRICE, TOKEN, encode_json_header

PREMIUM_ROUTE = RouteConfig(
    path="/premium",
    method="GET",
    network="cronos-testnet",
    asset=TOKEN,
    max_amount_required=PRICE,
    description="Premium data",
    max_timeout_seconds=300,
)


def build_resource_app(facilitator, served):
    app = FastAPI()
    app.add_middleware(
        PaymentGatewayMiddleware,
        facilitator=facilitator,
        routes=RouteRegistry([PREMIUM_ROUTE]),
        pay_to=PAY_TO,
        skip_paths=["/health"],
    )

    @app.get("/premium")
    async def premium(request: Request):
        served.append(request.state.payment.payer)
        return {"data": "premium"}

    @app.get("/free")
    async def free():
        return {"data": "free"}

    return app


@pytest.fixture
def served():
    return []


@pytest.fixture
def service(chain, ledger):
    return FacilitatorService({"cronos-testnet": NetworkEngine.create("cronos-testnet", chain, ledger)})


@pytest.fixture
def client(service, served):
    return TestClient(build_resource_app(service, served))


@pytest.fixture
def header(make_payload):
    return encode_payment_header(make_payload(now=int(time.time())))


def test_unprotected_route_passes_through(client, chain):
    response = client.get("/free")

    assert response.status_code == 200
    assert X_PAYMENT_RESPONSE_HEADER not in response.headers
    assert chain.transfers == []


def test_unprotected_method_passes_through(client):
    response = client.post("/premium")
    assert response.status_code == 405


def test_missing_payment_returns_requirements(client, served):
    response = client.get("/premium")

    assert response.status_code == 402
    body = response.json()
    assert body["x402Version"] == 1
    assert body["error"] == "X-PAYMENT header is required"
    [accepted] = body["accepts"]
    assert accepted["scheme"] == "exact"
    assert accepted["network"] == "cronos-testnet"
    assert accepted["payTo"] == PAY_TO
    assert accepted["asset"] == TOKEN
    assert accepted["maxAmountRequired"] == str(PRICE)
    assert accepted["maxTimeoutSeconds"] == 300
    assert accepted["resource"] == "http://testserver/premium"
    assert served == []


def test_malformed_payment(client, served):
    response = client.get("/premium", headers={X_PAYMENT_HEADER: "not-base64!"})

    assert response.status_code == 400
    assert response.json()["error"] == "malformed_payload"
    assert served == []


def test_schema_invalid_payment(client, make_payload):
    data = make_payload(now=int(time.time())).model_dump(mode="json", by_alias=True)
    data["payload"]["amount"] = 0.01

    response = client.get("/premium", headers={X_PAYMENT_HEADER: encode_json_header(data)})

    assert response.status_code == 400


def test_failed_verification(client, header, chain, served):
    chain.balance = 0

    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 403
    assert response.json() == {"error": "insufficient_balance"}
    assert served == []
    assert chain.transfers == []


def test_underpayment(client, make_payload, served):
    underpaid = encode_payment_header(make_payload(now=int(time.time()), amount=PRICE - 1))

    response = client.get("/premium", headers={X_PAYMENT_HEADER: underpaid})

    assert response.status_code == 403
    assert response.json() == {"error": "insufficient_amount"}


def test_failed_settlement(client, header, chain, served):
    chain.submit_error = TransferRejectedError("transferFrom would revert")

    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 402
    assert response.json()["error"] == "settlement_rejected"
    assert served == []


def test_pending_settlement(client, header, chain, served):
    chain.finality = FinalityStatus.UNKNOWN

    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 402
    assert response.json()["error"] == "settlement_timeout"
    assert served == []


def test_facilitator_internal_error(client, header, chain, served):
    chain.read_error = ChainUnavailableError("rpc down")

    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 500
    assert served == []


def test_paid_request(client, header, chain, served):
    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 200
    assert response.json() == {"data": "premium"}
    assert served == [PAYER]

    proof = decode_settlement_proof(response.headers[X_PAYMENT_RESPONSE_HEADER])
    assert proof.network_id == "cronos-testnet"
    assert proof.payer == PAYER
    assert proof.tx_reference == "0x" + f"{1:064x}"
    assert chain.transfers == [(TOKEN, PAYER, PAY_TO, PRICE)]


def test_replayed_payment(client, header, chain, served):
    assert client.get("/premium", headers={X_PAYMENT_HEADER: header}).status_code == 200

    replay = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert replay.status_code == 403
    assert replay.json() == {"error": "nonce_reused"}
    assert served == [PAYER]
    assert len(chain.transfers) == 1


def test_remote_facilitator(service, header, chain, served):
    facilitator_app = TestClient(create_app(service=service))
    remote = RemoteFacilitatorClient("http://testserver", session=facilitator_app)
    client = TestClient(build_resource_app(remote, served))

    response = client.get("/premium", headers={X_PAYMENT_HEADER: header})

    assert response.status_code == 200
    assert served == [PAYER]
    assert X_PAYMENT_RESPONSE_HEADER in response.headers


def test_route_matching():
    registry = RouteRegistry(
        [
            RouteConfig(path="/reports/*", network="cronos", asset=TOKEN, max_amount_required=1),
            RouteConfig(path="/reports/daily", network="cronos", asset=TOKEN, max_amount_required=2),
        ]
    )

    assert registry.match("/reports/daily", "GET").max_amount_required == 2
    assert registry.match("/reports/weekly", "POST").max_amount_required == 1
    assert registry.match("/other", "GET") is None


def test_negative_price_rejected():
    with pytest.raises(ValueError):
        RouteRegistry([RouteConfig(path="/x", network="cronos", asset=TOKEN, max_amount_required=-1)])


def test_payment_client_pays_for_resource(client, chain, served):
    payer = PaymentClient(PAYER_KEY, session=client)

    result = payer.pay("http://testserver/premium")

    assert result.success
    assert result.error is None
    assert result.response.json() == {"data": "premium"}
    assert result.proof.payer == PAYER
    assert result.proof.network_id == "cronos-testnet"
    assert result.proof.tx_reference == "0x" + f"{1:064x}"
    assert served == [PAYER]
    assert chain.transfers == [(TOKEN, PAYER, PAY_TO, PRICE)]


def test_payment_client_free_resource(client, chain):
    result = PaymentClient(PAYER_KEY, session=client).pay("http://testserver/free")

    assert result.success
    assert result.proof is None
    assert result.response.json() == {"data": "free"}
    assert chain.transfers == []


def test_payment_client_spending_limit(client, chain, served):
    payer = PaymentClient(PAYER_KEY, max_amount=PRICE - 1, session=client)

    result = payer.pay("http://testserver/premium")

    assert not result.success
    assert "exceeds limit" in result.error
    assert result.response.status_code == 402
    assert served == []
    assert chain.transfers == []


def test_payment_client_unsupported_network(client, chain):
    payer = PaymentClient(PAYER_KEY, networks={"cronos": 25}, session=client)

    result = payer.pay("http://testserver/premium")

    assert not result.success
    assert result.error == "Unsupported network: cronos-testnet"
    assert chain.transfers == []


def test_payment_client_settlement_failure(client, chain, served):
    chain.submit_error = TransferRejectedError("transferFrom would revert")

    result = PaymentClient(PAYER_KEY, session=client).pay("http://testserver/premium")

    assert not result.success
    assert result.error == "settlement_rejected"
    assert result.response.status_code == 402
    assert served == []
