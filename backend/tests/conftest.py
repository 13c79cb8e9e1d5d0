import base64
import json
import threading

import pytest
from eth_account import Account
from web3 import Web3

from facilitator.chain.adapter import ChainAdapter, FinalityStatus
from facilitator.chain.evm import recover_signer
from facilitator.nonces.ledger import SqlNonceLedger
from facilitator.payment.signing import build_payment_payload
from facilitator.payment.types import PaymentRequirements

PAYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "33" * 32
FACILITATOR_KEY = "0x" + "22" * 32

PAYER = Account.from_key(PAYER_KEY).address
FACILITATOR = Account.from_key(FACILITATOR_KEY).address
PAY_TO = Web3.to_checksum_address("0x" + "ab" * 20)
TOKEN = Web3.to_checksum_address("0x" + "cd" * 20)

TESTNET_CHAIN_ID = 338
NOW = 1_700_000_000
PRICE = 10_000_000_000_000_000  # 0.01 token with 18 decimals


class FakeChain(ChainAdapter):
    """In-memory ledger. Signatures are checked for real."""

    def __init__(
        self,
        chain_id=TESTNET_CHAIN_ID,
        balance=10**20,
        allowance=10**20,
        finality=FinalityStatus.CONFIRMED,
    ):
        self._chain_id = chain_id
        self.balance = balance
        self.allowance = allowance
        self.finality = finality
        self.submit_error = None
        self.read_error = None
        self.transfers = []
        self.finality_calls = []
        self._lock = threading.Lock()

    @property
    def chain_id(self):
        return self._chain_id

    @property
    def facilitator_address(self):
        return FACILITATOR

    def verify_signature(self, identity, message_hash, signature):
        try:
            return recover_signer(message_hash, signature) == identity
        except ValueError:
            return False

    def query_balance(self, token, account):
        if self.read_error:
            raise self.read_error
        return self.balance

    def query_allowance(self, token, owner, spender):
        if self.read_error:
            raise self.read_error
        assert spender == FACILITATOR
        return self.allowance

    def submit_transfer(self, token, from_address, to_address, amount):
        if self.submit_error:
            raise self.submit_error
        with self._lock:
            self.transfers.append((token, from_address, to_address, amount))
            return "0x" + f"{len(self.transfers):064x}"

    def await_finality(self, tx_reference, timeout):
        self.finality_calls.append((tx_reference, timeout))
        return self.finality


def encode_json_header(data) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def ledger(tmp_path):
    return SqlNonceLedger(f"sqlite:///{tmp_path / 'nonces.db'}")


@pytest.fixture
def requirements():
    return PaymentRequirements(
        scheme="exact",
        network="cronos-testnet",
        max_amount_required=PRICE,
        resource="https://api.example.com/premium",
        description="Premium data",
        pay_to=PAY_TO,
        asset=TOKEN,
        max_timeout_seconds=300,
    )


@pytest.fixture
def make_payload(requirements):
    def _make(key=PAYER_KEY, chain_id=TESTNET_CHAIN_ID, reqs=None, **kwargs):
        kwargs.setdefault("now", NOW)
        kwargs.setdefault("nonce", 42)
        return build_payment_payload(reqs or requirements, key, chain_id, **kwargs)

    return _make
