import pytest
from sqlalchemy.exc import OperationalError

from facilitator.nonces.ledger import (
    NonceLedgerError,
    NonceState,
    SqlNonceLedger,
    create_nonce_engine,
)
from facilitator.payment.types import UINT256_MAX

from conftest import PAYER

OTHER_PAYER = "0x" + "EE" * 20


def test_reserve_is_exclusive(ledger):
    assert ledger.reserve(PAYER, 1, expires_at=100) is True
    assert ledger.reserve(PAYER, 1, expires_at=100) is False

    record = ledger.get(PAYER, 1)
    assert record.state is NonceState.RESERVED
    assert record.expires_at == 100


def test_pairs_are_independent(ledger):
    assert ledger.reserve(PAYER, 1)
    assert ledger.reserve(PAYER, 2)
    assert ledger.reserve(OTHER_PAYER, 1)


def test_unknown_pair_is_free(ledger):
    record = ledger.get(PAYER, 7)
    assert record.state is NonceState.FREE
    assert ledger.is_consumed(PAYER, 7) is False


def test_commit_is_permanent(ledger):
    ledger.reserve(PAYER, 1)
    assert ledger.commit(PAYER, 1, "0xabc") is True

    assert ledger.is_consumed(PAYER, 1)
    assert ledger.get(PAYER, 1).settlement_reference == "0xabc"
    assert ledger.reserve(PAYER, 1) is False
    assert ledger.release(PAYER, 1) is False
    assert ledger.is_consumed(PAYER, 1)


def test_commit_requires_reservation(ledger):
    assert ledger.commit(PAYER, 1, "0xabc") is False
    assert ledger.get(PAYER, 1).state is NonceState.FREE


def test_release_returns_pair_to_free(ledger):
    ledger.reserve(PAYER, 1)
    assert ledger.release(PAYER, 1) is True

    assert ledger.get(PAYER, 1).state is NonceState.FREE
    assert ledger.reserve(PAYER, 1) is True


def test_pending_then_commit(ledger):
    ledger.reserve(PAYER, 1)
    assert ledger.mark_pending(PAYER, 1, "0xdef") is True

    record = ledger.get(PAYER, 1)
    assert record.state is NonceState.PENDING
    assert record.settlement_reference == "0xdef"
    assert ledger.reserve(PAYER, 1) is False
    assert ledger.is_consumed(PAYER, 1) is False

    assert ledger.commit(PAYER, 1, "0xdef") is True
    assert ledger.is_consumed(PAYER, 1)


def test_pending_then_release(ledger):
    ledger.reserve(PAYER, 1)
    ledger.mark_pending(PAYER, 1, "0xdef")

    assert ledger.release(PAYER, 1) is True
    assert ledger.get(PAYER, 1).state is NonceState.FREE


def test_mark_pending_requires_reservation(ledger):
    assert ledger.mark_pending(PAYER, 1, "0xdef") is False


def test_full_width_nonce(ledger):
    assert ledger.reserve(PAYER, UINT256_MAX)
    assert ledger.commit(PAYER, UINT256_MAX, "0x1")
    assert ledger.is_consumed(PAYER, UINT256_MAX)
    assert not ledger.is_consumed(PAYER, UINT256_MAX - 1)


def test_purge_keeps_pending_and_unexpired(ledger):
    ledger.reserve(PAYER, 1, expires_at=100)
    ledger.commit(PAYER, 1, "0x1")
    ledger.reserve(PAYER, 2, expires_at=100)
    ledger.reserve(PAYER, 3, expires_at=500)
    ledger.commit(PAYER, 3, "0x3")
    ledger.reserve(PAYER, 4, expires_at=100)
    ledger.mark_pending(PAYER, 4, "0x4")

    assert ledger.purge_expired(now=200) == 2

    assert ledger.get(PAYER, 1).state is NonceState.FREE
    assert ledger.get(PAYER, 2).state is NonceState.FREE
    assert ledger.get(PAYER, 4).state is NonceState.PENDING
    assert ledger.get(PAYER, 3).state is NonceState.CONSUMED


def test_state_survives_restart(tmp_path):
    url = f"sqlite:///{tmp_path / 'nonces.db'}"
    first = SqlNonceLedger(url)
    first.reserve(PAYER, 1)
    first.commit(PAYER, 1, "0x1")

    second = SqlNonceLedger(url)
    assert second.is_consumed(PAYER, 1)
    assert second.reserve(PAYER, 1) is False


@pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
def test_in_memory_store_rejected(url):
    with pytest.raises(ValueError):
        create_nonce_engine(url)


class BrokenEngine:
    def _fail(self, *args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    begin = _fail
    connect = _fail


def test_store_failures_raise(ledger, monkeypatch):
    monkeypatch.setattr(ledger, "engine", BrokenEngine())

    with pytest.raises(NonceLedgerError):
        ledger.reserve(PAYER, 1)
    with pytest.raises(NonceLedgerError):
        ledger.get(PAYER, 1)
    with pytest.raises(NonceLedgerError):
        ledger.commit(PAYER, 1, "0x1")
