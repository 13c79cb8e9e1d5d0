"""
Durable record of reserved and consumed payment authorizations.

A (payer, nonce) row exists only while the pair is taken. Reservation is a
plain INSERT under the composite primary key, so the database's uniqueness
check is the single point of mutual exclusion for settlement, across threads,
processes and facilitator instances.

States:
    free      no row
    reserved  a settle call owns the pair and has not broadcast yet
    pending   a transfer was broadcast but its outcome is unknown
    consumed  the transfer is final; permanent until purged after the deadline
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, String, create_engine, delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./facilitator_nonces.db"


class NonceState(str, Enum):
    FREE = "free"
    RESERVED = "reserved"
    PENDING = "pending"
    CONSUMED = "consumed"


class NonceLedgerError(Exception):
    """The nonce store could not be read or written."""

    pass


class Base(DeclarativeBase):
    pass


class NonceEntry(Base):
    """Row indicating that a payer's nonce is taken."""

    __tablename__ = "payment_nonces"

    payer: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Decimal form of a uint256 (at most 78 digits).
    nonce: Mapped[str] = mapped_column(String(80), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    settlement_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


@dataclass(frozen=True)
class NonceRecord:
    payer: str
    nonce: int
    state: NonceState
    settlement_reference: Optional[str] = None
    expires_at: int = 0


class NonceLedger(ABC):
    """Atomic nonce state for at-most-once settlement."""

    @abstractmethod
    def reserve(self, payer: str, nonce: int, expires_at: int = 0) -> bool:
        """Move (payer, nonce) from free to reserved. False if already taken."""

    @abstractmethod
    def is_consumed(self, payer: str, nonce: int) -> bool:
        """Read-only check used by verification."""

    @abstractmethod
    def release(self, payer: str, nonce: int) -> bool:
        """Return a reserved or pending pair to free."""

    @abstractmethod
    def commit(self, payer: str, nonce: int, settlement_reference: str) -> bool:
        """Mark a reserved or pending pair consumed."""

    @abstractmethod
    def mark_pending(self, payer: str, nonce: int, settlement_reference: Optional[str]) -> bool:
        """Record that a reserved pair was broadcast with unknown outcome."""

    @abstractmethod
    def get(self, payer: str, nonce: int) -> NonceRecord:
        """Current record; state is free when the pair was never taken."""

    @abstractmethod
    def purge_expired(self, now: Optional[int] = None) -> int:
        """Drop reserved and consumed records whose authorization deadline has passed.

        Pending records are kept until reconciled.
        """


def create_nonce_engine(database_url: str = DEFAULT_DATABASE_URL) -> Engine:
    """Create an engine suitable for concurrent use from worker threads."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            raise ValueError("In-memory SQLite cannot serve as a shared nonce store; use a file or a server database")
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(database_url, pool_pre_ping=True)


class SqlNonceLedger(NonceLedger):
    """NonceLedger over any SQLAlchemy database."""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, engine: Optional[Engine] = None):
        self.engine = engine or create_nonce_engine(database_url)
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _key(payer: str, nonce: int):
        return (NonceEntry.payer == payer) & (NonceEntry.nonce == str(nonce))

    def _write(self, statement) -> int:
        try:
            with self.engine.begin() as conn:
                return conn.execute(statement).rowcount
        except SQLAlchemyError as e:
            raise NonceLedgerError(f"Nonce store write failed: {e}") from e

    def reserve(self, payer: str, nonce: int, expires_at: int = 0) -> bool:
        statement = insert(NonceEntry).values(
            payer=payer,
            nonce=str(nonce),
            state=NonceState.RESERVED.value,
            expires_at=expires_at,
            updated_at=int(time.time()),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(statement)
        except IntegrityError:
            logger.info(f"Nonce already taken: payer={payer} nonce={nonce}")
            return False
        except SQLAlchemyError as e:
            raise NonceLedgerError(f"Nonce reservation failed: {e}") from e

        logger.info(f"Nonce reserved: payer={payer} nonce={nonce}")
        return True

    def is_consumed(self, payer: str, nonce: int) -> bool:
        return self.get(payer, nonce).state is NonceState.CONSUMED

    def release(self, payer: str, nonce: int) -> bool:
        released = self._write(
            delete(NonceEntry).where(
                self._key(payer, nonce),
                NonceEntry.state.in_([NonceState.RESERVED.value, NonceState.PENDING.value]),
            )
        )
        if released:
            logger.info(f"Nonce released: payer={payer} nonce={nonce}")
        else:
            logger.warning(f"Nothing to release: payer={payer} nonce={nonce}")
        return bool(released)

    def commit(self, payer: str, nonce: int, settlement_reference: str) -> bool:
        committed = self._write(
            update(NonceEntry)
            .where(
                self._key(payer, nonce),
                NonceEntry.state.in_([NonceState.RESERVED.value, NonceState.PENDING.value]),
            )
            .values(
                state=NonceState.CONSUMED.value,
                settlement_reference=settlement_reference,
                updated_at=int(time.time()),
            )
        )
        if committed:
            logger.info(f"Nonce consumed: payer={payer} nonce={nonce} tx={settlement_reference}")
        else:
            logger.error(f"Commit found no reservation: payer={payer} nonce={nonce} tx={settlement_reference}")
        return bool(committed)

    def mark_pending(self, payer: str, nonce: int, settlement_reference: Optional[str]) -> bool:
        marked = self._write(
            update(NonceEntry)
            .where(self._key(payer, nonce), NonceEntry.state == NonceState.RESERVED.value)
            .values(
                state=NonceState.PENDING.value,
                settlement_reference=settlement_reference,
                updated_at=int(time.time()),
            )
        )
        if marked:
            logger.warning(f"Nonce pending: payer={payer} nonce={nonce} tx={settlement_reference}")
        return bool(marked)

    def get(self, payer: str, nonce: int) -> NonceRecord:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(NonceEntry.__table__).where(self._key(payer, nonce))).first()
        except SQLAlchemyError as e:
            raise NonceLedgerError(f"Nonce store read failed: {e}") from e

        if row is None:
            return NonceRecord(payer=payer, nonce=nonce, state=NonceState.FREE)
        return NonceRecord(
            payer=payer,
            nonce=nonce,
            state=NonceState(row.state),
            settlement_reference=row.settlement_reference,
            expires_at=row.expires_at,
        )

    def purge_expired(self, now: Optional[int] = None) -> int:
        now = int(time.time()) if now is None else now
        purged = self._write(
            delete(NonceEntry).where(
                NonceEntry.state.in_([NonceState.RESERVED.value, NonceState.CONSUMED.value]),
                NonceEntry.expires_at < now,
            )
        )
        if purged:
            logger.info(f"Purged {purged} expired nonce records")
        return purged
