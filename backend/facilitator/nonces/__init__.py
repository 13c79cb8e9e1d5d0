from facilitator.nonces.ledger import NonceLedger, NonceLedgerError, NonceRecord, NonceState, SqlNonceLedger

__all__ = ["NonceLedger", "NonceLedgerError", "NonceRecord", "NonceState", "SqlNonceLedger"]
