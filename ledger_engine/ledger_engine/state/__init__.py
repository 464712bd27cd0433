"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ledger_engine.state.database import get_engine, session_factory, transaction
from ledger_engine.state.repository import (
    CreditTransactionRepository,
    PaymentRepository,
    SubscriptionRepository,
    TaxCredentialRepository,
    UserRepository,
)
from ledger_engine.state.tables import Base

__all__ = [
    "Base",
    "CreditTransactionRepository",
    "PaymentRepository",
    "SubscriptionRepository",
    "TaxCredentialRepository",
    "UserRepository",
    "get_engine",
    "session_factory",
    "transaction",
]
