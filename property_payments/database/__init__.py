"""Database package for the property payments engine."""
from .connection import close_db, create_engine_from_settings, create_session_factory, init_db
from .models import Base, PaymentTransaction, TransactionEvent
from .store import DuplicateReference, TransactionStore

__all__ = [
    "Base",
    "PaymentTransaction",
    "TransactionEvent",
    "TransactionStore",
    "DuplicateReference",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
    "close_db",
]
