"""Database models package."""

from paygate.models.user import User, AccountLevel
from paygate.models.delivery import Delivery, DeliveryStatus
from paygate.models.pending_transaction import PendingTransaction
from paygate.models.processing_lock import ProcessingLock
from paygate.models.ledger_entry import LedgerEntry, LedgerDirection

__all__ = [
    "User",
    "AccountLevel",
    "Delivery",
    "DeliveryStatus",
    "PendingTransaction",
    "ProcessingLock",
    "LedgerEntry",
    "LedgerDirection",
]
