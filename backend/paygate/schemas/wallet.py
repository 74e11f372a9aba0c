"""Wallet read-view schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List

from paygate.schemas.payment import CamelModel


class WalletResponse(CamelModel):
    balance: Decimal
    account_level: str
    last_updated: datetime | None


class LedgerEntryResponse(CamelModel):
    transaction_id: str
    direction: str  # credit|debit
    amount: Decimal
    description: str
    timestamp: datetime


class HistoryResponse(CamelModel):
    entries: List[LedgerEntryResponse]
    limit: int
    offset: int
