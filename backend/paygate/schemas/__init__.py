"""Pydantic schemas package."""

from paygate.schemas.payment import (
    FundRequest,
    PayObligationRequest,
    InitiationResponse,
    TransactionStatusResponse,
    ManualConfirmRequest,
    ManualConfirmResponse,
    RealtimeTokenResponse,
    WebhookAck,
)
from paygate.schemas.wallet import (
    WalletResponse,
    LedgerEntryResponse,
    HistoryResponse,
)

__all__ = [
    "FundRequest",
    "PayObligationRequest",
    "InitiationResponse",
    "TransactionStatusResponse",
    "ManualConfirmRequest",
    "ManualConfirmResponse",
    "RealtimeTokenResponse",
    "WebhookAck",
    "WalletResponse",
    "LedgerEntryResponse",
    "HistoryResponse",
]
