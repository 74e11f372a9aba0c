"""Business logic services package."""

from paygate.services.ledger_service import apply_settlement, get_wallet, get_history, LedgerMutation
from paygate.services.settlement_service import (
    SettlementEngine,
    SettlementOutcome,
    SettlementResult,
    InitiationResult,
)
from paygate.services.commands import PaymentCommands, CommandContext, Transport

__all__ = [
    "apply_settlement",
    "get_wallet",
    "get_history",
    "LedgerMutation",
    "SettlementEngine",
    "SettlementOutcome",
    "SettlementResult",
    "InitiationResult",
    "PaymentCommands",
    "CommandContext",
    "Transport",
]
