"""Transport-agnostic payment commands shared by the HTTP and realtime adapters."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.core.errors import ValidationError
from paygate.services import ledger_service
from paygate.services.settlement_service import InitiationResult, SettlementEngine

logger = logging.getLogger(__name__)


class Transport(str, Enum):
    HTTP = "http"
    REALTIME = "realtime"


FUND = "fund"
PAY_OBLIGATION = "pay_obligation"
TRANSACTION_STATUS = "transaction_status"
WALLET = "wallet"
HISTORY = "history"

# The realtime channel is receive-mostly: it may only read state
ALLOWED_COMMANDS = {
    Transport.HTTP: frozenset({FUND, PAY_OBLIGATION, TRANSACTION_STATUS, WALLET, HISTORY}),
    Transport.REALTIME: frozenset({TRANSACTION_STATUS, WALLET, HISTORY}),
}

MAX_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class CommandContext:
    uid: str
    transport: Transport


class PaymentCommands:
    """
    Single entry point for payment operations.

    Adapters call ``handle(command, payload, context)`` and receive a plain
    dict; errors are raised as PaymentError subclasses for the adapter to
    translate.
    """

    def __init__(self, engine: SettlementEngine, session_factory: async_sessionmaker[AsyncSession]):
        self.engine = engine
        self.session_factory = session_factory
        self._handlers: Dict[str, Callable[[Dict[str, Any], CommandContext], Awaitable[Dict[str, Any]]]] = {
            FUND: self._fund,
            PAY_OBLIGATION: self._pay_obligation,
            TRANSACTION_STATUS: self._transaction_status,
            WALLET: self._wallet,
            HISTORY: self._history,
        }

    async def handle(self, command: str, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        handler = self._handlers.get(command)
        if handler is None:
            raise ValidationError(f"Unknown command: {command}", code="UNKNOWN_COMMAND")
        if command not in ALLOWED_COMMANDS[context.transport]:
            logger.warning(f"Command {command} refused over {context.transport.value} for user {context.uid}")
            raise ValidationError(
                f"Command {command} is not available over {context.transport.value}",
                code="COMMAND_NOT_ALLOWED"
            )
        return await handler(payload, context)

    async def _fund(self, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        result = await self.engine.initiate_funding(
            context.uid,
            payload.get("amount"),
            provider_name=payload.get("provider")
        )
        return _initiation(result)

    async def _pay_obligation(self, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        obligation_id = payload.get("obligationId")
        if not obligation_id:
            raise ValidationError("obligationId is required")
        result = await self.engine.initiate_obligation_payment(
            context.uid,
            obligation_id,
            payload.get("amount"),
            provider_name=payload.get("provider")
        )
        return _initiation(result)

    async def _transaction_status(self, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        transaction_id = payload.get("transactionId")
        if not transaction_id:
            raise ValidationError("transactionId is required")
        return await self.engine.transaction_status(context.uid, transaction_id)

    async def _wallet(self, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        async with self.session_factory() as session:
            user = await ledger_service.get_wallet(session, context.uid)
        if user is None:
            raise ValidationError("User not found", code="USER_NOT_FOUND")
        return {
            "balance": str(user.balance),
            "accountLevel": user.account_level,
            "lastUpdated": user.balance_updated_at.isoformat() if user.balance_updated_at else None,
        }

    async def _history(self, payload: Dict[str, Any], context: CommandContext) -> Dict[str, Any]:
        try:
            limit = int(payload.get("limit", 50))
            offset = int(payload.get("offset", 0))
        except (TypeError, ValueError):
            raise ValidationError("limit and offset must be integers")
        if limit < 1 or limit > MAX_HISTORY_LIMIT or offset < 0:
            raise ValidationError(f"limit must be 1-{MAX_HISTORY_LIMIT} and offset non-negative")

        async with self.session_factory() as session:
            entries = await ledger_service.get_history(session, context.uid, limit=limit, offset=offset)

        return {
            "entries": [
                {
                    "transactionId": entry.transaction_id,
                    "direction": entry.direction.value,
                    "amount": str(entry.amount),
                    "description": entry.description,
                    "timestamp": entry.timestamp.isoformat(),
                }
                for entry in entries
            ],
            "limit": limit,
            "offset": offset,
        }


def _initiation(result: InitiationResult) -> Dict[str, Any]:
    return {
        "transactionId": result.transaction_id,
        "kind": result.kind.value,
        "amount": str(result.amount),
        "provider": result.provider,
        "providerChargeHandle": result.provider_charge_handle,
    }
