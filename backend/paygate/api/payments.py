"""Payments API router: initiation, status and wallet views."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from paygate.api.deps import get_commands, get_current_user, get_engine
from paygate.core.errors import PaymentError
from paygate.models.user import User
from paygate.schemas.payment import (
    FundRequest,
    InitiationResponse,
    ManualConfirmRequest,
    ManualConfirmResponse,
    PayObligationRequest,
    TransactionStatusResponse,
)
from paygate.schemas.wallet import HistoryResponse, WalletResponse
from paygate.services.commands import (
    FUND,
    HISTORY,
    PAY_OBLIGATION,
    TRANSACTION_STATUS,
    WALLET,
    CommandContext,
    PaymentCommands,
    Transport,
)
from paygate.services.settlement_service import SettlementEngine

logger = logging.getLogger(__name__)
router = APIRouter()


async def _dispatch(
    commands: PaymentCommands,
    command: str,
    payload: Dict[str, Any],
    user: User
) -> Dict[str, Any]:
    try:
        return await commands.handle(command, payload, CommandContext(uid=user.id, transport=Transport.HTTP))
    except PaymentError as e:
        logger.info(f"{command} rejected for user {user.id}: {e.code} {e.message}")
        raise e.to_http()
    except Exception as e:
        logger.error(f"Unexpected error in {command} for user {user.id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
        )


@router.post("/fund", response_model=InitiationResponse)
async def fund_wallet(
    body: FundRequest,
    current_user: User = Depends(get_current_user),
    commands: PaymentCommands = Depends(get_commands)
):
    """
    Start a balance funding transaction.

    The balance is only credited when the provider confirms the charge.
    Returns the transaction id and the handle the client needs to complete
    the payment with the provider.
    """
    return await _dispatch(commands, FUND, body.model_dump(by_alias=True), current_user)


@router.post("/pay-obligation", response_model=InitiationResponse)
async def pay_obligation(
    body: PayObligationRequest,
    current_user: User = Depends(get_current_user),
    commands: PaymentCommands = Depends(get_commands)
):
    """
    Start a payment for a delivery owned by the caller.

    Raises:
        400: Bad amount or delivery already paid
        403: Delivery not owned or not payable
        404: Delivery not found
    """
    return await _dispatch(commands, PAY_OBLIGATION, body.model_dump(by_alias=True), current_user)


@router.get("/transaction/{transaction_id}/status", response_model=TransactionStatusResponse)
async def get_transaction_status(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    commands: PaymentCommands = Depends(get_commands)
):
    """Status of an unsettled transaction; 404 once it has been settled or discarded."""
    return await _dispatch(commands, TRANSACTION_STATUS, {"transactionId": transaction_id}, current_user)


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(
    current_user: User = Depends(get_current_user),
    commands: PaymentCommands = Depends(get_commands)
):
    return await _dispatch(commands, WALLET, {}, current_user)


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    commands: PaymentCommands = Depends(get_commands)
):
    """Ledger entries for the caller, newest first."""
    return await _dispatch(commands, HISTORY, {"limit": limit, "offset": offset}, current_user)


@router.post("/manual-confirm", response_model=ManualConfirmResponse)
async def manual_confirm(
    body: ManualConfirmRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """
    Settle one of the caller's pending transactions without a provider event.

    Only available outside production when ENABLE_MANUAL_CONFIRM is set.
    """
    if not request.app.state.settings.manual_confirm_allowed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Manual confirmation is disabled"}
        )

    try:
        result = await engine.confirm_manually(current_user.id, body.transaction_id)
    except PaymentError as e:
        raise e.to_http()
    except Exception as e:
        logger.error(f"Unexpected error confirming {body.transaction_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
        )

    return ManualConfirmResponse(
        transaction_id=body.transaction_id,
        outcome=result.outcome.value,
        new_balance=result.mutation.new_balance if result.mutation else None,
        reason=result.reason
    )
