"""Provider webhook endpoints.

Authenticated by the provider's signature, not by user identity. Once an
event is verified it is always acknowledged with 200, whatever the business
outcome, so providers do not retry settled or rejected transactions.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from paygate.api.deps import get_engine
from paygate.core.errors import StoreUnavailableError, WebhookSignatureError
from paygate.schemas.payment import WebhookAck
from paygate.services.settlement_service import SettlementEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(request: Request, engine: SettlementEngine = Depends(get_engine)):
    """Webhook for the default provider."""
    return await _receive(request, engine, request.app.state.settings.DEFAULT_PAYMENT_PROVIDER)


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def receive_provider_webhook(
    provider: str,
    request: Request,
    engine: SettlementEngine = Depends(get_engine)
):
    return await _receive(request, engine, provider)


async def _receive(request: Request, engine: SettlementEngine, provider_name: str) -> WebhookAck:
    provider = engine.providers.get(provider_name)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "UNKNOWN_PROVIDER", "message": f"Unknown provider: {provider_name}"}
        )

    body = await request.body()
    try:
        event = provider.parse_webhook(body, request.headers)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected {provider_name} webhook: {e.message}")
        raise e.to_http()

    try:
        result = await engine.handle_event(event)
    except StoreUnavailableError as e:
        # Not acknowledged: the provider redelivers and settlement is retried
        logger.error(f"Deferring {provider_name} event {event.event_id}: {e.message}")
        raise e.to_http()
    except Exception as e:
        logger.error(f"Unexpected error handling {provider_name} event {event.event_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Webhook processing failed"}
        )

    logger.info(
        f"{provider_name} event {event.event_id} ({event.event_type}) for "
        f"{result.transaction_id}: {result.outcome.value}"
    )
    return WebhookAck(received=True)
