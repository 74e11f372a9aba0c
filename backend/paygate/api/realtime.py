"""Realtime channel endpoints: token issue, WebSocket and SSE fallback."""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from sse_starlette.sse import EventSourceResponse
from starlette.websockets import WebSocketState

from paygate.api.deps import get_current_user
from paygate.core import realtime
from paygate.core.errors import ConfigurationError, PaymentError
from paygate.core.realtime import QueueChannel, WebSocketChannel, frame, timestamp_ms
from paygate.core.security import decode_realtime_token, issue_realtime_token
from paygate.models.user import User
from paygate.schemas.payment import RealtimeTokenResponse
from paygate.services.commands import TRANSACTION_STATUS, CommandContext, PaymentCommands, Transport

logger = logging.getLogger(__name__)
router = APIRouter()

POLICY_VIOLATION = 1008


def _token_secret(settings) -> str:
    if not settings.REALTIME_TOKEN_SECRET:
        raise ConfigurationError("REALTIME_TOKEN_SECRET is not configured")
    return settings.REALTIME_TOKEN_SECRET


@router.get("/realtime-token", response_model=RealtimeTokenResponse)
async def get_realtime_token(request: Request, current_user: User = Depends(get_current_user)):
    """Issue a short-lived token that scopes one realtime connection to the caller."""
    settings = request.app.state.settings
    ttl = settings.REALTIME_TOKEN_TTL_SECONDS
    token = issue_realtime_token(current_user.id, _token_secret(settings), ttl_seconds=ttl)
    return RealtimeTokenResponse(token=token, expires_in=ttl)


@router.websocket("/realtime")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Per-user push channel.

    Client messages are limited to ``ping``, ``ready_for_payment`` and the
    read-only ``transaction_status`` query; anything else is ignored.
    """
    settings = websocket.app.state.settings
    uid = decode_realtime_token(token or "", _token_secret(settings))
    if not uid:
        logger.warning("Rejected realtime connection with invalid token")
        await websocket.close(code=POLICY_VIOLATION, reason="Invalid or expired token")
        return

    await websocket.accept()
    channel = WebSocketChannel(websocket)
    registry = websocket.app.state.registry
    await registry.register(uid, channel)
    logger.info(f"Realtime WebSocket connected for user {uid} ({len(registry)} open)")

    try:
        await channel.send(frame(realtime.CONNECTED, {"uid": uid, "timestamp": timestamp_ms()}))
        while websocket.application_state == WebSocketState.CONNECTED:
            text = await websocket.receive_text()
            reply = await handle_client_message(text, uid, websocket.app.state.commands)
            if reply:
                await channel.send(reply)
    except WebSocketDisconnect:
        logger.info(f"Realtime WebSocket closed for user {uid}")
    finally:
        registry.unregister(uid, channel)


async def handle_client_message(text: str, uid: str, commands: PaymentCommands) -> Optional[Dict[str, Any]]:
    """Answer one client message, or return None to ignore it."""
    try:
        message = json.loads(text)
    except ValueError:
        return None
    if not isinstance(message, dict):
        return None

    kind = message.get("type")
    if kind == "ping":
        return frame(realtime.PONG, {"timestamp": timestamp_ms()})
    if kind == "ready_for_payment":
        return frame(realtime.PAYMENT_READY, {"timestamp": timestamp_ms()})
    if kind == "transaction_status":
        context = CommandContext(uid=uid, transport=Transport.REALTIME)
        try:
            data = await commands.handle(TRANSACTION_STATUS, message, context)
        except PaymentError as e:
            data = {"transactionId": message.get("transactionId"), "error": e.code}
        return frame(realtime.TRANSACTION_STATUS, data)
    return None


@router.get("/realtime/stream")
async def realtime_stream(request: Request, token: Optional[str] = Query(None)):
    """Server-Sent Events fallback carrying the same frames as the WebSocket."""
    uid = decode_realtime_token(token or "", _token_secret(request.app.state.settings))
    if not uid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_TOKEN", "message": "Invalid or expired token"}
        )

    channel = QueueChannel()
    registry = request.app.state.registry
    await registry.register(uid, channel)
    logger.info(f"Realtime stream connected for user {uid}")

    async def generate():
        try:
            yield {
                "event": realtime.CONNECTED,
                "data": json.dumps({"uid": uid, "timestamp": timestamp_ms()})
            }
            async for message in channel.messages():
                if await request.is_disconnected():
                    break
                yield {
                    "event": message["event"],
                    "data": json.dumps(message["data"])
                }
        finally:
            registry.unregister(uid, channel)
            logger.info(f"Realtime stream closed for user {uid}")

    return EventSourceResponse(generate())
