"""Per-user realtime channels (WebSocket or SSE) and best-effort notification."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)

# Event names pushed to clients
CONNECTED = "connected"
TRANSACTION_INITIATED = "transaction_initiated"
FUNDING_SETTLED = "funding_settled"
OBLIGATION_SETTLED = "obligation_settled"
PAYMENT_FAILED = "payment_failed"
PONG = "pong"
PAYMENT_READY = "payment_ready"
TRANSACTION_STATUS = "transaction_status"

SUPERSEDED_CODE = 1000
SUPERSEDED_REASON = "New connection established"


def frame(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


class Channel(Protocol):
    """A live connection to one client."""

    async def send(self, message: Dict[str, Any]) -> None: ...

    async def close(self, code: int, reason: str) -> None: ...


class WebSocketChannel:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)

    async def close(self, code: int, reason: str) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close(code=code, reason=reason)


class QueueChannel:
    """
    Channel backed by an asyncio.Queue, drained by a Server-Sent Events stream.

    ``close`` enqueues ``None`` so the consuming generator stops.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("Channel closed")
        self.queue.put_nowait(message)

    async def close(self, code: int, reason: str) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def messages(self):
        while True:
            message = await self.queue.get()
            if message is None:
                break
            yield message


class ConnectionRegistry:
    """
    Map of uid to its single live channel.

    Owned by the application (``app.state.registry``); a newer connection for
    a uid closes and replaces the older one.
    """

    def __init__(self):
        self._channels: Dict[str, Channel] = {}

    async def register(self, uid: str, channel: Channel) -> None:
        prior = self._channels.get(uid)
        self._channels[uid] = channel
        if prior is not None and prior is not channel:
            logger.info(f"Superseding realtime channel for user {uid}")
            try:
                await prior.close(SUPERSEDED_CODE, SUPERSEDED_REASON)
            except Exception as e:
                logger.debug(f"Closing superseded channel for {uid} failed: {e}")

    def unregister(self, uid: str, channel: Channel) -> None:
        # A superseded channel must not evict its replacement
        if self._channels.get(uid) is channel:
            del self._channels[uid]

    def get(self, uid: str) -> Optional[Channel]:
        return self._channels.get(uid)

    def is_connected(self, uid: str) -> bool:
        return uid in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    async def notify(self, uid: str, event: str, data: Dict[str, Any]) -> bool:
        """
        Push an event to the user's channel, if any.

        Returns True when delivered. Never raises: a missing channel is a
        silent drop, a broken one is unregistered.
        """
        channel = self._channels.get(uid)
        if channel is None:
            logger.debug(f"No realtime channel for user {uid}; dropping {event}")
            return False

        try:
            await channel.send(frame(event, data))
        except Exception as e:
            logger.warning(f"Realtime delivery of {event} to {uid} failed: {e}")
            self.unregister(uid, channel)
            return False
        return True


def timestamp_ms() -> int:
    return int(datetime.utcnow().timestamp() * 1000)
