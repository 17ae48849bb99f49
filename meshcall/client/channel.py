import asyncio
import inspect
import json
import logging
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from meshcall.config import settings
from meshcall.errors import ChannelClosedError
from meshcall.models import Connected, WireModel, parse_server_event

logger = logging.getLogger(__name__)


class SessionChannel:
    """The client's single websocket to the signaling relay.

    Room id and display name travel in the URL when the channel opens and
    cannot change afterwards; switching rooms means opening another channel.
    If the socket drops unexpectedly the channel reconnects, which the relay
    treats as a brand new participant with a new connection id (announced
    to listeners through the ``connected`` event).
    """

    def __init__(
        self,
        room_id: str,
        display_name: Optional[str] = None,
        url: Optional[str] = None,
        reconnect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        connect=websockets.connect,
    ):
        self.room_id = room_id
        self.display_name = display_name or settings.DEFAULT_DISPLAY_NAME
        base = (url or settings.SIGNALING_URL).rstrip("/")
        self.uri = f"{base}/{quote(room_id, safe='')}?{urlencode({'displayName': self.display_name})}"
        self.reconnect_attempts = settings.RECONNECT_ATTEMPTS if reconnect_attempts is None else reconnect_attempts
        self.reconnect_delay = settings.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.connection_id: Optional[str] = None

        self._connect = connect
        self._listeners: List[Callable] = []
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self.connection_id is not None and not self._closing

    def subscribe(self, listener: Callable) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def open(self, timeout: float = 10.0):
        """Connect and wait until the relay has assigned our connection id."""
        self._closing = False
        self._ready = asyncio.Event()
        self._ws = await self._connect(self.uri)
        self._reader = asyncio.create_task(self._run())
        await asyncio.wait_for(self._ready.wait(), timeout)
        logger.info(f"Joined room {self.room_id} as {self.connection_id}")

    async def send(self, message: WireModel):
        if not self.is_open:
            raise ChannelClosedError(f"cannot send {message.type}: channel is not open")
        try:
            await self._ws.send(json.dumps(message.to_wire()))
        except ConnectionClosed as e:
            raise ChannelClosedError(f"cannot send {message.type}: {e}") from e

    async def close(self):
        self._closing = True
        self.connection_id = None
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._reader = None

    async def _run(self):
        attempts = 0
        while True:
            try:
                async for raw in self._ws:
                    attempts = 0
                    await self._deliver(raw)
            except ConnectionClosed as e:
                logger.warning(f"Signaling connection closed: {e}")

            self.connection_id = None
            self._ready.clear()
            if self._closing:
                return

            reconnected = False
            while not reconnected and attempts < self.reconnect_attempts and not self._closing:
                attempts += 1
                await asyncio.sleep(self.reconnect_delay)
                try:
                    self._ws = await self._connect(self.uri)
                    reconnected = True
                    logger.info(f"Reconnected to signaling relay (attempt {attempts})")
                except (OSError, WebSocketException) as e:
                    logger.warning(f"Reconnect attempt {attempts} failed: {e}")

            if not reconnected:
                if not self._closing:
                    logger.error(f"Giving up on signaling relay after {attempts} attempt(s)")
                return

    async def _deliver(self, raw):
        try:
            event = parse_server_event(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed event from relay: {e.error_count()} error(s)")
            return

        if isinstance(event, Connected):
            self.connection_id = event.connection_id
            self._ready.set()

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener failed on {event.type}")
