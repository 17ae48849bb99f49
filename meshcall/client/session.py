import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from meshcall.client.channel import SessionChannel
from meshcall.client.media import LocalMedia, MediaStateSynchronizer
from meshcall.client.orchestrator import PeerOrchestrator
from meshcall.models import NewMessage, SendMessage

logger = logging.getLogger(__name__)


class MeetingSession:
    """One client's membership in one room: channel, orchestrator and media state together.

    Usage:
        session = MeetingSession("abc123", "Alice", media_factory=lambda: LocalMedia.from_player(...))
        await session.join()
        ...
        await session.leave()
    """

    def __init__(
        self,
        room_id: str,
        display_name: str,
        media_factory: Callable[[], LocalMedia],
        channel: Optional[SessionChannel] = None,
        transport_factory=None,
    ):
        self.room_id = room_id
        self.display_name = display_name
        self.media_factory = media_factory
        self.channel = channel or SessionChannel(room_id, display_name)
        self.transport_factory = transport_factory
        self.media: Optional[LocalMedia] = None
        self.orchestrator: Optional[PeerOrchestrator] = None
        self.synchronizer: Optional[MediaStateSynchronizer] = None
        self.messages: List[NewMessage] = []
        self._unsubscribe: List[Callable[[], None]] = []

    async def join(self):
        # Capture errors surface here, before any channel or link exists
        self.media = self.media_factory()
        try:
            await self.channel.open()

            self.orchestrator = PeerOrchestrator(
                self.channel, self.media, self.room_id, transport_factory=self.transport_factory
            )
            self.synchronizer = MediaStateSynchronizer(self.channel, self.orchestrator, self.media)
            self._unsubscribe = [
                self.channel.subscribe(self.synchronizer.handle_event),
                self.channel.subscribe(self._on_event),
            ]
            await self.orchestrator.start()
        except Exception as e:
            logger.error(f"Failed to join room {self.room_id}: {e}")
            await self.leave()
            raise

    async def leave(self):
        if self.orchestrator is not None:
            await self.orchestrator.close()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        await self.channel.close()
        if self.media is not None:
            self.media.stop()

    async def send_chat(self, text: str) -> SendMessage:
        message = SendMessage(
            sender=self.display_name,
            time=datetime.now(timezone.utc).isoformat(),
            text=text,
        )
        await self.channel.send(message)
        return message

    def _on_event(self, event):
        if isinstance(event, NewMessage):
            self.messages.append(event)
