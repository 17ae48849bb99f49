"""Client-side peer mesh orchestration.

:class:`PeerOrchestrator` keeps one :class:`PeerLink` per remote participant
in the room and drives it through offer/answer over the session channel.
Remote media surfaces in :attr:`PeerOrchestrator.peer_streams`, an observable
map of connection id -> stream, which is all a UI needs to read.

Initiator policy: the side that hears ``participant-joined`` offers; the
newcomer only answers. Concurrent offers (glare) are settled per link with
:func:`yields_to`. Failed links are torn down and reported, never retried
automatically; :meth:`PeerOrchestrator.reconnect_all` restarts every link on
demand.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from meshcall.client.candidates import CandidateQueue
from meshcall.client.negotiation import LinkState, PeerLink, RemoteStream, yields_to
from meshcall.client.transport import default_transport_factory
from meshcall.models import (
    Answer,
    Connected,
    ErrorEvent,
    GetUsers,
    IceCandidate,
    MediaStateUpdated,
    Offer,
    Participant,
    ParticipantJoined,
    ParticipantLeft,
    ParticipantUpdated,
    ParticipantsList,
    RelayedAnswer,
    RelayedIceCandidate,
    RelayedOffer,
    RenegotiateConnections,
    RoomUsers,
    SessionDescription,
)

logger = logging.getLogger(__name__)

SIGNALING_EVENTS = (RelayedOffer, RelayedAnswer, RelayedIceCandidate)


class PeerStreams:
    """Observable map of remote connection id -> RemoteStream."""

    def __init__(self):
        self._streams: Dict[str, RemoteStream] = {}
        self._listeners: List[Callable[[Dict[str, RemoteStream]], None]] = []

    def subscribe(self, listener: Callable[[Dict[str, RemoteStream]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> Dict[str, RemoteStream]:
        return dict(self._streams)

    def get(self, remote_id: str) -> Optional[RemoteStream]:
        return self._streams.get(remote_id)

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def __iter__(self):
        return iter(list(self._streams))

    def _set(self, remote_id: str, stream: RemoteStream):
        self._streams[remote_id] = stream
        self._notify()

    def _remove(self, remote_id: str):
        if self._streams.pop(remote_id, None) is not None:
            self._notify()

    def _notify(self):
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)


class PeerOrchestrator:
    def __init__(self, channel, media, room_id: str, transport_factory=None):
        self.channel = channel
        self.media = media
        self.room_id = room_id
        self.transport_factory = transport_factory or default_transport_factory

        self.local_id: Optional[str] = getattr(channel, "connection_id", None)
        self.links: Dict[str, PeerLink] = {}
        self.candidates = CandidateQueue()
        # connection_id -> Participant, join order; includes the local participant
        self.roster: Dict[str, Participant] = {}
        self.peer_streams = PeerStreams()

        self.connection_errors: Dict[str, str] = {}
        self.connection_error: Optional[str] = None
        self.is_connecting = False

        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # Lifecycle

    async def start(self):
        self.is_connecting = True
        if self.local_id:
            self._add_local_participant()
        self._unsubscribe = self.channel.subscribe(self.dispatch)
        await self.channel.send(GetUsers(room_id=self.room_id))

    async def close(self):
        """Close every link, release the local tracks they hold, then unsubscribe."""
        if self._closed:
            return
        self._closed = True

        links = list(self.links.values())
        for link in links:
            if link.is_active:
                link.transition(LinkState.CLOSED)
            self._forget(link)

        for link in links:
            await self._close_transport(link)

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        for task in list(self._tasks):
            task.cancel()
        logger.info(f"Left room {self.room_id}, closed {len(links)} link(s)")

    async def settle(self):
        """Wait for signaling work scheduled by :meth:`dispatch`."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Inbound events

    async def dispatch(self, event):
        """Channel listener. Signaling runs as its own task so one slow link never stalls the rest."""
        if isinstance(event, SIGNALING_EVENTS):
            task = asyncio.create_task(self.handle_event(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self.handle_event(event)

    async def handle_event(self, event):
        if self._closed:
            return

        if isinstance(event, Connected):
            await self.handle_connected(event.connection_id)
        elif isinstance(event, (ParticipantsList, RoomUsers)):
            await self.handle_roster(event.participants)
        elif isinstance(event, ParticipantJoined):
            if event.type == "participant-joined":
                await self.handle_participant_joined(event.connection_id, event.display_name)
        elif isinstance(event, ParticipantLeft):
            if event.type == "participant-left":
                await self.handle_participant_left(event.connection_id)
        elif isinstance(event, RelayedOffer):
            await self.handle_offer(event.from_id, event.sdp)
        elif isinstance(event, RelayedAnswer):
            await self.handle_answer(event.from_id, event.sdp)
        elif isinstance(event, RelayedIceCandidate):
            await self.handle_ice_candidate(event.from_id, event.candidate)
        elif isinstance(event, MediaStateUpdated):
            self.handle_media_state_updated(event.connection_id, event.is_muted, event.is_video_off)
        elif isinstance(event, ParticipantUpdated):
            if event.connection_id in self.roster:
                self.roster[event.connection_id].display_name = event.display_name
        elif isinstance(event, RenegotiateConnections):
            await self.renegotiate_all()
        elif isinstance(event, ErrorEvent):
            logger.warning(f"Relay reported an error: {event.detail}")

    async def handle_connected(self, connection_id: str):
        if self.local_id and connection_id != self.local_id:
            # The channel reconnected under a new id; links from the old session are dead
            logger.info(f"Session restarted as {connection_id}, dropping {len(self.links)} link(s)")
            for link in list(self.links.values()):
                await self._close_link(link)
            self.roster.clear()
        self.local_id = connection_id
        self._add_local_participant()

    async def handle_roster(self, participants: List[Participant]):
        for participant in participants:
            if participant.connection_id == self.local_id:
                continue
            self.roster[participant.connection_id] = participant
            # Seen but not initiated: the existing member offers to us
            self._ensure_link(participant.connection_id)
        self.is_connecting = False

    async def handle_participant_joined(self, connection_id: str, display_name: str):
        logger.info(f"User joined: {display_name} ({connection_id})")
        self.roster[connection_id] = Participant(connection_id=connection_id, display_name=display_name)
        link = self.links.get(connection_id)
        if link is not None and link.state is not LinkState.IDLE:
            return
        await self.connect_to(connection_id)

    async def handle_participant_left(self, connection_id: str):
        logger.info(f"User left: {connection_id}")
        self.roster.pop(connection_id, None)
        link = self.links.get(connection_id)
        if link is not None:
            await self._close_link(link)
        self.candidates.discard(connection_id)

    def handle_media_state_updated(self, connection_id: str, is_muted: bool, is_video_off: bool):
        participant = self.roster.get(connection_id)
        if participant is None:
            logger.debug(f"Media state for unknown participant {connection_id}")
            return
        participant.is_muted = is_muted
        participant.is_video_off = is_video_off

    async def handle_offer(self, from_id: str, sdp: SessionDescription):
        logger.debug(f"Received offer from {from_id}")
        link = self._ensure_link(from_id)
        async with link.lock:
            if not self._is_current(link):
                return
            reoffer = False
            if link.pending_offer:
                if not yields_to(self.local_id, from_id):
                    logger.info(f"Glare with {from_id}: keeping our offer")
                    return
                if link.offer_deferred:
                    # Connected transport: drop the unapplied offer, resend it after answering
                    logger.info(f"Glare with {from_id}: answering theirs before renegotiating")
                    link.transport.discard_offer()
                    link.pending_offer = False
                    link.offer_deferred = False
                    reoffer = True
                else:
                    logger.info(f"Glare with {from_id}: dropping our offer to answer theirs")
                    await self._reset_transport(link)
            elif link.state is LinkState.NEGOTIATING:
                # The peer restarted a negotiation that never completed
                await self._reset_transport(link)
            await self._answer(link, sdp)
            if reoffer and self._is_current(link) and link.state is LinkState.CONNECTED:
                await self._offer(link)

    async def handle_answer(self, from_id: str, sdp: SessionDescription):
        logger.debug(f"Received answer from {from_id}")
        link = self.links.get(from_id)
        if link is None:
            return
        async with link.lock:
            if not self._is_current(link) or not link.pending_offer:
                logger.debug(f"Ignoring unexpected answer from {from_id}")
                return
            try:
                await link.transport.set_remote_description(sdp)
            except Exception as e:
                await self._fail(link, f"Failed to establish connection: {e}")
                return
            link.pending_offer = False
            link.offer_deferred = False
            link.remote_description_set = True
            await self._flush_candidates(link)
            self._promote_if_connected(link)

    async def handle_ice_candidate(self, from_id: str, candidate: dict):
        link = self.links.get(from_id)
        if link is None or not link.remote_description_set or self.candidates.has_pending(from_id):
            self.candidates.push(from_id, candidate)
            return
        try:
            await link.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(f"Error adding ICE candidate from {from_id}: {e}")

    # Outbound negotiation

    async def connect_to(self, remote_id: str):
        link = self._ensure_link(remote_id)
        async with link.lock:
            if self._is_current(link):
                await self._offer(link)

    async def renegotiate_all(self):
        """Re-offer on every connected link, each independently of the others."""
        links = [link for link in self.links.values() if link.state is LinkState.CONNECTED]
        if links:
            logger.info(f"Renegotiating {len(links)} link(s)")
        await asyncio.gather(*(self._renegotiate(link) for link in links))

    async def reconnect_all(self):
        """Restart negotiation with everyone in the roster, whatever their link's history."""
        remote_ids = [cid for cid in self.roster if cid != self.local_id]
        for remote_id in remote_ids:
            link = self.links.get(remote_id)
            if link is not None:
                await self._close_link(link)
        self.connection_error = None
        self.connection_errors.clear()
        await asyncio.gather(*(self.connect_to(remote_id) for remote_id in remote_ids))

    # Local media

    def replace_video_track(self, track) -> bool:
        """Swap the outgoing video on every live link; True if any needs renegotiation.

        ``None`` stops sending video on links that have a video sender.
        """
        needs_renegotiation = False
        for link in self.links.values():
            if link.is_active:
                needs_renegotiation |= link.transport.replace_track("video", track)
        return needs_renegotiation

    def update_local_state(self, is_muted: bool, is_video_off: bool):
        participant = self.roster.get(self.local_id)
        if participant is not None:
            participant.is_muted = is_muted
            participant.is_video_off = is_video_off

    # Internals

    def _add_local_participant(self):
        if self.local_id not in self.roster:
            self.roster[self.local_id] = Participant(
                connection_id=self.local_id,
                display_name=getattr(self.channel, "display_name", None) or "Me",
            )

    def _ensure_link(self, remote_id: str) -> PeerLink:
        link = self.links.get(remote_id)
        if link is None:
            link = PeerLink(remote_id, None)
            self._attach(link, self.transport_factory())
            self.links[remote_id] = link
        return link

    def _attach(self, link: PeerLink, transport):
        for track in self.media.outgoing_tracks():
            transport.add_track(track)

        def on_track(track):
            if link.transport is transport and link.is_active:
                link.remote_stream.add_track(track)
                self.peer_streams._set(link.remote_id, link.remote_stream)

        async def on_state_change(state):
            if link.transport is transport:
                await self._on_transport_state(link, state)

        async def on_ice_candidate(candidate):
            if link.transport is transport and link.is_active:
                await self.channel.send(
                    IceCandidate(room_id=self.room_id, target_connection_id=link.remote_id, candidate=candidate)
                )

        transport.on_track = on_track
        transport.on_state_change = on_state_change
        transport.on_ice_candidate = on_ice_candidate
        link.transport = transport

    async def _reset_transport(self, link: PeerLink):
        old = link.transport
        self._attach(link, self.transport_factory())
        link.pending_offer = False
        link.offer_deferred = False
        link.remote_description_set = False
        link.remote_stream = RemoteStream(link.remote_id)
        self.peer_streams._remove(link.remote_id)
        await old.close()

    async def _offer(self, link: PeerLink):
        renegotiating = link.state is LinkState.CONNECTED
        link.transition(LinkState.OFFERING)
        try:
            description = await link.transport.create_offer(defer=renegotiating)
            if not self._is_current(link):
                return
            link.pending_offer = True
            link.offer_deferred = renegotiating
            await self.channel.send(
                Offer(room_id=self.room_id, target_connection_id=link.remote_id, sdp=description)
            )
        except Exception as e:
            await self._fail(link, f"Failed to create connection offer: {e}")
            return
        if self._is_current(link):
            link.transition(LinkState.NEGOTIATING)

    async def _answer(self, link: PeerLink, sdp: SessionDescription):
        link.transition(LinkState.ANSWERING)
        try:
            await link.transport.set_remote_description(sdp)
            link.remote_description_set = True
            await self._flush_candidates(link)
            description = await link.transport.create_answer()
            if not self._is_current(link):
                return
            await self.channel.send(
                Answer(room_id=self.room_id, target_connection_id=link.remote_id, sdp=description)
            )
        except Exception as e:
            await self._fail(link, f"Failed to handle connection offer: {e}")
            return
        if self._is_current(link):
            link.transition(LinkState.NEGOTIATING)
            self._promote_if_connected(link)

    async def _renegotiate(self, link: PeerLink):
        async with link.lock:
            if self._is_current(link) and link.state is LinkState.CONNECTED:
                await self._offer(link)

    async def _flush_candidates(self, link: PeerLink):
        transport = link.transport
        await self.candidates.flush(
            link.remote_id,
            transport.add_ice_candidate,
            lambda: self._is_current(link) and link.transport is transport,
        )

    def _promote_if_connected(self, link: PeerLink):
        if (
            link.state is LinkState.NEGOTIATING
            and not link.pending_offer
            and link.transport.connection_state == "connected"
        ):
            link.transition(LinkState.CONNECTED)
            logger.info(f"Connected to {link.remote_id}")

    async def _on_transport_state(self, link: PeerLink, state: str):
        if not link.is_active:
            return
        if state == "connected":
            self._promote_if_connected(link)
        elif state == "failed":
            await self._fail(link, "Peer connection failed")
        elif state == "closed":
            await self._close_link(link)

    async def _fail(self, link: PeerLink, message: str):
        if not link.is_active:
            return
        logger.warning(f"Connection with {link.remote_id} failed: {message}")
        self.connection_errors[link.remote_id] = message
        self.connection_error = message
        link.transition(LinkState.FAILED)
        self._forget(link)
        await self._close_transport(link)

    async def _close_link(self, link: PeerLink):
        if not link.is_active:
            return
        link.transition(LinkState.CLOSED)
        self._forget(link)
        await self._close_transport(link)

    def _forget(self, link: PeerLink):
        if self.links.get(link.remote_id) is link:
            del self.links[link.remote_id]
            self.candidates.discard(link.remote_id)
            self.peer_streams._remove(link.remote_id)

    async def _close_transport(self, link: PeerLink):
        try:
            await link.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {link.remote_id}: {e}")

    def _is_current(self, link: PeerLink) -> bool:
        return link.is_active and self.links.get(link.remote_id) is link
