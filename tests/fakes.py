"""In-memory stand-ins for the relay, the session channel and aiortc."""
import inspect
import itertools

from meshcall.errors import ChannelClosedError
from meshcall.models import (
    Answer,
    IceCandidate,
    Offer,
    RelayedAnswer,
    RelayedIceCandidate,
    RelayedOffer,
    SessionDescription,
)

_ids = itertools.count(1)


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


async def _call(callback, *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class FakeTransport:
    """Connects as soon as both descriptions are in place.

    Enforces the signaling states aiortc does: a remote offer is refused
    while a local offer is outstanding, and there is no rollback.
    """

    def __init__(self):
        self.id = next(_ids)
        self.connection_state = "new"
        self.signaling_state = "stable"
        self.unapplied_offer = None
        self.local_description = None
        self.remote_description = None
        self.tracks = {}
        self.candidates = []
        self.closed = False
        self.fail_on = set()
        self.offers_created = 0
        self.on_track = None
        self.on_state_change = None
        self.on_ice_candidate = None

    def add_track(self, track):
        self.tracks[track.kind] = track

    def replace_track(self, kind, track):
        if kind not in self.tracks:
            if track is None:
                return False
            self.tracks[kind] = track
            return True
        self.tracks[kind] = track
        return False

    async def create_offer(self, defer=False):
        if "offer" in self.fail_on:
            raise RuntimeError("offer rejected")
        self.offers_created += 1
        offer = SessionDescription(sdp=f"offer-{self.id}-{self.offers_created}", type="offer")
        if defer:
            self.unapplied_offer = offer
            return offer
        self._set_local(offer)
        return offer

    def discard_offer(self):
        self.unapplied_offer = None

    def _set_local(self, description):
        if description.type == "offer" and self.signaling_state not in ("stable", "have-local-offer"):
            raise RuntimeError(f"cannot apply local offer in {self.signaling_state}")
        self.local_description = description
        self.signaling_state = "have-local-offer" if description.type == "offer" else "stable"

    async def create_answer(self):
        if "answer" in self.fail_on:
            raise RuntimeError("answer rejected")
        if self.signaling_state != "have-remote-offer":
            raise RuntimeError(f"cannot answer in {self.signaling_state}")
        self._set_local(SessionDescription(sdp=f"answer-{self.id}", type="answer"))
        await self._maybe_connect()
        return self.local_description

    async def set_remote_description(self, description):
        if self.closed or "remote" in self.fail_on:
            raise RuntimeError("cannot apply remote description")
        if description.type == "answer":
            if self.unapplied_offer is not None:
                self._set_local(self.unapplied_offer)
            if self.signaling_state != "have-local-offer":
                raise RuntimeError(f"cannot apply answer in {self.signaling_state}")
            self.signaling_state = "stable"
        else:
            if self.signaling_state not in ("stable", "have-remote-offer"):
                raise RuntimeError(f"cannot apply remote offer in {self.signaling_state}")
            self.signaling_state = "have-remote-offer"
        self.unapplied_offer = None
        self.remote_description = description
        await self._maybe_connect()

    async def add_ice_candidate(self, candidate):
        if self.closed:
            raise RuntimeError("transport closed")
        self.candidates.append(candidate)

    async def report(self, state):
        self.connection_state = state
        await _call(self.on_state_change, state)

    async def close(self):
        self.closed = True
        self.tracks.clear()
        await self.report("closed")

    async def _maybe_connect(self):
        if self.local_description and self.remote_description and self.connection_state != "connected":
            if self.on_track:
                self.on_track(FakeTrack("audio"))
            await self.report("connected")


class TransportRecorder:
    """transport_factory that remembers every transport it made."""

    def __init__(self):
        self.created = []

    def __call__(self):
        transport = FakeTransport()
        self.created.append(transport)
        return transport


class FakeChannel:
    def __init__(self, connection_id, room_id="room", display_name="tester", relay=None):
        self.connection_id = connection_id
        self.room_id = room_id
        self.display_name = display_name
        self.relay = relay
        self.sent = []
        self.listeners = []
        self.closed = False

    def subscribe(self, listener):
        self.listeners.append(listener)

        def unsubscribe():
            self.listeners.remove(listener)

        return unsubscribe

    async def send(self, message):
        if self.closed:
            raise ChannelClosedError("closed")
        self.sent.append(message)
        if self.relay is not None:
            self.relay.route(self.connection_id, message)

    def sent_of(self, kind):
        return [m for m in self.sent if isinstance(m, kind)]


class FakeRelay:
    """Queues peer-to-peer signaling and delivers it on flush()."""

    def __init__(self):
        self.queue = []
        self.orchestrators = {}

    def channel(self, connection_id, **kwargs):
        return FakeChannel(connection_id, relay=self, **kwargs)

    def register(self, orchestrator):
        self.orchestrators[orchestrator.local_id] = orchestrator

    def route(self, sender_id, message):
        if isinstance(message, Offer):
            event = RelayedOffer(from_id=sender_id, sdp=message.sdp)
        elif isinstance(message, Answer):
            event = RelayedAnswer(from_id=sender_id, sdp=message.sdp)
        elif isinstance(message, IceCandidate):
            event = RelayedIceCandidate(from_id=sender_id, candidate=message.candidate)
        else:
            return
        self.queue.append((message.target_connection_id, event))

    async def flush(self):
        while self.queue:
            target, event = self.queue.pop(0)
            orchestrator = self.orchestrators.get(target)
            if orchestrator is not None:
                await orchestrator.handle_event(event)
