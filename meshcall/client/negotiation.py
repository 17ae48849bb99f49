"""Per-peer negotiation state machine.

Each remote participant gets one :class:`PeerLink`. Its state only moves
along :data:`TRANSITIONS`; anything else raises ``InvalidTransition`` so a
stray message can never push a link into a state the orchestrator does not
expect.

    Idle -> Offering | Answering -> Negotiating -> Connected -> {Failed, Closed}

A connected link re-enters Offering (local renegotiation) or Answering
(remote renegotiation) and comes back through Negotiating. A link waiting on
its own offer that receives the peer's offer either keeps its offer or yields
to the peer's, decided by :func:`yields_to`. A yielding link that had
never connected replaces its transport; a connected one drops its unapplied
offer and answers, then offers again once that cycle is done.
"""
import asyncio
import logging
from enum import Enum
from typing import Dict, FrozenSet, List

from meshcall.errors import InvalidTransition

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TRANSITIONS: Dict[LinkState, FrozenSet[LinkState]] = {
    LinkState.IDLE: frozenset({LinkState.OFFERING, LinkState.ANSWERING, LinkState.FAILED, LinkState.CLOSED}),
    # Offering -> Answering: glare, our offer lost the tie-break
    LinkState.OFFERING: frozenset({LinkState.NEGOTIATING, LinkState.ANSWERING, LinkState.FAILED, LinkState.CLOSED}),
    LinkState.ANSWERING: frozenset({LinkState.NEGOTIATING, LinkState.FAILED, LinkState.CLOSED}),
    LinkState.NEGOTIATING: frozenset({LinkState.CONNECTED, LinkState.ANSWERING, LinkState.FAILED, LinkState.CLOSED}),
    LinkState.CONNECTED: frozenset({LinkState.OFFERING, LinkState.ANSWERING, LinkState.FAILED, LinkState.CLOSED}),
    LinkState.FAILED: frozenset(),
    LinkState.CLOSED: frozenset(),
}

TERMINAL_STATES = frozenset({LinkState.FAILED, LinkState.CLOSED})


def can_transition(current: LinkState, target: LinkState) -> bool:
    return target in TRANSITIONS[current]


def next_state(current: LinkState, target: LinkState) -> LinkState:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return target


def yields_to(local_id: str, remote_id: str) -> bool:
    """True when our pending offer must be dropped in favour of the remote's.

    The lower id always initiates, so the higher id side yields.
    """
    return local_id > remote_id


class RemoteStream:
    """Tracks received from one remote participant, at most one per kind."""

    def __init__(self, remote_id: str):
        self.remote_id = remote_id
        self.tracks: List = []

    def add_track(self, track):
        self.tracks = [t for t in self.tracks if t.kind != track.kind]
        self.tracks.append(track)

    def get_track(self, kind: str):
        for track in self.tracks:
            if track.kind == kind:
                return track
        return None

    @property
    def audio(self):
        return self.get_track("audio")

    @property
    def video(self):
        return self.get_track("video")


class PeerLink:
    """Negotiation state for one (local client, remote connection id) pair."""

    def __init__(self, remote_id: str, transport):
        self.remote_id = remote_id
        self.transport = transport
        self.state = LinkState.IDLE
        self.history: List[LinkState] = [LinkState.IDLE]
        # We sent an offer and have not applied the answer yet
        self.pending_offer = False
        # Our pending offer was created on a connected transport but not applied
        # locally yet, so it can be dropped without touching the transport
        self.offer_deferred = False
        self.remote_description_set = False
        self.remote_stream = RemoteStream(remote_id)
        # Serializes offer/answer handling for this link only
        self.lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES

    def transition(self, target: LinkState):
        self.state = next_state(self.state, target)
        self.history.append(target)
        logger.debug(f"Link {self.remote_id}: -> {target.value}")

    def __repr__(self):
        return f"PeerLink({self.remote_id!r}, state={self.state.value})"
