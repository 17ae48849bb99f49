import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from meshcall.config import ice_servers
from meshcall.models import SessionDescription

logger = logging.getLogger(__name__)


async def _notify(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PeerTransport:
    """One aiortc RTCPeerConnection, exposing only what a PeerLink needs.

    Callbacks set by the orchestrator:
    - on_track(track): remote media track arrived
    - on_state_change(state): "new", "connecting", "connected", "failed", "closed"
    - on_ice_candidate(candidate): local candidate to trickle; aiortc gathers
      every candidate into the SDP, so it never fires here
    """

    def __init__(self, servers: Optional[List[Dict[str, Any]]] = None):
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=s["urls"], username=s.get("username"), credential=s.get("credential"))
                for s in (servers if servers is not None else ice_servers())
            ]
        )
        self.pc = RTCPeerConnection(configuration=configuration)
        self.senders: Dict[str, RTCRtpSender] = {}
        # Renegotiation offer handed out but not yet set as the local description
        self._unapplied_offer: Optional[RTCSessionDescription] = None
        self.on_track: Optional[Callable] = None
        self.on_state_change: Optional[Callable] = None
        self.on_ice_candidate: Optional[Callable] = None

        @self.pc.on("track")
        def on_track(track):
            logger.debug(f"Received remote {track.kind} track")
            if self.on_track:
                self.on_track(track)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"Connection state: {self.pc.connectionState}")
            await _notify(self.on_state_change, self.pc.connectionState)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def add_track(self, track: MediaStreamTrack):
        self.senders[track.kind] = self.pc.addTrack(track)

    def replace_track(self, kind: str, track: Optional[MediaStreamTrack]) -> bool:
        """Swap the outgoing track of ``kind`` in place.

        Returns True when no sender existed and one had to be added, which
        needs a renegotiation to reach the peer.
        """
        sender = self.senders.get(kind)
        if sender is None:
            if track is None:
                return False
            self.add_track(track)
            return True
        sender.replaceTrack(track)
        return False

    async def create_offer(self, defer: bool = False) -> SessionDescription:
        """Create an offer and apply it, or with ``defer`` hold it until the answer arrives.

        aiortc cannot roll back a local offer, so a renegotiation offer on a
        connected transport is only applied together with its answer. Until
        then the transport stays stable and can still answer the peer's offer.
        """
        offer = await self.pc.createOffer()
        if defer:
            self._unapplied_offer = offer
            return SessionDescription(sdp=offer.sdp, type=offer.type)
        self._unapplied_offer = None
        await self.pc.setLocalDescription(offer)
        return SessionDescription(sdp=self.pc.localDescription.sdp, type=self.pc.localDescription.type)

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return SessionDescription(sdp=self.pc.localDescription.sdp, type=self.pc.localDescription.type)

    def discard_offer(self):
        self._unapplied_offer = None

    async def set_remote_description(self, description: SessionDescription):
        if description.type == "answer" and self._unapplied_offer is not None:
            await self.pc.setLocalDescription(self._unapplied_offer)
        self._unapplied_offer = None
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, payload: Dict[str, Any]):
        sdp = payload.get("candidate") or ""
        if not sdp:
            # end-of-candidates marker
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        candidate = candidate_from_sdp(sdp)
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)

    async def close(self):
        self.senders.clear()
        await self.pc.close()


def default_transport_factory() -> PeerTransport:
    return PeerTransport(ice_servers())
