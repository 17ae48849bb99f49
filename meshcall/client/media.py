import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Set

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from meshcall.errors import CaptureError
from meshcall.models import MediaStateChange, ScreenShareEnded, ScreenShareNotice, ScreenShareStarted

logger = logging.getLogger(__name__)


def blank_frame(frame):
    """Silent audio or black video with the same shape and timing as ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24")
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """Forwards a capture track; while disabled the peer gets silence or black frames.

    Disabling never removes the track, so the session description is unchanged.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    """The local capture source shared read-only by every peer link."""

    def __init__(self, audio: Optional[MediaStreamTrack] = None, video: Optional[MediaStreamTrack] = None):
        self.audio = ToggleableTrack(audio) if audio is not None else None
        self.video = ToggleableTrack(video) if video is not None else None
        self.screen: Optional[MediaStreamTrack] = None
        self._player: Optional[MediaPlayer] = None

    @classmethod
    def from_player(cls, file: str, format: Optional[str] = None, options: Optional[dict] = None) -> "LocalMedia":
        """Open a device or file with aiortc's MediaPlayer, e.g. ("/dev/video0", "v4l2")."""
        try:
            player = MediaPlayer(file, format=format, options=options or {})
        except Exception as e:
            raise CaptureError(f"Could not open local media {file}: {e}") from e
        media = cls(audio=player.audio, video=player.video)
        media._player = player
        return media

    @property
    def outgoing_video(self) -> Optional[MediaStreamTrack]:
        return self.screen or self.video

    def outgoing_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.audio, self.outgoing_video) if track is not None]

    def set_enabled(self, kind: str, enabled: bool):
        track = self.audio if kind == "audio" else self.video
        if track is not None:
            track.enabled = enabled

    def stop(self):
        for track in (self.audio, self.video, self.screen):
            if track is not None:
                track.stop()
        self.screen = None


@dataclass
class MediaState:
    is_muted: bool = False
    is_video_off: bool = False
    is_screen_sharing: bool = False


class MediaStateSynchronizer:
    """Owns every change to local track enablement and the outgoing video source.

    Mute and video-off only toggle enablement and broadcast the flags once to
    the room. Screen share swaps the video source on all links in one step and
    then renegotiates them.
    """

    def __init__(self, channel, orchestrator, media: LocalMedia):
        self.channel = channel
        self.orchestrator = orchestrator
        self.media = media
        self.state = MediaState()
        # connection ids of remote participants currently sharing their screen
        self.remote_screen_sharers: Set[str] = set()
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def set_muted(self, muted: bool):
        async with self._lock:
            self.state.is_muted = muted
            self.media.set_enabled("audio", not muted)
            await self._publish()

    async def toggle_mute(self):
        await self.set_muted(not self.state.is_muted)

    async def set_video_off(self, video_off: bool):
        async with self._lock:
            self.state.is_video_off = video_off
            self.media.set_enabled("video", not video_off)
            await self._publish()

    async def toggle_video(self):
        await self.set_video_off(not self.state.is_video_off)

    async def start_screen_share(self, track: MediaStreamTrack):
        async with self._lock:
            if self.state.is_screen_sharing:
                return
            self.media.screen = track
            self.orchestrator.replace_video_track(track)
            self.state.is_screen_sharing = True

            @track.on("ended")
            def on_ended():
                if self.media.screen is track:
                    task = asyncio.ensure_future(self.stop_screen_share())
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)

            logger.info("Screen share started")
            await self.channel.send(ScreenShareStarted(room_id=self.orchestrator.room_id))
            await self.orchestrator.renegotiate_all()

    async def stop_screen_share(self):
        async with self._lock:
            if not self.state.is_screen_sharing:
                return
            screen = self.media.screen
            self.media.screen = None
            self.state.is_screen_sharing = False
            # Without a camera this clears the video sender
            self.orchestrator.replace_video_track(self.media.video)
            if screen is not None:
                screen.stop()

            logger.info("Screen share ended")
            await self.channel.send(ScreenShareEnded(room_id=self.orchestrator.room_id))
            await self.orchestrator.renegotiate_all()

    async def settle(self):
        """Wait for screen-share reverts started by a track ending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Reverting to the camera failed: {task.exception()}")

    def handle_event(self, event):
        """Channel listener for remote screen-share notices."""
        if isinstance(event, ScreenShareNotice):
            if event.type == "screen-share-started":
                self.remote_screen_sharers.add(event.connection_id)
            else:
                self.remote_screen_sharers.discard(event.connection_id)

    async def _publish(self):
        self.orchestrator.update_local_state(self.state.is_muted, self.state.is_video_off)
        await self.channel.send(
            MediaStateChange(
                connection_id=self.channel.connection_id,
                is_muted=self.state.is_muted,
                is_video_off=self.state.is_video_off,
            )
        )
