import inspect

import pytest

from fakes import FakeChannel, FakeTrack, TransportRecorder
from meshcall.client.media import LocalMedia
from meshcall.client.session import MeetingSession
from meshcall.errors import CaptureError, ChannelClosedError
from meshcall.models import GetUsers, NewMessage, SendMessage


class OpeningChannel(FakeChannel):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.opened = False

    async def open(self):
        self.opened = True

    async def close(self):
        self.closed = True

    async def deliver(self, event):
        for listener in list(self.listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result


def session_with(channel, media_factory=None):
    media_factory = media_factory or (lambda: LocalMedia(audio=FakeTrack("audio"), video=FakeTrack("video")))
    return MeetingSession(
        "abc123", "Alice", media_factory=media_factory, channel=channel, transport_factory=TransportRecorder()
    )


@pytest.mark.asyncio
async def test_join_opens_channel_and_requests_roster():
    channel = OpeningChannel("c1", room_id="abc123", display_name="Alice")
    session = session_with(channel)
    await session.join()

    assert channel.opened
    assert channel.sent == [GetUsers(room_id="abc123")]
    assert session.orchestrator.local_id == "c1"
    assert len(channel.listeners) == 3


@pytest.mark.asyncio
async def test_capture_failure_happens_before_connecting():
    channel = OpeningChannel("c1")

    def no_camera():
        raise CaptureError("camera busy")

    session = session_with(channel, no_camera)
    with pytest.raises(CaptureError):
        await session.join()
    assert not channel.opened
    assert session.orchestrator is None


@pytest.mark.asyncio
async def test_chat_is_sent_and_received():
    channel = OpeningChannel("c1")
    session = session_with(channel)
    await session.join()

    sent = await session.send_chat("hello")
    assert channel.sent_of(SendMessage) == [sent]
    assert sent.sender == "Alice"

    await channel.deliver(NewMessage(sender="Bob", time="10:00", text="hi"))
    assert [m.text for m in session.messages] == ["hi"]


@pytest.mark.asyncio
async def test_leave_releases_everything():
    channel = OpeningChannel("c1")
    session = session_with(channel)
    await session.join()

    await session.leave()

    assert channel.listeners == []
    assert channel.closed
    assert session.media.audio.source.stopped
    assert session.media.video.source.stopped


class UnreachableChannel(OpeningChannel):
    async def open(self):
        raise OSError("relay unreachable")


@pytest.mark.asyncio
async def test_failed_open_releases_captured_media():
    channel = UnreachableChannel("c1")
    session = session_with(channel)

    with pytest.raises(OSError):
        await session.join()

    assert channel.closed
    assert session.media.audio.source.stopped
    assert session.media.video.source.stopped


@pytest.mark.asyncio
async def test_failed_start_tears_down_partial_session():
    channel = OpeningChannel("c1")
    # sends fail, so the roster request in start() raises
    channel.closed = True
    session = session_with(channel)

    with pytest.raises(ChannelClosedError):
        await session.join()

    assert channel.listeners == []
    assert session.media.video.source.stopped
