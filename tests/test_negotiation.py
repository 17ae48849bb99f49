import pytest

from meshcall.client.candidates import CandidateQueue
from meshcall.client.negotiation import (
    TERMINAL_STATES,
    LinkState,
    PeerLink,
    RemoteStream,
    can_transition,
    yields_to,
)
from meshcall.errors import InvalidTransition
from fakes import FakeTrack


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert not any(can_transition(state, target) for target in LinkState)


@pytest.mark.parametrize(
    "current,target",
    [
        (LinkState.IDLE, LinkState.NEGOTIATING),
        (LinkState.IDLE, LinkState.CONNECTED),
        (LinkState.ANSWERING, LinkState.OFFERING),
        (LinkState.CLOSED, LinkState.IDLE),
    ],
)
def test_illegal_transition_raises(current, target):
    link = PeerLink("p1", transport=None)
    link.state = current
    with pytest.raises(InvalidTransition):
        link.transition(target)
    assert link.state is current


def test_transition_records_history():
    link = PeerLink("p1", transport=None)
    for state in (LinkState.OFFERING, LinkState.NEGOTIATING, LinkState.CONNECTED, LinkState.CLOSED):
        link.transition(state)
    assert link.history[-1] is LinkState.CLOSED
    assert not link.is_active


def test_tie_break_is_antisymmetric():
    assert yields_to("b", "a") is True
    assert yields_to("a", "b") is False
    assert yields_to("a", "a") is False


def test_remote_stream_keeps_one_track_per_kind():
    stream = RemoteStream("p1")
    first, second = FakeTrack("video"), FakeTrack("video")
    stream.add_track(first)
    stream.add_track(FakeTrack("audio"))
    stream.add_track(second)

    assert stream.video is second
    assert stream.audio.kind == "audio"
    assert len(stream.tracks) == 2


def test_queue_take_empties_in_arrival_order():
    queue = CandidateQueue()
    queue.push("p1", {"n": 1})
    queue.push("p1", {"n": 2})
    queue.push("p2", {"n": 3})

    assert queue.pending("p1") == [{"n": 1}, {"n": 2}]
    assert queue.take("p1") == [{"n": 1}, {"n": 2}]
    assert "p1" not in queue
    assert queue.has_pending("p2")

    queue.discard("p2")
    assert not queue.has_pending("p2")


@pytest.mark.asyncio
async def test_flush_applies_in_order_and_skips_failures():
    queue = CandidateQueue()
    for n in range(1, 4):
        queue.push("p1", {"n": n})
    applied = []

    async def apply(candidate):
        if candidate["n"] == 2:
            raise ValueError("bad candidate")
        applied.append(candidate["n"])

    count = await queue.flush("p1", apply, lambda: True)

    assert applied == [1, 3]
    assert count == 2
    assert not queue.has_pending("p1")


@pytest.mark.asyncio
async def test_flush_picks_up_candidates_arriving_mid_flush():
    queue = CandidateQueue()
    queue.push("p1", {"n": 1})
    applied = []

    async def apply(candidate):
        applied.append(candidate["n"])
        if candidate["n"] == 1:
            queue.push("p1", {"n": 2})

    assert await queue.flush("p1", apply, lambda: True) == 2
    assert applied == [1, 2]


@pytest.mark.asyncio
async def test_flush_stops_when_link_dies():
    queue = CandidateQueue()
    for n in range(1, 4):
        queue.push("p1", {"n": n})
    applied = []
    alive = {"value": True}

    async def apply(candidate):
        applied.append(candidate["n"])
        alive["value"] = False

    assert await queue.flush("p1", apply, lambda: alive["value"]) == 1
    assert applied == [1]
    assert "p1" not in queue
