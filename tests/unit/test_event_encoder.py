import asyncio

import pytest

from streamchat.application.sse.event_channel import EventChannel
from streamchat.application.sse.event_encoder import ClientEventEncoder
from streamchat.application.sse.schema.events import ContentEvent, EventType
from tests.fakes import parse_frames


async def _collect(channel: EventChannel):
    return parse_frames([frame async for frame in channel.frames()])


def test_sse_framing():
    frame = ContentEvent(id="m1", text="hi").to_sse()

    assert frame == 'event: content\ndata: {"type":"content","id":"m1","text":"hi"}\n\n'


@pytest.mark.asyncio
async def test_only_one_terminal_event_is_written(channel):
    encoder = ClientEventEncoder(channel, "m1")

    await encoder.send_content("partial")
    assert await encoder.send_final_content("done")
    assert not await encoder.send_error("late failure")
    assert not await encoder.send_content("late text")
    await encoder.close()

    frames = await _collect(channel)
    assert [name for name, _ in frames] == ["content", "finalContent"]
    assert encoder.finished
    assert encoder.sent == [EventType.CONTENT, EventType.FINAL_CONTENT]


@pytest.mark.asyncio
async def test_empty_deltas_are_not_sent(channel):
    encoder = ClientEventEncoder(channel, "m1")

    assert not await encoder.send_content("")
    assert not await encoder.send_reasoning("")
    await encoder.close()

    assert await _collect(channel) == []


@pytest.mark.asyncio
async def test_content_carries_stable_message_id(channel):
    encoder = ClientEventEncoder(channel, "msg-42")

    await encoder.send_content("a")
    await encoder.send_content("b")
    await encoder.send_abort("stopped")
    await encoder.close()

    frames = await _collect(channel)
    assert {payload["id"] for name, payload in frames if name == "content"} == {"msg-42"}
    assert frames[-1] == ("abort", {"type": "abort", "reason": "stopped"})


@pytest.mark.asyncio
async def test_full_channel_drops_deltas_but_keeps_terminal():
    channel = EventChannel(max_size=2)
    encoder = ClientEventEncoder(channel, "m1")

    await encoder.send_content("1")
    await encoder.send_content("2")
    assert not await encoder.send_content("3")
    assert channel.dropped == 1

    terminal = asyncio.create_task(encoder.send_final_content("12"))
    frames = []
    async for frame in channel.frames():
        frames.append(frame)
        if len(frames) == 3:
            break
    assert await terminal

    assert [name for name, _ in parse_frames(frames)] == ["content", "content", "finalContent"]


@pytest.mark.asyncio
async def test_detached_consumer_drops_everything():
    channel = EventChannel(max_size=4)
    encoder = ClientEventEncoder(channel, "m1")

    channel.detach()

    assert not await encoder.send_content("x")
    assert not await encoder.send_final_content("x")
    await encoder.close()
    assert await channel.wait_drained(timeout=0.1)


@pytest.mark.asyncio
async def test_wait_drained_after_consumer_reads_close_marker(channel):
    encoder = ClientEventEncoder(channel, "m1")
    await encoder.send_final_content("done")
    await encoder.close()

    assert not await channel.wait_drained(timeout=0.01)
    await _collect(channel)
    assert await channel.wait_drained(timeout=0.1)
