import asyncio

import pytest

from core.zonewatch.channel import Message, MessageChannel, Reader
from core.zonewatch.exceptions import ChannelError


def test_message_can_only_be_answered_once():
    message = Message("t", b"{}")
    message.finish()
    with pytest.raises(ChannelError):
        message.finish()
    with pytest.raises(ChannelError):
        message.requeue()


@pytest.mark.asyncio
async def test_publish_encodes_bodies():
    channel = MessageChannel()
    await channel.publish("t", {"a": 1})
    await channel.publish("t", "text")

    queue = channel.topic("t")
    assert queue.get_nowait().body == b'{"a": 1}'
    assert queue.get_nowait().body == b"text"


@pytest.mark.asyncio
async def test_closed_channel_refuses_publish():
    channel = MessageChannel()
    channel.close()
    with pytest.raises(ChannelError):
        await channel.publish("t", b"x")
    channel.reopen()
    await channel.publish("t", b"x")
    assert channel.depth("t") == 1


@pytest.mark.asyncio
async def test_unanswered_message_is_redelivered():
    channel = MessageChannel()
    seen = []

    async def handler(message):
        seen.append(message.attempts)
        if message.attempts < 3:
            raise RuntimeError("transient")
        message.finish()

    reader = Reader(channel, "t", handler, max_attempts=5)
    await reader.start()
    await channel.publish("t", b"x")
    await reader.join()
    await reader.stop()

    assert seen == [1, 2, 3]
    assert reader.redelivered == 2
    assert reader.dropped == 0


@pytest.mark.asyncio
async def test_message_dropped_after_max_attempts():
    channel = MessageChannel()

    async def handler(message):
        message.requeue()

    reader = Reader(channel, "t", handler, max_attempts=2)
    await reader.start()
    await channel.publish("t", b"x")
    await reader.join()
    await reader.stop()

    assert reader.delivered == 2
    assert reader.dropped == 1


@pytest.mark.asyncio
async def test_in_flight_limit():
    channel = MessageChannel()
    active = 0
    peak = 0

    async def handler(message):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        message.finish()

    reader = Reader(channel, "t", handler, max_in_flight=2)
    await reader.start()
    for i in range(6):
        await channel.publish("t", str(i))
    await reader.join()
    await reader.stop()

    assert peak == 2
    assert reader.delivered == 6


@pytest.mark.asyncio
async def test_bounded_topic_drops_oldest():
    channel = MessageChannel()
    channel.bound("out", 3)

    for i in range(10):
        await channel.publish("out", {"n": i})

    assert channel.depth("out") == 3
    assert channel.overflowed == 7
    queue = channel.topic("out")
    assert [queue.get_nowait().body for _ in range(3)] == [b'{"n": 7}', b'{"n": 8}', b'{"n": 9}']


@pytest.mark.asyncio
async def test_unbounded_topics_keep_everything():
    channel = MessageChannel()
    channel.bound("out", 1)

    for i in range(5):
        await channel.publish("in", {"n": i})

    assert channel.depth("in") == 5
    assert channel.overflowed == 0


def test_bound_rejects_zero_capacity():
    with pytest.raises(ValueError):
        MessageChannel().bound("out", 0)
