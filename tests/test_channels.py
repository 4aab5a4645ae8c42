import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from ingest.channels import Broadcast, ChannelClosed, LatestValue


def test_fresh_reader_sees_existing_value():
    async def _run():
        slot = LatestValue()
        slot.publish('a')
        reader = slot.reader()
        assert reader.has_changed()
        assert await asyncio.wait_for(reader.wait_for_change(), 0.1) == 'a'
        assert not reader.has_changed()

    asyncio.run(_run())


def test_wait_for_change_blocks_until_next_publish():
    async def _run():
        slot = LatestValue()
        slot.publish(1)
        reader = slot.reader()
        await reader.wait_for_change()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(reader.wait_for_change(), 0.05)

        asyncio.get_running_loop().call_later(0.01, slot.publish, 2)
        assert await asyncio.wait_for(reader.wait_for_change(), 0.5) == 2

    asyncio.run(_run())


def test_identical_value_does_not_wake_readers():
    async def _run():
        slot = LatestValue()
        assert slot.publish('x')
        reader = slot.reader()
        await reader.wait_for_change()

        assert not slot.publish('x')
        assert slot.version == 1
        assert not reader.has_changed()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(reader.wait_for_change(), 0.05)

    asyncio.run(_run())


def test_readers_skip_to_latest_value():
    async def _run():
        slot = LatestValue()
        reader = slot.reader()
        for value in range(5):
            slot.publish(value)
        assert await reader.wait_for_change() == 4
        assert reader.borrow() == 4

    asyncio.run(_run())


def test_readers_have_independent_cursors():
    async def _run():
        slot = LatestValue()
        first, second = slot.reader(), slot.reader()
        slot.publish('p')
        assert await first.wait_for_change() == 'p'
        assert second.has_changed()
        assert await second.wait_for_change() == 'p'

    asyncio.run(_run())


def test_late_subscriber_misses_earlier_events():
    async def _run():
        channel = Broadcast(capacity=4)
        assert channel.publish('before') == 0
        with channel.subscribe() as sub:
            assert channel.receiver_count == 1
            assert sub.try_recv() is None
            channel.publish('after')
            assert await sub.recv() == 'after'
        assert channel.receiver_count == 0

    asyncio.run(_run())


def test_every_subscriber_receives_each_event():
    async def _run():
        channel = Broadcast()
        a, b = channel.subscribe(), channel.subscribe()
        assert channel.publish(1) == 2
        assert a.try_recv() == 1
        assert b.try_recv() == 1

    asyncio.run(_run())


def test_lagging_subscriber_drops_oldest():
    async def _run():
        channel = Broadcast(capacity=3)
        sub = channel.subscribe()
        for i in range(5):
            channel.publish(i)
        assert sub.lagged == 2
        assert [sub.try_recv() for _ in range(3)] == [2, 3, 4]
        assert sub.try_recv() is None

    asyncio.run(_run())


def test_recv_raises_once_closed_and_drained():
    async def _run():
        channel = Broadcast()
        sub = channel.subscribe()
        channel.publish('last')
        channel.close()
        assert await sub.recv() == 'last'
        with pytest.raises(ChannelClosed):
            await sub.recv()

    asyncio.run(_run())


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Broadcast(capacity=0)
