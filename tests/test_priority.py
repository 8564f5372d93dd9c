import asyncio

import pytest

from helpdispatch.queue.priority import PriorityBuffer


@pytest.mark.asyncio
async def test_highest_priority_first_and_fifo_within_priority():
    buf: PriorityBuffer[str] = PriorityBuffer()
    await buf.put(1, "low-a")
    await buf.put(9, "urgent-a")
    await buf.put(3, "medium")
    await buf.put(9, "urgent-b")
    buf.put_nowait(1, "low-b")

    out = [await buf.get() for _ in range(buf.qsize())]

    assert out == ["urgent-a", "urgent-b", "medium", "low-a", "low-b"]
    assert buf.empty()


@pytest.mark.asyncio
async def test_buffer_is_bounded():
    buf: PriorityBuffer[int] = PriorityBuffer(maxsize=1)
    buf.put_nowait(1, 1)
    with pytest.raises(asyncio.QueueFull):
        buf.put_nowait(1, 2)
