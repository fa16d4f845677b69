from __future__ import annotations

import asyncio

import pytest

from chatcore.core.sink import OfferResult, Outbound, SessionSink


class Clock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def frames(sink: SessionSink):
    return [item.frame for item in sink._queue]


def test_typing_is_dropped_when_full_and_messages_are_not():
    sink = SessionSink(capacity=2)
    assert sink.offer(Outbound(b"m1")) is OfferResult.QUEUED
    assert sink.offer(Outbound(b"m2")) is OfferResult.QUEUED

    # full of essential items: a typing indicator is refused, never blocks
    assert sink.offer(Outbound(b"typing", essential=False)) is OfferResult.DROPPED
    assert sink.dropped == 1

    # an essential item is still accepted past capacity
    assert sink.offer(Outbound(b"m3")) is OfferResult.QUEUED
    assert frames(sink) == [b"m1", b"m2", b"m3"]


def test_drop_oldest_nonessential_first():
    sink = SessionSink(capacity=3)
    sink.offer(Outbound(b"t1", essential=False))
    sink.offer(Outbound(b"m1"))
    sink.offer(Outbound(b"t2", essential=False))

    assert sink.offer(Outbound(b"m2")) is OfferResult.QUEUED
    assert frames(sink) == [b"m1", b"t2", b"m2"]

    assert sink.offer(Outbound(b"t3", essential=False)) is OfferResult.QUEUED
    assert frames(sink) == [b"m1", b"m2", b"t3"]
    assert sink.dropped == 2


def test_coalesce_replaces_in_place():
    sink = SessionSink(capacity=8)
    sink.offer(Outbound(b"last-1", essential=False, coalesce_key="chat:bob"))
    sink.offer(Outbound(b"m1"))
    result = sink.offer(Outbound(b"last-2", essential=False, coalesce_key="chat:bob"))
    assert result is OfferResult.COALESCED
    assert frames(sink) == [b"last-2", b"m1"]
    assert sink.offer(Outbound(b"last-x", essential=False, coalesce_key="chat:carol")) is OfferResult.QUEUED
    assert len(sink) == 3


def test_full_since_tracks_backpressure():
    clock = Clock()
    sink = SessionSink(capacity=2, clock=clock)
    sink.offer(Outbound(b"a"))
    assert sink.full_since is None
    sink.offer(Outbound(b"b"))
    assert sink.full_since == 100.0

    clock.now = 103.0
    assert sink.blocked_for() == pytest.approx(3.0)
    assert not sink.overdue(5.0)
    clock.now = 106.0
    assert sink.overdue(5.0)


@pytest.mark.asyncio
async def test_get_clears_full_since_and_preserves_order():
    sink = SessionSink(capacity=2)
    sink.offer(Outbound(b"a"))
    sink.offer(Outbound(b"b"))
    assert sink.full_since is not None
    first = await sink.get()
    assert first.frame == b"a"
    assert sink.full_since is None
    assert (await sink.get()).frame == b"b"


@pytest.mark.asyncio
async def test_pump_sends_until_closed():
    sink = SessionSink(capacity=4)
    sent = []

    async def send(frame: bytes) -> None:
        sent.append(frame)

    task = asyncio.create_task(sink.pump(send))
    sink.offer(Outbound(b"1"))
    sink.offer(Outbound(b"2"))
    for _ in range(50):
        if len(sent) == 2:
            break
        await asyncio.sleep(0.01)
    assert sent == [b"1", b"2"]

    assert sink.close("bye") is True
    await asyncio.wait_for(task, 1.0)
    assert sink.sent == 2
    assert await sink.wait_closed() == "bye"


def test_closed_sink_refuses_offers():
    sink = SessionSink(capacity=2)
    sink.offer(Outbound(b"x"))
    sink.close("SlowConsumer")
    assert len(sink) == 0
    assert sink.offer(Outbound(b"y")) is OfferResult.CLOSED
    assert sink.close("again") is False
    assert sink.close_reason == "SlowConsumer"
