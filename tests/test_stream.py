from __future__ import annotations

import asyncio

import pytest

from chatcore.core import proto
from chatcore.core.presence import PresenceRecord
from chatcore.core.stream import StreamDispatcher, StreamState, SubscriptionStream

from conftest import FakeTransport, eventually


@pytest.fixture
def open_stream(registry, pipeline, claims):
    def _open(user_id: str, cls=StreamDispatcher, role: str = "user"):
        transport = FakeTransport()
        stream = cls(
            transport,
            claims(user_id, role),
            registry=registry,
            pipeline=pipeline,
            sink_capacity=64,
            drain_deadline=1.0,
        )
        task = asyncio.create_task(stream.run())
        return transport, stream, task

    return _open


def hello(user_id: str, **payload) -> proto.Envelope:
    return proto.Envelope.of_state(proto.KIND_HELLO, user_id, payload)


@pytest.mark.asyncio
async def test_first_frame_with_foreign_user_is_unauthenticated(open_stream, registry):
    transport, stream, task = open_stream("alice")
    transport.push(hello("mallory"))

    reason = await asyncio.wait_for(task, 1.0)

    assert reason == "Unauthenticated"
    assert stream.state is StreamState.CLOSED
    assert [e.code for e in transport.errors()] == [401]
    assert transport.closed[0] == 1008
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_unparseable_first_frame_is_unauthenticated(open_stream):
    transport, _, task = open_stream("alice")
    transport.push(b"\x00garbage")
    assert await asyncio.wait_for(task, 1.0) == "Unauthenticated"


@pytest.mark.asyncio
async def test_direct_delivery_between_two_streams(open_stream, registry, repo):
    a_transport, a_stream, a_task = open_stream("alice")
    b_transport, b_stream, b_task = open_stream("bob")
    a_transport.push(hello("alice"))
    b_transport.push(hello("bob"))
    await eventually(lambda: registry.count_for_user("alice") == 1 and registry.count_for_user("bob") == 1)
    assert a_stream.state is StreamState.ACTIVE

    a_transport.push(proto.Envelope(message=proto.ChatMessage(receiver_id="bob", content="hi bob", client_ref="r1")))

    await eventually(lambda: b_transport.messages())
    received = b_transport.messages()[0]
    assert received.sender_id == "alice"
    assert received.content == "hi bob"

    await eventually(lambda: [s for s in a_transport.states(proto.KIND_ACK) if s.payload.get("client_ref")])
    ack = [s for s in a_transport.states(proto.KIND_ACK) if s.payload.get("client_ref")][0]
    assert ack.payload["message_id"] == received.message_id
    assert a_transport.messages() == []  # no echo by default

    a_transport.finish()
    b_transport.finish()
    assert await asyncio.wait_for(a_task, 2.0) == "closed"
    await asyncio.wait_for(b_task, 2.0)
    assert len(registry) == 0
    assert await repo.get_message(received.message_id) is not None


@pytest.mark.asyncio
async def test_message_as_first_frame_opens_the_session(open_stream, registry, repo):
    transport, stream, task = open_stream("alice")
    transport.push(proto.Envelope(message=proto.ChatMessage(receiver_id="bob", content="straight in")))

    await eventually(lambda: transport.states(proto.KIND_ACK))
    message_id = transport.states(proto.KIND_ACK)[0].payload["message_id"]
    assert (await repo.get_message(message_id)).content == "straight in"

    transport.finish()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_hello_can_request_echo_and_filters(open_stream, registry):
    transport, stream, task = open_stream("alice")
    transport.push(hello("alice", echo=True, peers=["bob"]))
    await eventually(lambda: transport.states(proto.KIND_SUBSCRIBED))
    assert stream.session.echo is True
    assert stream.session.filter.peers == frozenset({"bob"})

    transport.push(proto.Envelope(message=proto.ChatMessage(receiver_id="bob", content="me too")))
    await eventually(lambda: transport.messages())
    assert transport.messages()[0].content == "me too"

    transport.finish()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_invalid_frames_get_errors_but_stream_stays_open(open_stream):
    transport, stream, task = open_stream("alice")
    transport.push(hello("alice"))
    transport.push(b"not json")
    transport.push(proto.Envelope(message=proto.ChatMessage(receiver_id="bob", content="")))

    await eventually(lambda: len(transport.errors()) == 2)
    assert [e.code for e in transport.errors()] == [400, 400]
    assert stream.state is StreamState.ACTIVE

    transport.finish()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_eviction_closes_the_stream_with_slow_consumer(open_stream, registry):
    transport, stream, task = open_stream("bob")
    transport.push(hello("bob"))
    await eventually(lambda: stream.session is not None and stream.state is StreamState.ACTIVE)

    registry.deregister(stream.session.session_id, "SlowConsumer")

    assert await asyncio.wait_for(task, 2.0) == "SlowConsumer"
    assert transport.errors()[-1].message == "SlowConsumer"
    assert transport.closed == (1013, "SlowConsumer")
    assert stream.state is StreamState.CLOSED


@pytest.mark.asyncio
async def test_pending_frames_are_drained_after_client_leaves(open_stream, repo):
    transport, stream, task = open_stream("alice")
    transport.push(hello("alice"))
    transport.push(proto.Envelope(message=proto.ChatMessage(message_id="last-words", receiver_id="bob", content="bye")))
    transport.finish()

    await asyncio.wait_for(task, 2.0)
    assert (await repo.get_message("last-words")).content == "bye"


@pytest.mark.asyncio
async def test_presence_subscription_receives_transitions(open_stream, pipeline):
    transport, stream, task = open_stream("carol", cls=SubscriptionStream)
    transport.push(proto.encode(proto.SubscribeRequest(tag="presence", peers=["alice"])))

    await eventually(lambda: transport.states(proto.KIND_SUBSCRIBED))
    subscribed = transport.states(proto.KIND_SUBSCRIBED)[0]
    assert subscribed.payload["tag"] == "presence"

    await pipeline.publish_presence(PresenceRecord(user_id="alice", status=proto.PresenceStatus.ONLINE))
    await pipeline.publish_presence(PresenceRecord(user_id="dave", status=proto.PresenceStatus.ONLINE))

    await eventually(lambda: transport.states(proto.KIND_PRESENCE))
    updates = transport.states(proto.KIND_PRESENCE)
    assert [u.user_id for u in updates] == ["alice"]

    transport.finish()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_subscription_with_unknown_tag_is_rejected(open_stream):
    transport, _, task = open_stream("carol", cls=SubscriptionStream)
    transport.push(b'{"tag": "firehose"}')
    assert await asyncio.wait_for(task, 1.0) == "InvalidArgument"
    assert transport.errors()[0].code == 400


@pytest.mark.asyncio
async def test_thread_subscription_requires_visibility(open_stream, repo):
    parent = await repo.save_message(proto.ChatMessage(sender_id="alice", receiver_id="bob", content="topic"))

    transport, _, task = open_stream("carol", cls=SubscriptionStream)
    transport.push(proto.encode(proto.SubscribeRequest(tag="thread", parent_id=parent.message_id)))
    assert await asyncio.wait_for(task, 1.0) == "PermissionDenied"

    transport, _, task = open_stream("bob", cls=SubscriptionStream)
    transport.push(proto.encode(proto.SubscribeRequest(tag="thread", parent_id=parent.message_id)))
    await eventually(lambda: transport.states(proto.KIND_SUBSCRIBED))
    transport.finish()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_full_inbox_stops_reading_the_transport(registry, pipeline, claims, monkeypatch):
    transport = FakeTransport()
    stream = StreamDispatcher(
        transport,
        claims("alice"),
        registry=registry,
        pipeline=pipeline,
        sink_capacity=64,
        drain_deadline=2.0,
        inbox_capacity=2,
    )
    release = asyncio.Event()
    submit = pipeline.submit

    async def held_submit(session, envelope):
        await release.wait()
        return await submit(session, envelope)

    monkeypatch.setattr(pipeline, "submit", held_submit)
    task = asyncio.create_task(stream.run())
    transport.push(hello("alice"))
    await eventually(lambda: stream.state is StreamState.ACTIVE)

    for n in range(10):
        transport.push(proto.Envelope(message=proto.ChatMessage(receiver_id="bob", content=f"m{n}", client_ref=f"c{n}")))
    await eventually(lambda: stream._inbox.full())
    await asyncio.sleep(0.05)

    # one frame in the worker, two queued, one waiting on the reader
    assert stream._inbox.qsize() == 2
    assert transport._inbox.qsize() == 6

    release.set()
    await eventually(lambda: len([s for s in transport.states(proto.KIND_ACK) if s.payload.get("client_ref")]) == 10)
    transport.finish()
    assert await asyncio.wait_for(task, 2.0) == "closed"
