from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest

from chatcore.core import proto
from chatcore.core.errors import NotFound
from chatcore.server.service import ChatService

from conftest import drain_sink


@pytest.fixture
def service(repo, pipeline, presence, registry):
    return ChatService(repo, pipeline, presence, registry, default_timeout=2.0)


@pytest.fixture
def call(service, claims):
    async def _call(caller: str, method: str, role: str = "user", timeout_ms: int = 0, **params):
        request = proto.RpcRequest(method=method, params=params, timeout_ms=timeout_ms)
        return await service.handle(claims(caller, role), request)

    return _call


async def send(repo, sender="alice", receiver="bob", content="hello", **extra) -> proto.ChatMessage:
    return await repo.save_message(
        proto.ChatMessage(sender_id=sender, receiver_id=receiver, content=content, **extra)
    )


def updates(session):
    return [e.state for e in drain_sink(session) if e.state and e.state.kind == proto.KIND_MESSAGE_UPDATE]


@pytest.mark.asyncio
async def test_unknown_method_is_not_found(call):
    response = await call("alice", "Teleport")
    assert response.status_code == 404
    assert not response.ok


@pytest.mark.asyncio
async def test_edit_by_sender_is_broadcast(call, repo, make_session):
    msg = await send(repo)
    bob = make_session("bob")

    response = await call("alice", "EditMessage", message_id=msg.message_id, content="hello again")

    assert response.ok
    assert response.result.value["content"] == "hello again"
    assert response.result.value["edit_history"] == ["hello"]
    [update] = updates(bob)
    assert update.payload["update_type"] == "edited"
    assert update.payload["message"]["content"] == "hello again"


@pytest.mark.asyncio
async def test_only_the_sender_may_edit(call, repo):
    msg = await send(repo)
    assert (await call("bob", "EditMessage", message_id=msg.message_id, content="mine now")).status_code == 403
    assert (await call("alice", "EditMessage", message_id=msg.message_id, content="  ")).status_code == 400


@pytest.mark.asyncio
async def test_outsiders_cannot_see_that_a_message_exists(call, repo):
    msg = await send(repo)
    response = await call("mallory", "GetMessageReactions", message_id=msg.message_id)
    assert response.status_code == 404
    admin = await call("root", "GetMessageReactions", role="admin", message_id=msg.message_id)
    assert admin.ok


@pytest.mark.asyncio
async def test_deleted_messages_are_tombstoned_for_other_readers(call, repo, make_session):
    msg = await send(repo, content="secret")
    bob = make_session("bob")

    assert (await call("bob", "DeleteMessage", message_id=msg.message_id)).status_code == 403
    assert (await call("alice", "DeleteMessage", message_id=msg.message_id)).ok
    [update] = updates(bob)
    assert update.payload["update_type"] == "deleted"
    assert update.payload["message"]["content"] == ""

    bob_view = await call("bob", "GetChatHistory", chat_id="alice")
    assert bob_view.result.value[0]["deleted"] is True
    assert bob_view.result.value[0]["content"] == ""
    alice_view = await call("alice", "GetChatHistory", chat_id="bob")
    assert alice_view.result.value[0]["content"] == "secret"

    assert (await call("alice", "EditMessage", message_id=msg.message_id, content="x")).status_code == 404


@pytest.mark.asyncio
async def test_reactions(call, repo):
    msg = await send(repo)
    added = await call("bob", "AddReaction", message_id=msg.message_id, kind="love")
    assert added.status_code == 201
    assert [r["kind"] for r in added.result.value] == ["love"]

    assert (await call("bob", "AddReaction", message_id=msg.message_id, kind="love")).status_code == 409
    assert (await call("bob", "AddReaction", message_id=msg.message_id, kind="meh")).status_code == 400

    removed = await call("bob", "RemoveReaction", message_id=msg.message_id, kind="love")
    assert removed.ok and removed.result.value == []
    assert (await call("bob", "RemoveReaction", message_id=msg.message_id, kind="love")).status_code == 404


@pytest.mark.asyncio
async def test_like_toggles_and_reports_count(call, repo):
    msg = await send(repo)
    first = await call("bob", "LikeMessage", message_id=msg.message_id)
    assert first.result.value == {"message_id": msg.message_id, "liked": True, "like_count": 1}
    second = await call("bob", "LikeMessage", message_id=msg.message_id)
    assert second.result.value["liked"] is False


@pytest.mark.asyncio
async def test_pins(call, repo):
    msg = await send(repo)
    assert (await call("bob", "PinMessage", message_id=msg.message_id)).result.value["is_pinned"] is True
    assert (await call("alice", "PinMessage", message_id=msg.message_id)).status_code == 409

    pinned = await call("alice", "GetPinnedMessages", chat_id="bob")
    assert [m["message_id"] for m in pinned.result.value] == [msg.message_id]

    assert (await call("alice", "UnpinMessage", message_id=msg.message_id)).ok
    assert (await call("alice", "GetPinnedMessages", chat_id="bob")).result.value == []


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}, {"chat_id": ""}])
async def test_history_parameters_are_validated(call, params):
    params = {"chat_id": "bob", **params}
    response = await call("alice", "GetChatHistory", **params)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_thread_messages(call, repo):
    parent = await send(repo, content="topic")
    await send(repo, sender="bob", receiver="alice", content="reply", parent_message_id=parent.message_id)
    replies = await call("alice", "GetThreadMessages", parent_id=parent.message_id)
    assert [m["content"] for m in replies.result.value] == ["reply"]
    assert (await call("carol", "GetThreadMessages", parent_id=parent.message_id)).status_code == 404


@pytest.mark.asyncio
async def test_group_lifecycle_and_chat_events(call, make_session):
    bob_events = make_session("bob", tag="chat-events")
    created = await call("alice", "CreateGroup", name="team", members=["bob"])
    assert created.status_code == 201
    group_id = created.result.value["group_id"]
    assert [e.state.payload["event"] for e in drain_sink(bob_events)] == ["group.created"]

    assert (await call("carol", "GetUsersInGroup", group_id=group_id)).status_code == 403
    joined = await call("carol", "JoinGroup", group_id=group_id)
    assert joined.result.value == {"group_id": group_id, "version": 2}
    members = await call("carol", "GetUsersInGroup", group_id=group_id)
    assert members.result.value == ["alice", "bob", "carol"]
    assert [e.state.payload["event"] for e in drain_sink(bob_events)] == ["member.joined"]

    assert (await call("carol", "JoinGroup", group_id=group_id)).status_code == 409
    left = await call("bob", "LeaveGroup", group_id=group_id)
    assert left.result.value["version"] == 3
    # the leaver still hears about their own departure
    assert [e.state.payload["event"] for e in drain_sink(bob_events)] == ["member.left"]
    assert (await call("bob", "GetUsersInGroup", group_id=group_id)).status_code == 403


@pytest.mark.asyncio
async def test_read_and_delivery_receipts(call, repo, make_session):
    msg = await send(repo)
    alice = make_session("alice")

    delivered = await call("bob", "SendDeliveryReceipt", message_id=msg.message_id)
    assert delivered.result.value["status"] == "delivered"
    assert (await call("alice", "SendDeliveryReceipt", message_id=msg.message_id)).status_code == 400
    assert (await call("carol", "SendDeliveryReceipt", message_id=msg.message_id)).status_code == 403

    read = await call("bob", "MarkAsRead", chat_id="alice")
    assert read.result.value["message_ids"] == [msg.message_id]
    receipts = [e.state for e in drain_sink(alice) if e.state and e.state.kind == proto.KIND_RECEIPT]
    assert [r.payload["status"] for r in receipts] == ["delivered", "read"]


@pytest.mark.asyncio
async def test_typing_indicator(call, make_session):
    bob_typing = make_session("bob", tag="typing", peers=["alice"])
    assert (await call("alice", "SendTypingIndicator", receiver_id="bob")).ok
    assert [e.state.kind for e in drain_sink(bob_typing)] == [proto.KIND_TYPING]


@pytest.mark.asyncio
async def test_presence_status(call, make_session):
    make_session("alice")
    assert (await call("alice", "UpdatePresenceStatus", status="offline")).status_code == 400

    away = await call("alice", "UpdatePresenceStatus", status="away", custom_message="lunch")
    assert away.result.value["status"] == "away"

    looked_up = await call("bob", "GetUserPresence", user_ids=["alice", "ghost"])
    statuses = {r["user_id"]: r["status"] for r in looked_up.result.value}
    assert statuses == {"alice": "away", "ghost": "offline"}
    assert (await call("bob", "GetUserPresence", user_ids=[])).status_code == 400


@pytest.mark.asyncio
async def test_schedule_and_cancel(call, repo):
    when = proto.Timestamp.from_seconds(time.time() + 3600)
    scheduled = await call(
        "alice",
        "ScheduleMessage",
        message={"receiver_id": "bob", "content": "later", "scheduled_at": proto.dump_model(when)},
    )
    assert scheduled.status_code == 201
    message_id = scheduled.result.value["message_id"]
    assert scheduled.result.value["sender_id"] == "alice"

    listed = await call("alice", "GetScheduledMessages")
    assert [m["message_id"] for m in listed.result.value] == [message_id]

    assert (await call("bob", "CancelScheduledMessage", message_id=message_id)).status_code == 404
    assert (await call("alice", "CancelScheduledMessage", message_id=message_id)).ok
    assert (await call("alice", "GetScheduledMessages")).result.value == []

    missing_time = await call("alice", "ScheduleMessage", message={"receiver_id": "bob", "content": "x"})
    assert missing_time.status_code == 400


@pytest.mark.asyncio
async def test_screen_share_signalling(call, make_session):
    bob_share = make_session("bob", tag="screen-share")
    assert (await call("alice", "StartScreenShare")).status_code == 400
    assert (await call("alice", "StartScreenShare", receiver_id="bob", group_id="g")).status_code == 400

    started = await call("alice", "StartScreenShare", receiver_id="bob")
    assert started.status_code == 201
    share_id = started.result.value["share_id"]

    assert (await call("alice", "StopScreenShare", receiver_id="bob")).status_code == 400
    assert (await call("alice", "StopScreenShare", receiver_id="bob", share_id=share_id)).ok

    actions = [(e.state.payload["action"], e.state.payload["share_id"]) for e in drain_sink(bob_share)]
    assert actions == [("started", share_id), ("stopped", share_id)]


@pytest.mark.asyncio
async def test_force_disconnect_requires_admin(call, registry, make_session):
    first = make_session("bob")
    second = make_session("bob", tag="presence")

    assert (await call("alice", "ForceDisconnect", user_id="bob")).status_code == 403
    assert registry.count_for_user("bob") == 2

    response = await call("root", "ForceDisconnect", role="admin", user_id="bob")
    assert response.result.value == {"user_id": "bob", "disconnected": 2}
    assert registry.count_for_user("bob") == 0
    assert first.sink.close_reason == "ForceDisconnect"
    assert second.sink.closed


@pytest.mark.asyncio
async def test_slow_handler_hits_the_deadline(service, call, monkeypatch):
    async def stuck(claims, params):
        await asyncio.sleep(1)

    monkeypatch.setitem(service._handlers, "GetLastMessages", stuck)
    response = await call("alice", "GetLastMessages", timeout_ms=50)
    assert response.status_code == 500
    assert "retryable=true" in response.result.error.details


@pytest.mark.asyncio
async def test_unexpected_errors_become_internal(service, call, monkeypatch):
    async def broken(claims, params):
        raise RuntimeError("boom")

    monkeypatch.setitem(service._handlers, "GetLastMessages", broken)
    response = await call("alice", "GetLastMessages")
    assert response.status_code == 500
    assert any(d.startswith("correlation_id=") for d in response.result.error.details)


@pytest.mark.asyncio
async def test_repository_failure_is_retryable(call, repo, monkeypatch):
    msg = await send(repo)

    async def locked(message_id, content):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repo, "update_message_content", locked)
    response = await call("alice", "EditMessage", message_id=msg.message_id, content="again")
    assert response.status_code == 500
    assert "retryable=true" in response.result.error.details
    assert not any(d.startswith("correlation_id=") for d in response.result.error.details)


# -----------------------------
# Forwarding
# -----------------------------

@pytest.mark.asyncio
async def test_forward_creates_new_messages_and_delivers_them(call, repo, make_session):
    original = await send(repo, sender="carol", receiver="alice", content="pass it on")
    group = await repo.create_group("team", "alice", ["dave"])
    bob = make_session("bob")
    dave = make_session("dave")

    response = await call(
        "alice", "ForwardMessage", message_id=original.message_id,
        receiver_ids=["bob", "bob"], group_ids=[group["group_id"]],
    )

    assert response.status_code == 201
    forwarded = response.result.value
    assert len(forwarded) == 2
    for copy in forwarded:
        assert copy["message_id"] != original.message_id
        assert copy["sender_id"] == "alice"
        assert copy["content"] == "pass it on"
        assert copy["original_message_id"] == original.message_id
        assert copy["forward_count"] == 1
        assert (await repo.get_message(copy["message_id"])) is not None

    [to_bob] = [e.message for e in drain_sink(bob) if e.message is not None]
    assert to_bob.receiver_id == "bob" and to_bob.forward_count == 1
    [to_team] = [e.message for e in drain_sink(dave) if e.message is not None]
    assert to_team.group_id == group["group_id"]


@pytest.mark.asyncio
async def test_forward_checks_every_target_before_storing(call, repo):
    original = await send(repo, content="private")
    outsider_group = await repo.create_group("other", "carol", [])

    denied = await call(
        "alice", "ForwardMessage", message_id=original.message_id,
        receiver_ids=["dave"], group_ids=[outsider_group["group_id"]],
    )
    assert denied.status_code == 403
    assert await repo.get_chat_history("alice", "dave", False) == []

    assert (await call("alice", "ForwardMessage", message_id=original.message_id)).status_code == 400
    hidden = await call("mallory", "ForwardMessage", message_id=original.message_id, receiver_ids=["eve"])
    assert hidden.status_code == 404


# -----------------------------
# Group updates and lookups
# -----------------------------

@pytest.mark.asyncio
async def test_update_group_by_admin_emits_event(call, make_session):
    created = await call("alice", "CreateGroup", name="team", members=["bob"])
    group_id = created.result.value["group_id"]
    bob_events = make_session("bob", tag="chat-events")

    assert (await call("bob", "UpdateGroup", group_id=group_id, name="mine")).status_code == 403
    assert (await call("carol", "UpdateGroup", group_id=group_id, name="mine")).status_code == 403
    assert (await call("alice", "UpdateGroup", group_id="nope", name="x")).status_code == 404

    updated = await call("alice", "UpdateGroup", group_id=group_id, name="renamed")
    assert updated.ok
    assert updated.result.value["name"] == "renamed"
    assert updated.result.value["version"] == 2

    [event] = [e.state.payload for e in drain_sink(bob_events)]
    assert event["event"] == "group.updated"
    assert event["name"] == "renamed"
    assert event["version"] == 2


class FakeDirectory:
    def __init__(self, users):
        self.users = users
        self.calls = []

    async def call(self, method, params):
        self.calls.append((method, params))
        user = self.users.get(params["email"])
        if user is None:
            raise NotFound("no such user")
        return user


@pytest.mark.asyncio
async def test_groups_by_email_for_self_and_admins(repo, pipeline, presence, registry, claims):
    directory = FakeDirectory({"bob@corp.test": {"user_id": "bob"}})
    service = ChatService(repo, pipeline, presence, registry, default_timeout=2.0, directory=directory)

    async def call(caller, role="user", **params):
        request = proto.RpcRequest(method="GetAllGroupsByUserEmail", params=params)
        return await service.handle(claims(caller, role), request)

    first = await repo.create_group("one", "alice", ["bob"])
    second = await repo.create_group("two", "carol", ["bob"])
    await repo.create_group("three", "carol", [])

    own = await call("bob", email="BOB@example.test")
    assert {g["group_id"] for g in own.result.value} == {first["group_id"], second["group_id"]}
    assert directory.calls == []

    assert (await call("alice", email="bob@corp.test")).status_code == 403
    assert (await call("alice", email="not-an-email")).status_code == 400

    looked_up = await call("root", role="admin", email="bob@corp.test")
    assert {g["name"] for g in looked_up.result.value} == {"one", "two"}
    assert directory.calls == [("GetUserByEmail", {"email": "bob@corp.test"})]
    assert (await call("root", role="admin", email="ghost@corp.test")).status_code == 404


# -----------------------------
# Call signalling
# -----------------------------

def call_actions(session):
    return [(e.state.payload["action"], e.state.payload["call"]["status"]) for e in drain_sink(session)]


@pytest.mark.asyncio
async def test_direct_call_lifecycle(call, make_session):
    alice_calls = make_session("alice", tag="calls")
    bob_calls = make_session("bob", tag="calls")
    bob_chat = make_session("bob")

    assert (await call("alice", "InitiateCall")).status_code == 400
    assert (await call("alice", "InitiateCall", receiver_id="alice")).status_code == 400

    started = await call("alice", "InitiateCall", receiver_id="bob", call_type="video")
    assert started.status_code == 201
    call_id = started.result.value["call_id"]
    assert started.result.value["participants"] == ["alice", "bob"]
    assert started.result.value["status"] == "initiated"

    assert (await call("alice", "AcceptCall", call_id=call_id)).status_code == 403
    assert (await call("mallory", "AcceptCall", call_id=call_id)).status_code == 404

    accepted = await call("bob", "AcceptCall", call_id=call_id)
    assert accepted.result.value["status"] == "accepted"
    assert (await call("bob", "AcceptCall", call_id=call_id)).status_code == 409
    assert (await call("bob", "RejectCall", call_id=call_id)).status_code == 409

    ended = await call("alice", "EndCall", call_id=call_id)
    assert ended.result.value["status"] == "ended"
    assert ended.result.value["end_time"] is not None
    assert ended.result.value["duration_secs"] >= 0
    assert (await call("bob", "EndCall", call_id=call_id)).status_code == 409

    expected = [("initiated", "initiated"), ("accepted", "accepted"), ("ended", "ended")]
    assert call_actions(bob_calls) == expected
    assert call_actions(alice_calls) == expected
    # signalling stays off plain chat sessions
    assert drain_sink(bob_chat) == []


@pytest.mark.asyncio
async def test_rejected_call_and_history(call, make_session):
    started = await call("alice", "InitiateCall", receiver_id="bob")
    call_id = started.result.value["call_id"]

    rejected = await call("bob", "RejectCall", call_id=call_id)
    assert rejected.result.value["status"] == "rejected"
    assert (await call("alice", "EndCall", call_id=call_id)).status_code == 409

    again = await call("bob", "InitiateCall", receiver_id="alice")
    history = await call("alice", "GetCallHistory")
    assert [c["call_id"] for c in history.result.value] == [again.result.value["call_id"], call_id]
    assert (await call("carol", "GetCallHistory")).result.value == []


@pytest.mark.asyncio
async def test_group_call_reaches_members(call, make_session):
    created = await call("alice", "CreateGroup", name="team", members=["bob", "carol"])
    group_id = created.result.value["group_id"]
    carol_calls = make_session("carol", tag="calls")

    assert (await call("dave", "InitiateCall", group_id=group_id)).status_code == 403
    started = await call("alice", "InitiateCall", group_id=group_id)
    assert started.result.value["is_group"] is True
    assert started.result.value["participants"] == ["alice", "bob", "carol"]

    assert (await call("alice", "RejectCall", call_id=started.result.value["call_id"])).status_code == 403
    assert (await call("carol", "AcceptCall", call_id=started.result.value["call_id"])).ok
    assert call_actions(carol_calls) == [("initiated", "initiated"), ("accepted", "accepted")]
