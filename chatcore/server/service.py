from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chatcore.core.auth import TokenClaims, UnaryCaller
from chatcore.core.errors import ChatError, Internal, InvalidArgument, NotFound, PermissionDenied, Unavailable
from chatcore.core.pipeline import MAX_CONTENT_LENGTH, MessagePipeline
from chatcore.core.plan import Audience, DeliveryPlan
from chatcore.core.presence import PresenceRecord, PresenceTracker
from chatcore.core.proto import (
    KIND_CALL,
    KIND_CHAT_EVENT,
    KIND_SCREEN_SHARE,
    CallInfo,
    CallStatus,
    CallType,
    ChatMessage,
    Envelope,
    PresenceStatus,
    ReactionKind,
    RpcRequest,
    Timestamp,
    UnaryResponse,
    dump_model,
)
from chatcore.core.registry import SessionRegistry
from chatcore.core.store import ChatRepository, direct_chat_id

log = logging.getLogger("chatcore.server.service")

OK = 200
CREATED = 201


# ---------------------------------------------------------------------------
# Request parameters
# ---------------------------------------------------------------------------

class _Params(BaseModel):
    model_config = ConfigDict(extra="ignore")


class MessageRef(_Params):
    message_id: str = Field(min_length=1)


class EditMessageParams(MessageRef):
    content: str

    @field_validator("content")
    @classmethod
    def _content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        if len(value) > MAX_CONTENT_LENGTH:
            raise ValueError(f"content exceeds {MAX_CONTENT_LENGTH} characters")
        return value


class ReactionParams(MessageRef):
    kind: ReactionKind


class ChatRef(_Params):
    chat_id: str = Field(min_length=1)
    is_group: bool = False


class PageParams(_Params):
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class HistoryParams(ChatRef, PageParams):
    pass


class ThreadParams(PageParams):
    parent_id: str = Field(min_length=1)


class TypingParams(_Params):
    receiver_id: str = ""
    group_id: str = ""
    is_typing: bool = True


class PresenceParams(_Params):
    status: PresenceStatus
    custom_message: str = Field(default="", max_length=140)


class UsersParams(_Params):
    user_ids: List[str] = Field(min_length=1, max_length=100)


class CreateGroupParams(_Params):
    name: str = Field(min_length=1, max_length=100)
    members: List[str] = Field(default_factory=list)


class GroupRef(_Params):
    group_id: str = Field(min_length=1)


class ScheduleParams(_Params):
    message: ChatMessage


class ScreenShareParams(_Params):
    receiver_id: str = ""
    group_id: str = ""
    share_id: str = ""


class UserRef(_Params):
    user_id: str = Field(min_length=1)


class ForwardParams(MessageRef):
    receiver_ids: List[str] = Field(default_factory=list, max_length=50)
    group_ids: List[str] = Field(default_factory=list, max_length=50)


class UpdateGroupParams(GroupRef):
    name: str = Field(min_length=1, max_length=100)


class EmailRef(_Params):
    email: str = Field(min_length=3, max_length=254)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("not an email address")
        return value


class InitiateCallParams(_Params):
    receiver_id: str = ""
    group_id: str = ""
    call_type: CallType = CallType.VOICE


class CallRef(_Params):
    call_id: str = Field(min_length=1)


Handler = Callable[[TokenClaims, Dict[str, Any]], Awaitable[Tuple[int, Any]]]


def _parse(model, params: Dict[str, Any]):
    try:
        return model.model_validate(params)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidArgument(f"{where}: {first.get('msg')}" if where else "invalid parameters") from exc


def _record_dict(record: PresenceRecord) -> Dict[str, Any]:
    return {
        "user_id": record.user_id,
        "status": record.status.value,
        "custom_message": record.custom_message,
        "last_seen": dump_model(Timestamp.from_seconds(record.last_seen)),
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ChatService:
    """Unary calls that bypass the chat stream.

    Message changes (edit, delete, react, pin, like) are persisted and then
    handed to the router as message-update plans for the original audience.
    """

    def __init__(
        self,
        repository: ChatRepository,
        pipeline: MessagePipeline,
        presence: PresenceTracker,
        registry: SessionRegistry,
        *,
        default_timeout: float = 5.0,
        directory: Optional[UnaryCaller] = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.router = pipeline.router
        self.membership = pipeline.membership
        self.presence = presence
        self.registry = registry
        self.default_timeout = default_timeout
        self.directory = directory
        self._handlers: Dict[str, Handler] = {
            "EditMessage": self.edit_message,
            "DeleteMessage": self.delete_message,
            "AddReaction": self.add_reaction,
            "RemoveReaction": self.remove_reaction,
            "GetMessageReactions": self.get_message_reactions,
            "PinMessage": self.pin_message,
            "UnpinMessage": self.unpin_message,
            "GetPinnedMessages": self.get_pinned_messages,
            "LikeMessage": self.like_message,
            "GetChatHistory": self.get_chat_history,
            "GetThreadMessages": self.get_thread_messages,
            "GetLastMessages": self.get_last_messages,
            "MarkAsRead": self.mark_as_read,
            "SendDeliveryReceipt": self.send_delivery_receipt,
            "SendTypingIndicator": self.send_typing_indicator,
            "UpdatePresenceStatus": self.update_presence_status,
            "GetUserPresence": self.get_user_presence,
            "CreateGroup": self.create_group,
            "JoinGroup": self.join_group,
            "LeaveGroup": self.leave_group,
            "GetUsersInGroup": self.get_users_in_group,
            "ScheduleMessage": self.schedule_message,
            "CancelScheduledMessage": self.cancel_scheduled_message,
            "GetScheduledMessages": self.get_scheduled_messages,
            "StartScreenShare": self.start_screen_share,
            "StopScreenShare": self.stop_screen_share,
            "ForwardMessage": self.forward_message,
            "UpdateGroup": self.update_group,
            "GetAllGroupsByUserEmail": self.get_all_groups_by_user_email,
            "InitiateCall": self.initiate_call,
            "AcceptCall": self.accept_call,
            "RejectCall": self.reject_call,
            "EndCall": self.end_call,
            "GetCallHistory": self.get_call_history,
            "ForceDisconnect": self.force_disconnect,
        }

    @property
    def methods(self) -> List[str]:
        return sorted(self._handlers)

    async def handle(self, claims: TokenClaims, request: RpcRequest) -> UnaryResponse:
        handler = self._handlers.get(request.method)
        try:
            if handler is None:
                raise NotFound(f"unknown method {request.method}")
            timeout = request.timeout_ms / 1000 if request.timeout_ms else self.default_timeout
            try:
                status, value = await asyncio.wait_for(handler(claims, request.params), timeout)
            except asyncio.TimeoutError as exc:
                raise Unavailable(f"{request.method} exceeded its {timeout:.3f}s deadline") from exc
        except ChatError as exc:
            log.debug("%s by %s failed: %s %s", request.method, claims.user_id, exc.kind, exc.message)
            return UnaryResponse.failure(exc, request_id=request.id)
        except (sqlite3.Error, OSError) as exc:
            log.warning("%s by %s hit a repository failure: %r", request.method, claims.user_id, exc)
            return UnaryResponse.failure(Unavailable("repository unavailable"), request_id=request.id)
        except Exception:
            err = Internal()
            log.exception("%s by %s crashed (correlation_id=%s)", request.method, claims.user_id, err.correlation_id)
            return UnaryResponse.failure(err, request_id=request.id)
        message = "Created" if status == CREATED else "OK"
        return UnaryResponse.success(value, status_code=status, message=message, request_id=request.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _visible_message(self, claims: TokenClaims, message_id: str) -> ChatMessage:
        message = await self.repository.get_message(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        if claims.is_admin:
            return message
        if claims.user_id not in await self.router.participants_of(message):
            # not leaking existence to outsiders
            raise NotFound(f"message {message_id} not found")
        return message

    async def _live_message(self, claims: TokenClaims, message_id: str) -> ChatMessage:
        message = await self._visible_message(claims, message_id)
        if message.deleted:
            raise NotFound(f"message {message_id} was deleted")
        return message

    def _view(self, claims: TokenClaims, message: ChatMessage) -> Dict[str, Any]:
        if message.deleted and message.sender_id != claims.user_id and not claims.is_admin:
            message = message.tombstone()
        return dump_model(message)

    async def _require_member(self, group_id: str, user_id: str) -> None:
        if not await self.membership.is_member(group_id, user_id):
            raise PermissionDenied(f"not a member of group {group_id}")

    async def _chat_key(self, claims: TokenClaims, chat: ChatRef) -> str:
        if chat.is_group:
            await self._require_member(chat.chat_id, claims.user_id)
            return chat.chat_id
        return direct_chat_id(claims.user_id, chat.chat_id)

    # ------------------------------------------------------------------
    # Message updates
    # ------------------------------------------------------------------

    async def edit_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(EditMessageParams, params)
        message = await self._live_message(claims, req.message_id)
        if message.sender_id != claims.user_id:
            raise PermissionDenied("only the sender can edit a message")
        updated = await self.repository.update_message_content(req.message_id, req.content)
        await self.pipeline.broadcast_update(updated, "edited", claims.user_id)
        return OK, self._view(claims, updated)

    async def delete_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        message = await self._visible_message(claims, req.message_id)
        if message.sender_id != claims.user_id and not claims.is_admin:
            raise PermissionDenied("only the sender or an administrator can delete a message")
        deleted = await self.repository.soft_delete_message(req.message_id)
        await self.pipeline.broadcast_update(deleted, "deleted", claims.user_id)
        return OK, {"message_id": deleted.message_id, "deleted": True}

    async def add_reaction(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ReactionParams, params)
        await self._live_message(claims, req.message_id)
        updated = await self.repository.add_reaction(req.message_id, claims.user_id, req.kind)
        await self.pipeline.broadcast_update(
            updated, "reaction_added", claims.user_id, {"user_id": claims.user_id, "kind": req.kind.value}
        )
        return CREATED, [dump_model(r) for r in updated.reactions]

    async def remove_reaction(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ReactionParams, params)
        await self._live_message(claims, req.message_id)
        updated = await self.repository.remove_reaction(req.message_id, claims.user_id, req.kind)
        await self.pipeline.broadcast_update(
            updated, "reaction_removed", claims.user_id, {"user_id": claims.user_id, "kind": req.kind.value}
        )
        return OK, [dump_model(r) for r in updated.reactions]

    async def get_message_reactions(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        await self._visible_message(claims, req.message_id)
        reactions = await self.repository.get_reactions(req.message_id)
        return OK, [dump_model(r) for r in reactions]

    async def pin_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        await self._live_message(claims, req.message_id)
        updated = await self.repository.pin_message(req.message_id, claims.user_id)
        await self.pipeline.broadcast_update(updated, "pinned", claims.user_id)
        return OK, self._view(claims, updated)

    async def unpin_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        await self._visible_message(claims, req.message_id)
        updated = await self.repository.unpin_message(req.message_id)
        await self.pipeline.broadcast_update(updated, "unpinned", claims.user_id)
        return OK, self._view(claims, updated)

    async def get_pinned_messages(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        chat = _parse(ChatRef, params)
        key = await self._chat_key(claims, chat)
        pinned = await self.repository.get_pinned_messages(key)
        return OK, [self._view(claims, m) for m in pinned]

    async def like_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        await self._live_message(claims, req.message_id)
        liked, updated = await self.repository.toggle_like(req.message_id, claims.user_id)
        await self.pipeline.broadcast_update(updated, "liked" if liked else "unliked", claims.user_id)
        return OK, {"message_id": updated.message_id, "liked": liked, "like_count": len(updated.liked_by)}

    async def forward_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ForwardParams, params)
        receivers = list(dict.fromkeys(r for r in req.receiver_ids if r))
        groups = list(dict.fromkeys(g for g in req.group_ids if g))
        if not receivers and not groups:
            raise InvalidArgument("at least one receiver_id or group_id is required")
        original = await self._live_message(claims, req.message_id)
        forwarded = await self.pipeline.forward(claims.user_id, original, receivers, groups)
        return CREATED, [dump_model(m) for m in forwarded]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_chat_history(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(HistoryParams, params)
        if req.is_group:
            await self._require_member(req.chat_id, claims.user_id)
        messages = await self.repository.get_chat_history(
            claims.user_id, req.chat_id, req.is_group, limit=req.limit, offset=req.offset
        )
        return OK, [self._view(claims, m) for m in messages]

    async def get_thread_messages(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ThreadParams, params)
        await self._visible_message(claims, req.parent_id)
        replies = await self.repository.get_thread_messages(req.parent_id, limit=req.limit, offset=req.offset)
        return OK, [self._view(claims, m) for m in replies]

    async def get_last_messages(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(PageParams, params)
        latest = await self.repository.get_last_messages(claims.user_id, limit=req.limit)
        return OK, [self._view(claims, m) for m in latest]

    # ------------------------------------------------------------------
    # Receipts, typing, presence
    # ------------------------------------------------------------------

    async def mark_as_read(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ChatRef, params)
        updated = await self.pipeline.mark_read(claims.user_id, req.chat_id, req.is_group)
        return OK, {"chat_id": req.chat_id, "message_ids": updated}

    async def send_delivery_receipt(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        message = await self.pipeline.mark_delivered(claims.user_id, req.message_id)
        return OK, {"message_id": message.message_id, "status": message.status.value}

    async def send_typing_indicator(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(TypingParams, params)
        await self.pipeline.send_typing(
            claims.user_id, receiver_id=req.receiver_id, group_id=req.group_id, is_typing=req.is_typing
        )
        return OK, {"is_typing": req.is_typing}

    async def update_presence_status(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(PresenceParams, params)
        record = await self.pipeline.update_presence(claims.user_id, req.status, req.custom_message)
        return OK, _record_dict(record)

    async def get_user_presence(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(UsersParams, params)
        snapshot = self.presence.snapshot()
        result = []
        for user_id in req.user_ids:
            record = snapshot.get(user_id)
            if record is None:
                record = await self.repository.get_presence(user_id) or PresenceRecord(user_id=user_id)
                # only live sessions make a user online
                record = PresenceRecord(
                    user_id=user_id,
                    status=PresenceStatus.OFFLINE,
                    custom_message=record.custom_message,
                    last_seen=record.last_seen,
                )
            result.append(_record_dict(record))
        return OK, result

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _chat_event(self, group_id: str, actor_id: str, event: str, extra_users=(), **payload: Any) -> None:
        envelope = Envelope.of_state(KIND_CHAT_EVENT, actor_id, {"event": event, "group_id": group_id, **payload})
        await self.router.execute(DeliveryPlan.build(envelope, Audience.chat_event(group_id, extra_users)))

    async def create_group(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(CreateGroupParams, params)
        group = await self.repository.create_group(req.name, claims.user_id, req.members)
        await self._chat_event(group["group_id"], claims.user_id, "group.created", name=group["name"])
        return CREATED, group

    async def join_group(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(GroupRef, params)
        version = await self.repository.add_group_member(req.group_id, claims.user_id)
        self.membership.invalidate(req.group_id)
        await self._chat_event(req.group_id, claims.user_id, "member.joined", user_id=claims.user_id)
        return OK, {"group_id": req.group_id, "version": version}

    async def leave_group(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(GroupRef, params)
        version = await self.repository.remove_group_member(req.group_id, claims.user_id)
        self.membership.invalidate(req.group_id)
        await self._chat_event(
            req.group_id, claims.user_id, "member.left", extra_users=(claims.user_id,), user_id=claims.user_id
        )
        return OK, {"group_id": req.group_id, "version": version}

    async def get_users_in_group(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(GroupRef, params)
        if not claims.is_admin:
            await self._require_member(req.group_id, claims.user_id)
        return OK, await self.repository.get_users_in_group(req.group_id)

    async def update_group(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(UpdateGroupParams, params)
        if await self.repository.get_group(req.group_id) is None:
            raise NotFound(f"group {req.group_id} not found")
        if not claims.is_admin:
            role = await self.repository.get_member_role(req.group_id, claims.user_id)
            if role is None:
                raise PermissionDenied(f"not a member of group {req.group_id}")
            if role != "admin":
                raise PermissionDenied("only group admins can update a group")
        version = await self.repository.update_group(req.group_id, req.name)
        self.membership.invalidate(req.group_id)
        await self._chat_event(req.group_id, claims.user_id, "group.updated", name=req.name, version=version)
        return OK, await self.repository.get_group(req.group_id)

    async def _user_for_email(self, claims: TokenClaims, email: str) -> str:
        if email.lower() == claims.email.lower():
            return claims.user_id
        if not claims.is_admin:
            raise PermissionDenied("only administrators can list another user's groups")
        if self.directory is None:
            raise NotFound(f"user {email} not found")
        try:
            user = await self.directory.call("GetUserByEmail", {"email": email})
        except NotFound:
            raise NotFound(f"user {email} not found") from None
        user_id = (user.get("user_id") or user.get("id")) if isinstance(user, dict) else None
        if not user_id:
            raise NotFound(f"user {email} not found")
        return str(user_id)

    async def get_all_groups_by_user_email(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(EmailRef, params)
        user_id = await self._user_for_email(claims, req.email)
        return OK, await self.repository.get_groups_for_user(user_id)

    # ------------------------------------------------------------------
    # Scheduled messages
    # ------------------------------------------------------------------

    async def schedule_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ScheduleParams, params)
        stored = await self.pipeline.schedule(claims.user_id, req.message)
        return CREATED, dump_model(stored)

    async def cancel_scheduled_message(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(MessageRef, params)
        await self.repository.cancel_scheduled_message(req.message_id, claims.user_id)
        return OK, {"message_id": req.message_id, "cancelled": True}

    async def get_scheduled_messages(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        scheduled = await self.repository.get_scheduled_messages(claims.user_id)
        return OK, [dump_model(m) for m in scheduled]

    # ------------------------------------------------------------------
    # Screen share signalling
    # ------------------------------------------------------------------

    async def _screen_share(self, claims: TokenClaims, req: ScreenShareParams, action: str) -> str:
        if bool(req.receiver_id) == bool(req.group_id):
            raise InvalidArgument("exactly one of receiver_id or group_id is required")
        if req.group_id:
            await self._require_member(req.group_id, claims.user_id)
        share_id = req.share_id or uuid.uuid4().hex
        envelope = Envelope.of_state(
            KIND_SCREEN_SHARE,
            claims.user_id,
            {"action": action, "share_id": share_id, "receiver_id": req.receiver_id, "group_id": req.group_id},
        )
        audience = Audience.screen_share(claims.user_id, receiver_id=req.receiver_id, group_id=req.group_id)
        await self.router.execute(DeliveryPlan.build(envelope, audience))
        return share_id

    async def start_screen_share(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ScreenShareParams, params)
        share_id = await self._screen_share(claims, req, "started")
        return CREATED, {"share_id": share_id}

    async def stop_screen_share(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(ScreenShareParams, params)
        if not req.share_id:
            raise InvalidArgument("share_id is required")
        await self._screen_share(claims, req, "stopped")
        return OK, {"share_id": req.share_id}

    # ------------------------------------------------------------------
    # Call signalling
    # ------------------------------------------------------------------

    async def _call_participants(self, call: CallInfo) -> List[str]:
        if call.is_group:
            return sorted(await self.membership.members(call.group_id))
        return [call.caller_id, call.receiver_id]

    async def _signal_call(self, call: CallInfo, actor_id: str, action: str) -> None:
        envelope = Envelope.of_state(KIND_CALL, actor_id, {"action": action, "call": dump_model(call)})
        audience = Audience.call(call.caller_id, receiver_id=call.receiver_id, group_id=call.group_id)
        await self.router.execute(DeliveryPlan.build(envelope, audience))

    async def _visible_call(self, claims: TokenClaims, call_id: str) -> CallInfo:
        call = await self.repository.get_call(call_id)
        if call is None:
            raise NotFound(f"call {call_id} not found")
        if claims.user_id not in await self._call_participants(call):
            raise NotFound(f"call {call_id} not found")
        return call

    async def _answer_call(self, claims: TokenClaims, params: Dict[str, Any], status: CallStatus) -> CallInfo:
        req = _parse(CallRef, params)
        call = await self._visible_call(claims, req.call_id)
        if call.caller_id == claims.user_id and (status is CallStatus.ACCEPTED or call.is_group):
            raise PermissionDenied("the caller cannot answer their own call")
        updated = await self.repository.transition_call(req.call_id, status)
        updated.participants = await self._call_participants(updated)
        await self._signal_call(updated, claims.user_id, status.value)
        return updated

    async def initiate_call(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(InitiateCallParams, params)
        if bool(req.receiver_id) == bool(req.group_id):
            raise InvalidArgument("exactly one of receiver_id or group_id is required")
        if req.receiver_id == claims.user_id:
            raise InvalidArgument("cannot call yourself")
        if req.group_id:
            await self._require_member(req.group_id, claims.user_id)
        call = CallInfo(
            call_id=str(uuid.uuid4()),
            caller_id=claims.user_id,
            receiver_id=req.receiver_id,
            group_id=req.group_id,
            call_type=req.call_type,
            is_group=bool(req.group_id),
        )
        call.participants = await self._call_participants(call)
        stored = await self.repository.save_call(call)
        await self._signal_call(stored, claims.user_id, "initiated")
        log.info("%s started %s call %s", claims.user_id, stored.call_type.value, stored.call_id)
        return CREATED, dump_model(stored)

    async def accept_call(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        return OK, dump_model(await self._answer_call(claims, params, CallStatus.ACCEPTED))

    async def reject_call(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        return OK, dump_model(await self._answer_call(claims, params, CallStatus.REJECTED))

    async def end_call(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(CallRef, params)
        await self._visible_call(claims, req.call_id)
        ended = await self.repository.transition_call(req.call_id, CallStatus.ENDED)
        ended.participants = await self._call_participants(ended)
        await self._signal_call(ended, claims.user_id, "ended")
        return OK, dump_model(ended)

    async def get_call_history(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        req = _parse(PageParams, params)
        calls = await self.repository.get_call_history(claims.user_id, limit=req.limit, offset=req.offset)
        return OK, [dump_model(c) for c in calls]

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def force_disconnect(self, claims: TokenClaims, params: Dict[str, Any]) -> Tuple[int, Any]:
        if not claims.is_admin:
            raise PermissionDenied("ForceDisconnect requires an administrator")
        req = _parse(UserRef, params)
        closed = 0
        for session in self.registry.sessions_for_user(req.user_id):
            if self.registry.deregister(session.session_id, "ForceDisconnect") is not None:
                closed += 1
        log.info("%s force-disconnected %s (%d sessions)", claims.user_id, req.user_id, closed)
        return OK, {"user_id": req.user_id, "disconnected": closed}


__all__ = ["ChatService"]
