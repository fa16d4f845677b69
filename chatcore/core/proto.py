from __future__ import annotations

import math
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ChatError, InvalidArgument


# ---------------------------------------------------------------------------
# Subscription tags & state kinds
# ---------------------------------------------------------------------------

TAG_CHAT = "chat"
TAG_PRESENCE = "presence"
TAG_TYPING = "typing"
TAG_LAST_MESSAGE = "last-message"
TAG_CHAT_EVENTS = "chat-events"
TAG_SCREEN_SHARE = "screen-share"
TAG_USER_STATUS = "user-status"
TAG_MESSAGE_UPDATES = "message-updates"
TAG_NOTIFICATIONS = "notifications"
TAG_CALLS = "calls"
THREAD_TAG_PREFIX = "thread:"

KNOWN_TAGS = frozenset(
    {
        TAG_CHAT,
        TAG_PRESENCE,
        TAG_TYPING,
        TAG_LAST_MESSAGE,
        TAG_CHAT_EVENTS,
        TAG_SCREEN_SHARE,
        TAG_USER_STATUS,
        TAG_MESSAGE_UPDATES,
        TAG_NOTIFICATIONS,
        TAG_CALLS,
    }
)
MESSAGE_TAGS = frozenset({TAG_CHAT, TAG_MESSAGE_UPDATES})
PRESENCE_TAGS = frozenset({TAG_PRESENCE, TAG_USER_STATUS})

KIND_HELLO = "hello"
KIND_SUBSCRIBE = "subscribe"
KIND_SUBSCRIBED = "subscribed"
KIND_TYPING = "typing"
KIND_PRESENCE = "presence"
KIND_HEARTBEAT = "heartbeat"
KIND_READ = "read"
KIND_DELIVERED = "delivered"
KIND_ACK = "ack"
KIND_SCHEDULED = "scheduled"
KIND_MESSAGE_UPDATE = "message.update"
KIND_THREAD_UPDATE = "thread.update"
KIND_RECEIPT = "receipt"
KIND_CHAT_EVENT = "chat.event"
KIND_NOTIFICATION = "notification"
KIND_SCREEN_SHARE = "screen_share"
KIND_CALL = "call"


def thread_tag(parent_id: str) -> str:
    return f"{THREAD_TAG_PREFIX}{parent_id}"


def is_valid_tag(tag: str) -> bool:
    if tag in KNOWN_TAGS:
        return True
    return tag.startswith(THREAD_TAG_PREFIX) and len(tag) > len(THREAD_TAG_PREFIX)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class Timestamp(BaseModel):
    """Seconds + nanos since the Unix epoch, UTC."""

    seconds: int = 0
    nanos: int = 0

    model_config = ConfigDict(frozen=True)

    @classmethod
    def now(cls) -> "Timestamp":
        return cls.from_ns(time.time_ns())

    @classmethod
    def from_ns(cls, value: int) -> "Timestamp":
        seconds, nanos = divmod(value, 1_000_000_000)
        return cls(seconds=seconds, nanos=nanos)

    @classmethod
    def from_seconds(cls, value: float) -> "Timestamp":
        seconds = math.floor(value)
        nanos = round((value - seconds) * 1_000_000_000)
        if nanos >= 1_000_000_000:
            seconds, nanos = seconds + 1, nanos - 1_000_000_000
        return cls(seconds=seconds, nanos=nanos)

    def to_seconds(self) -> float:
        return self.seconds + self.nanos / 1_000_000_000

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.to_seconds(), tz=timezone.utc)


# ---------------------------------------------------------------------------
# Chat message model
# ---------------------------------------------------------------------------

class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    LOCATION = "location"
    POLL = "poll"
    SYSTEM = "system"


MEDIA_TYPES = frozenset({MessageType.IMAGE, MessageType.VIDEO, MessageType.FILE})


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class ReactionKind(str, Enum):
    LIKE = "like"
    LOVE = "love"
    LAUGH = "laugh"
    WOW = "wow"
    SAD = "sad"
    ANGRY = "angry"


class FileMetadata(BaseModel):
    file_name: str = ""
    file_type: str = ""
    file_size: int = 0
    file_url: str = ""
    thumbnail_url: str = ""


class LocationData(BaseModel):
    latitude: float
    longitude: float
    address: str = ""
    place_name: str = ""


class PollOption(BaseModel):
    id: str = ""
    text: str
    voter_ids: List[str] = Field(default_factory=list)


class PollData(BaseModel):
    question: str
    options: List[PollOption] = Field(default_factory=list)
    allow_multiple_answers: bool = False


class Reaction(BaseModel):
    user_id: str
    kind: ReactionKind
    timestamp: Optional[Timestamp] = None


class CallType(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


class CallStatus(str, Enum):
    INITIATED = "initiated"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ENDED = "ended"


CALL_FINISHED = frozenset({CallStatus.REJECTED, CallStatus.ENDED})


class CallInfo(BaseModel):
    call_id: str
    caller_id: str
    receiver_id: str = ""
    group_id: str = ""
    call_type: CallType = CallType.VOICE
    status: CallStatus = CallStatus.INITIATED
    is_group: bool = False
    start_time: Optional[Timestamp] = None
    end_time: Optional[Timestamp] = None
    duration_secs: int = 0
    participants: List[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    message_id: str = ""
    sender_id: str = ""
    receiver_id: str = ""
    group_id: str = ""
    content: str = ""
    type: MessageType = MessageType.TEXT
    timestamp: Optional[Timestamp] = None
    is_group: bool = False
    status: MessageStatus = MessageStatus.SENT
    reply_to: str = ""
    thread_id: str = ""
    parent_message_id: str = ""
    thread_reply_count: int = 0
    is_pinned: bool = False
    is_scheduled: bool = False
    scheduled_at: Optional[Timestamp] = None
    edit_history: List[str] = Field(default_factory=list)
    edited_at: Optional[Timestamp] = None
    reactions: List[Reaction] = Field(default_factory=list)
    liked_by: List[str] = Field(default_factory=list)
    deleted: bool = False
    file_metadata: Optional[FileMetadata] = None
    location_data: Optional[LocationData] = None
    poll_data: Optional[PollData] = None
    original_message_id: str = ""
    forward_count: int = 0
    client_ref: str = ""

    def chat_key_for(self, user_id: str) -> str:
        """The conversation id as seen by ``user_id`` (group id, or the other party)."""

        if self.is_group:
            return self.group_id
        return self.receiver_id if user_id == self.sender_id else self.sender_id

    def tombstone(self) -> "ChatMessage":
        """The view of a soft-deleted message for everyone but the sender and admins."""

        return ChatMessage(
            message_id=self.message_id,
            sender_id=self.sender_id,
            receiver_id=self.receiver_id,
            group_id=self.group_id,
            is_group=self.is_group,
            type=self.type,
            timestamp=self.timestamp,
            thread_id=self.thread_id,
            parent_message_id=self.parent_message_id,
            deleted=True,
        )


# ---------------------------------------------------------------------------
# Stream envelope (tagged union)
# ---------------------------------------------------------------------------

class StateMessage(BaseModel):
    kind: str
    user_id: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[Timestamp] = None


class ErrorMessage(BaseModel):
    code: int
    message: str
    timestamp: Optional[Timestamp] = None


class Envelope(BaseModel):
    """Frame carried on the chat stream in both directions.

    Exactly one of ``message``, ``state`` or ``error`` is set. ``echo`` asks the
    server to deliver the broadcast copy back to the originating session.
    """

    message: Optional[ChatMessage] = None
    state: Optional[StateMessage] = None
    error: Optional[ErrorMessage] = None
    echo: bool = False

    @model_validator(mode="after")
    def _exactly_one_variant(self) -> "Envelope":
        present = sum(part is not None for part in (self.message, self.state, self.error))
        if present != 1:
            raise ValueError("envelope must carry exactly one of message, state, error")
        return self

    @property
    def variant(self) -> str:
        if self.message is not None:
            return "message"
        if self.state is not None:
            return "state"
        return "error"

    @classmethod
    def of_message(cls, message: ChatMessage) -> "Envelope":
        return cls(message=message)

    @classmethod
    def of_state(cls, kind: str, user_id: str = "", payload: Optional[Dict[str, Any]] = None) -> "Envelope":
        return cls(state=StateMessage(kind=kind, user_id=user_id, payload=payload or {}, timestamp=Timestamp.now()))

    @classmethod
    def of_error(cls, code: int, message: str) -> "Envelope":
        return cls(error=ErrorMessage(code=code, message=message, timestamp=Timestamp.now()))

    @classmethod
    def from_exception(cls, exc: ChatError) -> "Envelope":
        return cls.of_error(exc.status_code, exc.message)


# ---------------------------------------------------------------------------
# Subscription & unary call frames
# ---------------------------------------------------------------------------

class SubscribeRequest(BaseModel):
    tag: str
    peers: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    parent_id: str = ""
    device: str = ""

    @model_validator(mode="after")
    def _known_tag(self) -> "SubscribeRequest":
        if self.parent_id and self.tag == "thread":
            self.tag = thread_tag(self.parent_id)
        if not is_valid_tag(self.tag):
            raise ValueError(f"unknown subscription tag {self.tag!r}")
        return self


class RpcRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = None


class ErrorDetail(BaseModel):
    code: int
    message: str
    details: List[str] = Field(default_factory=list)
    timestamp: Optional[Timestamp] = None


class RpcResult(BaseModel):
    value: Optional[Any] = None
    error: Optional[ErrorDetail] = None


class UnaryResponse(BaseModel):
    """``{status_code, message, result: oneof{value, error}}`` reply envelope."""

    id: str = ""
    status_code: int
    message: str
    result: RpcResult = Field(default_factory=RpcResult)

    @property
    def ok(self) -> bool:
        return self.result.error is None and self.status_code < 400

    @classmethod
    def success(cls, value: Any, *, message: str = "OK", status_code: int = 200, request_id: str = "") -> "UnaryResponse":
        return cls(id=request_id, status_code=status_code, message=message, result=RpcResult(value=value))

    @classmethod
    def failure(cls, exc: ChatError, *, request_id: str = "") -> "UnaryResponse":
        detail = ErrorDetail(
            code=exc.status_code,
            message=exc.message,
            details=list(exc.details),
            timestamp=Timestamp.now(),
        )
        return cls(id=request_id, status_code=exc.status_code, message=exc.kind, result=RpcResult(error=detail))


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------

def dump_model(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", exclude_none=True)


def encode(model: BaseModel) -> bytes:
    """Binary frame for any wire model."""

    return orjson.dumps(dump_model(model))


def _load(raw: Union[bytes, str]) -> Any:
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise InvalidArgument("frame is not valid JSON") from exc


def decode_envelope(raw: Union[bytes, str]) -> Envelope:
    try:
        return Envelope.model_validate(_load(raw))
    except ValidationError as exc:
        raise InvalidArgument(f"invalid envelope: {_first_error(exc)}") from exc


def decode_subscribe(raw: Union[bytes, str]) -> SubscribeRequest:
    try:
        return SubscribeRequest.model_validate(_load(raw))
    except ValidationError as exc:
        raise InvalidArgument(f"invalid subscribe request: {_first_error(exc)}") from exc


def decode_rpc_request(raw: Union[bytes, str]) -> RpcRequest:
    try:
        return RpcRequest.model_validate(_load(raw))
    except ValidationError as exc:
        raise InvalidArgument(f"invalid request: {_first_error(exc)}") from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    where = ".".join(str(part) for part in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


__all__ = [
    "TAG_CHAT",
    "TAG_PRESENCE",
    "TAG_TYPING",
    "TAG_LAST_MESSAGE",
    "TAG_CHAT_EVENTS",
    "TAG_SCREEN_SHARE",
    "TAG_USER_STATUS",
    "TAG_MESSAGE_UPDATES",
    "TAG_NOTIFICATIONS",
    "TAG_CALLS",
    "KNOWN_TAGS",
    "MESSAGE_TAGS",
    "PRESENCE_TAGS",
    "thread_tag",
    "is_valid_tag",
    "Timestamp",
    "MessageType",
    "MessageStatus",
    "PresenceStatus",
    "ReactionKind",
    "FileMetadata",
    "LocationData",
    "PollOption",
    "PollData",
    "Reaction",
    "CallType",
    "CallStatus",
    "CallInfo",
    "CALL_FINISHED",
    "ChatMessage",
    "StateMessage",
    "ErrorMessage",
    "Envelope",
    "SubscribeRequest",
    "RpcRequest",
    "ErrorDetail",
    "RpcResult",
    "UnaryResponse",
    "dump_model",
    "encode",
    "decode_envelope",
    "decode_subscribe",
    "decode_rpc_request",
]
