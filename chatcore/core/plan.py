from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .proto import ChatMessage, Envelope


class AudienceKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    MESSAGE_UPDATE = "message-update"
    THREAD = "thread"
    PRESENCE = "presence"
    TYPING = "typing"
    LAST_MESSAGE = "last-message"
    CHAT_EVENT = "chat-event"
    NOTIFICATION = "notification"
    SCREEN_SHARE = "screen-share"
    CALL = "call"


@dataclass(frozen=True, slots=True)
class Audience:
    """Who a plan is for, expressed as ids only.

    ``group_id`` set means a group chat; otherwise ``sender_id`` and
    ``receiver_id`` are the two parties of a direct chat. ``user_ids`` adds
    explicit recipients on top of the chat participants.
    """

    kind: AudienceKind
    sender_id: str = ""
    receiver_id: str = ""
    group_id: str = ""
    subject_id: str = ""
    parent_id: str = ""
    user_ids: FrozenSet[str] = frozenset()

    @property
    def is_group(self) -> bool:
        return bool(self.group_id)

    def chat_key_for(self, user_id: str) -> str:
        if self.group_id:
            return self.group_id
        return self.receiver_id if user_id == self.sender_id else self.sender_id

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def for_message(cls, message: ChatMessage) -> "Audience":
        if message.is_group:
            return cls(AudienceKind.GROUP, sender_id=message.sender_id, group_id=message.group_id)
        return cls(AudienceKind.DIRECT, sender_id=message.sender_id, receiver_id=message.receiver_id)

    @classmethod
    def message_update(cls, message: ChatMessage) -> "Audience":
        return cls(
            AudienceKind.MESSAGE_UPDATE,
            sender_id=message.sender_id,
            receiver_id="" if message.is_group else message.receiver_id,
            group_id=message.group_id if message.is_group else "",
        )

    @classmethod
    def thread(cls, parent: ChatMessage) -> "Audience":
        return cls(
            AudienceKind.THREAD,
            sender_id=parent.sender_id,
            receiver_id="" if parent.is_group else parent.receiver_id,
            group_id=parent.group_id if parent.is_group else "",
            parent_id=parent.message_id,
        )

    @classmethod
    def last_message(cls, message: ChatMessage) -> "Audience":
        return cls(
            AudienceKind.LAST_MESSAGE,
            sender_id=message.sender_id,
            receiver_id="" if message.is_group else message.receiver_id,
            group_id=message.group_id if message.is_group else "",
        )

    @classmethod
    def presence(cls, subject_id: str) -> "Audience":
        return cls(AudienceKind.PRESENCE, subject_id=subject_id)

    @classmethod
    def typing(cls, sender_id: str, receiver_id: str = "", group_id: str = "") -> "Audience":
        return cls(AudienceKind.TYPING, sender_id=sender_id, receiver_id=receiver_id, group_id=group_id)

    @classmethod
    def chat_event(cls, group_id: str, extra_users: Iterable[str] = ()) -> "Audience":
        return cls(AudienceKind.CHAT_EVENT, group_id=group_id, user_ids=frozenset(extra_users))

    @classmethod
    def notification(cls, sender_id: str, user_ids: Iterable[str]) -> "Audience":
        return cls(AudienceKind.NOTIFICATION, sender_id=sender_id, user_ids=frozenset(user_ids))

    @classmethod
    def screen_share(cls, sender_id: str, receiver_id: str = "", group_id: str = "") -> "Audience":
        return cls(AudienceKind.SCREEN_SHARE, sender_id=sender_id, receiver_id=receiver_id, group_id=group_id)

    @classmethod
    def call(cls, caller_id: str, receiver_id: str = "", group_id: str = "") -> "Audience":
        return cls(AudienceKind.CALL, sender_id=caller_id, receiver_id=receiver_id, group_id=group_id)


@dataclass(frozen=True, slots=True)
class DeliveryPlan:
    envelope: Envelope
    audience: Audience
    exclude: FrozenSet[str] = frozenset()
    essential: bool = True
    coalesce: bool = False
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def build(
        cls,
        envelope: Envelope,
        audience: Audience,
        *,
        origin_session_id: Optional[str] = None,
        echo: bool = False,
        essential: bool = True,
        coalesce: bool = False,
    ) -> "DeliveryPlan":
        exclude = frozenset({origin_session_id}) if origin_session_id and not echo else frozenset()
        return cls(envelope=envelope, audience=audience, exclude=exclude, essential=essential, coalesce=coalesce)


__all__ = ["AudienceKind", "Audience", "DeliveryPlan"]
