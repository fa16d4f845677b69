from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple

from .errors import ChatError, Internal, InvalidArgument, NotFound, PermissionDenied, Unavailable
from .plan import Audience, AudienceKind, DeliveryPlan
from .presence import PresenceRecord, PresenceTracker
from .proto import (
    KIND_ACK,
    KIND_DELIVERED,
    KIND_HEARTBEAT,
    KIND_HELLO,
    KIND_MESSAGE_UPDATE,
    KIND_NOTIFICATION,
    KIND_PRESENCE,
    KIND_READ,
    KIND_RECEIPT,
    KIND_SCHEDULED,
    KIND_SUBSCRIBE,
    KIND_SUBSCRIBED,
    KIND_THREAD_UPDATE,
    KIND_TYPING,
    MEDIA_TYPES,
    ChatMessage,
    Envelope,
    MessageStatus,
    MessageType,
    PresenceStatus,
    StateMessage,
    Timestamp,
    dump_model,
)
from .registry import MembershipFilter, Session
from .router import FanOutRouter, MembershipCache
from .store import ChatRepository, chat_id_for

log = logging.getLogger("chatcore.core.pipeline")

MAX_CONTENT_LENGTH = 4000
MAX_POLL_QUESTION = 500
MIN_POLL_OPTIONS = 2
MAX_POLL_OPTIONS = 10
MAX_POLL_OPTION_LENGTH = 100
PREVIEW_LENGTH = 80


# ---------------------------------------------------------------------------
# Static validation
# ---------------------------------------------------------------------------

def validate_message(message: ChatMessage, now: Optional[float] = None) -> None:
    """Checks that need no I/O. Raises InvalidArgument on the first problem."""

    has_receiver = bool(message.receiver_id)
    has_group = bool(message.group_id)
    if has_receiver == has_group:
        raise InvalidArgument("exactly one of receiver_id or group_id is required")
    if message.is_group != has_group:
        raise InvalidArgument("is_group does not match the addressed chat")

    if message.type is MessageType.SYSTEM:
        raise InvalidArgument("system messages are server-generated")

    if len(message.content) > MAX_CONTENT_LENGTH:
        raise InvalidArgument(f"content exceeds {MAX_CONTENT_LENGTH} characters")

    if message.type is MessageType.TEXT and not message.content.strip():
        raise InvalidArgument("text messages need content")

    if message.type in MEDIA_TYPES:
        meta = message.file_metadata
        if meta is None or not meta.file_url:
            raise InvalidArgument(f"{message.type.value} messages need a file reference")

    if message.type is MessageType.LOCATION:
        loc = message.location_data
        if loc is None:
            raise InvalidArgument("location messages need location data")
        if not (-90.0 <= loc.latitude <= 90.0 and -180.0 <= loc.longitude <= 180.0):
            raise InvalidArgument("location coordinates out of range")

    if message.type is MessageType.POLL:
        poll = message.poll_data
        if poll is None:
            raise InvalidArgument("poll messages need poll data")
        if not 1 <= len(poll.question.strip()) <= MAX_POLL_QUESTION:
            raise InvalidArgument(f"poll question must be 1-{MAX_POLL_QUESTION} characters")
        if not MIN_POLL_OPTIONS <= len(poll.options) <= MAX_POLL_OPTIONS:
            raise InvalidArgument(f"polls need {MIN_POLL_OPTIONS}-{MAX_POLL_OPTIONS} options")
        for option in poll.options:
            if not 1 <= len(option.text.strip()) <= MAX_POLL_OPTION_LENGTH:
                raise InvalidArgument(f"poll options must be 1-{MAX_POLL_OPTION_LENGTH} characters")

    if message.is_scheduled or message.scheduled_at is not None:
        current = time.time() if now is None else now
        if message.scheduled_at is None or message.scheduled_at.to_seconds() <= current:
            raise InvalidArgument("scheduled_at must be in the future")


def _preview(message: ChatMessage) -> str:
    if message.type is MessageType.TEXT:
        return message.content[:PREVIEW_LENGTH]
    return f"[{message.type.value}]"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class MessagePipeline:
    """validate -> normalise -> persist -> plan, for frames from one session at a time.

    Replies meant for the originating session only (acks, errors) are returned
    to the caller; everything else leaves through the router.
    """

    def __init__(
        self,
        repository: ChatRepository,
        router: FanOutRouter,
        presence: PresenceTracker,
        membership: Optional[MembershipCache] = None,
        *,
        persist_timeout: float = 5.0,
        clock=time.time,
    ) -> None:
        self.repository = repository
        self.router = router
        self.presence = presence
        self.membership = membership or router.membership
        self.persist_timeout = persist_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def submit(self, session: Session, envelope: Envelope) -> List[Envelope]:
        session.touch()
        try:
            if envelope.message is not None:
                return await self.accept_message(session, envelope.message, echo=envelope.echo or session.echo)
            if envelope.state is not None:
                return await self.accept_state(session, envelope.state)
            raise InvalidArgument("clients may not send error envelopes")
        except ChatError as exc:
            log.debug("Rejected frame from session %s: %s %s", session.session_id, exc.kind, exc.message)
            return [Envelope.from_exception(exc)]
        except Exception:
            err = Internal()
            log.exception("Unhandled error on session %s (correlation_id=%s)", session.session_id, err.correlation_id)
            return [Envelope.from_exception(err)]

    async def _persist(self, coro):
        try:
            return await asyncio.wait_for(coro, self.persist_timeout)
        except asyncio.TimeoutError as exc:
            raise Unavailable("repository call timed out") from exc
        except (sqlite3.Error, OSError) as exc:
            log.warning("Repository failure: %r", exc)
            raise Unavailable("repository unavailable") from exc

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def prepare(self, user_id: str, incoming: ChatMessage) -> Tuple[ChatMessage, Optional[ChatMessage]]:
        """Normalise and check a client message; returns it with its thread parent, if any."""

        message = self._normalise(user_id, incoming)
        validate_message(message, self._clock())

        if message.is_group and not await self.membership.is_member(message.group_id, message.sender_id):
            raise PermissionDenied(f"{message.sender_id} is not a member of group {message.group_id}")

        parent = await self._check_references(message)
        return message, parent

    async def schedule(self, user_id: str, incoming: ChatMessage) -> ChatMessage:
        """Store a message for later dispatch. Nothing is fanned out."""

        if incoming.scheduled_at is None:
            raise InvalidArgument("scheduled_at is required")
        message, _ = await self.prepare(user_id, incoming)
        stored = await self._persist(self.repository.schedule_message(message))
        log.info("Scheduled message %s from %s", stored.message_id, user_id)
        return stored

    async def accept_message(self, session: Session, incoming: ChatMessage, echo: bool = False) -> List[Envelope]:
        if incoming.is_scheduled or incoming.scheduled_at is not None:
            stored = await self.schedule(session.user_id, incoming)
            return [
                Envelope.of_state(
                    KIND_SCHEDULED,
                    session.user_id,
                    {
                        "message_id": stored.message_id,
                        "client_ref": stored.client_ref,
                        "scheduled_at": dump_model(stored.scheduled_at),
                    },
                )
            ]

        message, parent = await self.prepare(session.user_id, incoming)
        saved = await self._persist(self.repository.save_message(message))
        log.debug("Accepted message %s from session %s", saved.message_id, session.session_id)
        await self.fan_out(saved, parent, origin_session_id=session.session_id, echo=echo)
        return [
            Envelope.of_state(
                KIND_ACK,
                session.user_id,
                {"message_id": saved.message_id, "client_ref": saved.client_ref, "timestamp": dump_model(saved.timestamp)},
            )
        ]

    async def fan_out(
        self,
        saved: ChatMessage,
        parent: Optional[ChatMessage] = None,
        *,
        origin_session_id: Optional[str] = None,
        echo: bool = False,
    ) -> None:
        """Plan a stored message for its audience.

        The message is already durable here, so routing failures are logged
        and never turned into an error for the sender.
        """

        try:
            await self._plan_message(saved, parent, origin_session_id, echo)
        except Exception:
            log.exception("Fan-out of stored message %s failed", saved.message_id)

    async def _plan_message(
        self, saved: ChatMessage, parent: Optional[ChatMessage], origin: Optional[str], echo: bool
    ) -> None:
        if parent is not None:
            await self.router.execute(
                DeliveryPlan.build(Envelope.of_message(saved), Audience.thread(parent), origin_session_id=origin, echo=echo)
            )
            await self.router.execute(
                DeliveryPlan.build(
                    Envelope.of_state(
                        KIND_THREAD_UPDATE,
                        saved.sender_id,
                        {"parent_id": parent.message_id, "thread_reply_count": parent.thread_reply_count + 1},
                    ),
                    Audience.message_update(parent),
                )
            )
        else:
            await self.router.execute(
                DeliveryPlan.build(
                    Envelope.of_message(saved), Audience.for_message(saved), origin_session_id=origin, echo=echo
                )
            )
            await self.router.execute(
                DeliveryPlan.build(
                    Envelope.of_message(saved), Audience.last_message(saved), essential=False, coalesce=True
                )
            )

        recipients = await self.router.participants_of(saved)
        await self.router.execute(
            DeliveryPlan.build(
                Envelope.of_state(
                    KIND_NOTIFICATION,
                    saved.sender_id,
                    {
                        "message_id": saved.message_id,
                        "chat_id": chat_id_for(saved),
                        "sender_id": saved.sender_id,
                        "preview": _preview(saved),
                    },
                ),
                Audience.notification(saved.sender_id, recipients),
                essential=False,
            )
        )

    async def forward(
        self, user_id: str, original: ChatMessage, receiver_ids: List[str], group_ids: List[str]
    ) -> List[ChatMessage]:
        """Copy ``original`` into each target chat as a new message from ``user_id``.

        Every target is checked before anything is stored.
        """

        prepared = []
        for receiver_id, group_id in [(r, "") for r in receiver_ids] + [("", g) for g in group_ids]:
            copy = ChatMessage(
                receiver_id=receiver_id,
                group_id=group_id,
                is_group=bool(group_id),
                content=original.content,
                type=original.type,
                file_metadata=original.file_metadata,
                location_data=original.location_data,
                poll_data=original.poll_data,
            )
            message, _ = await self.prepare(user_id, copy)
            message.original_message_id = original.message_id
            message.forward_count = original.forward_count + 1
            prepared.append(message)

        forwarded = []
        for message in prepared:
            saved = await self._persist(self.repository.save_message(message))
            await self.fan_out(saved)
            forwarded.append(saved)
        log.info("%s forwarded %s to %d chats", user_id, original.message_id, len(forwarded))
        return forwarded

    def _normalise(self, user_id: str, incoming: ChatMessage) -> ChatMessage:
        if incoming.sender_id and incoming.sender_id != user_id:
            raise PermissionDenied("sender_id does not match the authenticated user")
        return incoming.model_copy(
            update={
                "sender_id": user_id,
                "timestamp": Timestamp.now(),
                "status": MessageStatus.SENT,
                "is_pinned": False,
                "deleted": False,
                "edit_history": [],
                "edited_at": None,
                "reactions": [],
                "liked_by": [],
                "thread_reply_count": 0,
                "original_message_id": "",
                "forward_count": 0,
                "is_scheduled": incoming.is_scheduled or incoming.scheduled_at is not None,
            },
            deep=True,
        )

    async def _check_references(self, message: ChatMessage) -> Optional[ChatMessage]:
        chat_id = chat_id_for(message)
        if message.reply_to:
            target = await self._persist(self.repository.get_message(message.reply_to))
            if target is None or target.deleted or chat_id_for(target) != chat_id:
                raise InvalidArgument(f"reply_to {message.reply_to} does not reference a visible message")

        if not message.parent_message_id:
            return None
        parent = await self._persist(self.repository.get_message(message.parent_message_id))
        if parent is None or parent.deleted or chat_id_for(parent) != chat_id:
            raise InvalidArgument(f"parent {message.parent_message_id} does not reference a visible message")
        if parent.parent_message_id:
            raise InvalidArgument("threads cannot be nested")
        if not message.thread_id:
            message.thread_id = parent.message_id
        return parent

    # ------------------------------------------------------------------
    # State frames
    # ------------------------------------------------------------------

    async def accept_state(self, session: Session, state: StateMessage) -> List[Envelope]:
        kind = state.kind
        payload = state.payload
        if state.user_id and state.user_id != session.user_id:
            raise PermissionDenied("state user_id does not match the authenticated user")

        if kind in (KIND_HELLO, KIND_HEARTBEAT):
            return []

        if kind == KIND_SUBSCRIBE:
            return [await self.update_filter(session, payload.get("peers") or [], payload.get("groups") or [])]

        if kind == KIND_TYPING:
            await self.send_typing(
                session.user_id,
                receiver_id=str(payload.get("receiver_id") or ""),
                group_id=str(payload.get("group_id") or ""),
                is_typing=bool(payload.get("is_typing", True)),
                origin_session_id=session.session_id,
            )
            return []

        if kind == KIND_PRESENCE:
            try:
                status = PresenceStatus(payload.get("status", ""))
            except ValueError as exc:
                raise InvalidArgument(f"unknown presence status {payload.get('status')!r}") from exc
            await self.update_presence(session.user_id, status, str(payload.get("custom_message") or ""))
            return []

        if kind == KIND_READ:
            await self.mark_read(
                session.user_id, str(payload.get("chat_id") or ""), bool(payload.get("is_group", False))
            )
            return []

        if kind == KIND_DELIVERED:
            await self.mark_delivered(session.user_id, str(payload.get("message_id") or ""))
            return []

        raise InvalidArgument(f"unknown state kind {kind!r}")

    async def update_filter(self, session: Session, peers: List[str], groups: List[str]) -> Envelope:
        for group_id in groups:
            if not await self.membership.is_member(group_id, session.user_id):
                raise PermissionDenied(f"not a member of group {group_id}")
        session.filter = MembershipFilter.of(peers, groups)
        return Envelope.of_state(
            KIND_SUBSCRIBED,
            session.user_id,
            {"tag": session.tag, "peers": sorted(session.filter.peers), "groups": sorted(session.filter.groups)},
        )

    async def send_typing(
        self,
        user_id: str,
        *,
        receiver_id: str = "",
        group_id: str = "",
        is_typing: bool = True,
        origin_session_id: Optional[str] = None,
    ) -> None:
        if bool(receiver_id) == bool(group_id):
            raise InvalidArgument("typing needs exactly one of receiver_id or group_id")
        if group_id and not await self.membership.is_member(group_id, user_id):
            raise PermissionDenied(f"not a member of group {group_id}")
        envelope = Envelope.of_state(
            KIND_TYPING,
            user_id,
            {"receiver_id": receiver_id, "group_id": group_id, "is_typing": is_typing},
        )
        await self.router.execute(
            DeliveryPlan.build(
                envelope,
                Audience.typing(user_id, receiver_id=receiver_id, group_id=group_id),
                origin_session_id=origin_session_id,
                essential=False,
            )
        )

    async def update_presence(self, user_id: str, status: PresenceStatus, custom_message: str = "") -> PresenceRecord:
        record = self.presence.set_status(user_id, status, custom_message)
        if record is not None:
            await self.publish_presence(record)
            return record
        return self.presence.get(user_id)

    async def publish_presence(self, record: PresenceRecord) -> None:
        """Persist a presence transition and fan it out to presence subscribers."""

        try:
            await self._persist(self.repository.save_presence(record))
        except Unavailable:
            log.warning("Presence for %s not persisted; broadcasting anyway", record.user_id)
        envelope = Envelope.of_state(
            KIND_PRESENCE,
            record.user_id,
            {
                "status": record.status.value,
                "custom_message": record.custom_message,
                "last_seen": dump_model(Timestamp.from_seconds(record.last_seen)),
            },
        )
        await self.router.execute(DeliveryPlan.build(envelope, Audience.presence(record.user_id), essential=False))

    async def mark_read(self, user_id: str, chat_id: str, is_group: bool) -> List[str]:
        if not chat_id:
            raise InvalidArgument("chat_id is required")
        if is_group and not await self.membership.is_member(chat_id, user_id):
            raise PermissionDenied(f"not a member of group {chat_id}")
        updated = await self._persist(self.repository.mark_as_read(user_id, chat_id, is_group))
        audience = Audience(
            AudienceKind.MESSAGE_UPDATE,
            sender_id=user_id,
            receiver_id="" if is_group else chat_id,
            group_id=chat_id if is_group else "",
        )
        envelope = Envelope.of_state(
            KIND_RECEIPT,
            user_id,
            {"chat_id": chat_id, "is_group": is_group, "status": MessageStatus.READ.value, "message_ids": updated},
        )
        await self.router.execute(DeliveryPlan.build(envelope, audience))
        return updated

    async def mark_delivered(self, user_id: str, message_id: str) -> ChatMessage:
        if not message_id:
            raise InvalidArgument("message_id is required")
        message = await self._persist(self.repository.get_message(message_id))
        if message is None or message.deleted:
            raise NotFound(f"message {message_id} not found")
        if message.sender_id == user_id:
            raise InvalidArgument("senders cannot acknowledge delivery of their own messages")
        if message.is_group:
            if not await self.membership.is_member(message.group_id, user_id):
                raise PermissionDenied(f"not a member of group {message.group_id}")
        elif message.receiver_id != user_id:
            raise PermissionDenied("only the receiver can acknowledge delivery")
        updated = await self._persist(self.repository.update_message_status(message_id, MessageStatus.DELIVERED))
        envelope = Envelope.of_state(
            KIND_RECEIPT,
            user_id,
            {"message_id": message_id, "status": MessageStatus.DELIVERED.value},
        )
        await self.router.execute(DeliveryPlan.build(envelope, Audience.message_update(updated)))
        return updated

    # ------------------------------------------------------------------
    # Side-channel updates
    # ------------------------------------------------------------------

    async def broadcast_update(
        self, message: ChatMessage, update_type: str, actor_id: str, extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Fan a message change from a unary call out to the message's audience."""

        view = message.tombstone() if message.deleted else message
        payload: Dict[str, Any] = {"update_type": update_type, "message": dump_model(view)}
        if extra:
            payload.update(extra)
        await self.router.execute(
            DeliveryPlan.build(Envelope.of_state(KIND_MESSAGE_UPDATE, actor_id, payload), Audience.message_update(message))
        )


__all__ = ["MessagePipeline", "validate_message", "MAX_CONTENT_LENGTH"]
