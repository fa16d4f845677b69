from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Tuple

import aiosqlite
import orjson

from .errors import Conflict, InvalidArgument, NotFound
from .presence import PresenceRecord
from .proto import (
    CallInfo,
    CallStatus,
    ChatMessage,
    MessageStatus,
    PresenceStatus,
    Reaction,
    ReactionKind,
    Timestamp,
    dump_model,
)

log = logging.getLogger("chatcore.core.store")

_STATUS_RANK = {MessageStatus.SENT: 0, MessageStatus.DELIVERED: 1, MessageStatus.READ: 2}
_CALL_TRANSITIONS = {
    CallStatus.ACCEPTED: frozenset({CallStatus.INITIATED}),
    CallStatus.REJECTED: frozenset({CallStatus.INITIATED}),
    CallStatus.ENDED: frozenset({CallStatus.INITIATED, CallStatus.ACCEPTED}),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    receiver_id TEXT NOT NULL DEFAULT '',
    group_id TEXT NOT NULL DEFAULT '',
    is_group INTEGER NOT NULL DEFAULT 0,
    parent_message_id TEXT NOT NULL DEFAULT '',
    ts INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'sent',
    deleted INTEGER NOT NULL DEFAULT 0,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_direct ON messages(sender_id, receiver_id, ts);
CREATE INDEX IF NOT EXISTS idx_messages_group ON messages(group_id, ts);
CREATE INDEX IF NOT EXISTS idx_messages_parent ON messages(parent_message_id, ts);

CREATE TABLE IF NOT EXISTS reactions (
    message_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    ts INTEGER NOT NULL,
    PRIMARY KEY (message_id, user_id, kind)
);

CREATE TABLE IF NOT EXISTS likes (
    message_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    ts INTEGER NOT NULL,
    PRIMARY KEY (message_id, user_id)
);

CREATE TABLE IF NOT EXISTS pins (
    chat_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    pinned_by TEXT NOT NULL,
    ts INTEGER NOT NULL,
    PRIMARY KEY (chat_id, message_id)
);

CREATE TABLE IF NOT EXISTS read_markers (
    user_id TEXT NOT NULL,
    chat_id TEXT NOT NULL,
    ts INTEGER NOT NULL,
    PRIMARY KEY (user_id, chat_id)
);

CREATE TABLE IF NOT EXISTS groups (
    group_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS group_members (
    group_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'member',
    joined_at INTEGER NOT NULL,
    PRIMARY KEY (group_id, user_id)
);

CREATE TABLE IF NOT EXISTS presence (
    user_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    custom_message TEXT NOT NULL DEFAULT '',
    last_seen REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled (
    message_id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    scheduled_at INTEGER NOT NULL,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scheduled_sender ON scheduled(sender_id, scheduled_at);

CREATE TABLE IF NOT EXISTS calls (
    call_id TEXT PRIMARY KEY,
    caller_id TEXT NOT NULL,
    receiver_id TEXT NOT NULL DEFAULT '',
    group_id TEXT NOT NULL DEFAULT '',
    started_at INTEGER NOT NULL,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_calls_started ON calls(started_at);
"""


def chat_id_for(message: ChatMessage) -> str:
    """Stable conversation id: the group id, or ``dm:<a>:<b>`` with the ids sorted."""

    if message.is_group:
        return message.group_id
    return direct_chat_id(message.sender_id, message.receiver_id)


def direct_chat_id(a: str, b: str) -> str:
    first, second = sorted((a, b))
    return f"dm:{first}:{second}"


def _ns(ts: Optional[Timestamp]) -> int:
    if ts is None:
        return time.time_ns()
    return ts.seconds * 1_000_000_000 + ts.nanos


def _body(message: ChatMessage) -> str:
    data = dump_model(message)
    # derived from side tables on read
    for key in ("reactions", "liked_by", "is_pinned"):
        data.pop(key, None)
    return orjson.dumps(data).decode("utf-8")


class ChatRepository(ABC):
    """Persistence contract used by the pipeline and the unary service."""

    # Messages
    @abstractmethod
    async def save_message(self, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[ChatMessage]: ...

    @abstractmethod
    async def update_message_content(self, message_id: str, content: str) -> ChatMessage: ...

    @abstractmethod
    async def soft_delete_message(self, message_id: str) -> ChatMessage: ...

    @abstractmethod
    async def update_message_status(self, message_id: str, status: MessageStatus) -> ChatMessage: ...

    @abstractmethod
    async def mark_as_read(self, user_id: str, chat_id: str, is_group: bool) -> List[str]: ...

    @abstractmethod
    async def get_chat_history(
        self, user_id: str, chat_id: str, is_group: bool, limit: int = 20, offset: int = 0
    ) -> List[ChatMessage]: ...

    @abstractmethod
    async def get_thread_messages(self, parent_id: str, limit: int = 20, offset: int = 0) -> List[ChatMessage]: ...

    @abstractmethod
    async def get_last_messages(self, user_id: str, limit: int = 20) -> List[ChatMessage]: ...

    # Reactions, likes, pins
    @abstractmethod
    async def add_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> ChatMessage: ...

    @abstractmethod
    async def remove_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> ChatMessage: ...

    @abstractmethod
    async def get_reactions(self, message_id: str) -> List[Reaction]: ...

    @abstractmethod
    async def toggle_like(self, message_id: str, user_id: str) -> Tuple[bool, ChatMessage]: ...

    @abstractmethod
    async def pin_message(self, message_id: str, user_id: str) -> ChatMessage: ...

    @abstractmethod
    async def unpin_message(self, message_id: str) -> ChatMessage: ...

    @abstractmethod
    async def get_pinned_messages(self, chat_id: str) -> List[ChatMessage]: ...

    # Groups
    @abstractmethod
    async def create_group(self, name: str, creator_id: str, members: List[str]) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def add_group_member(self, group_id: str, user_id: str) -> int: ...

    @abstractmethod
    async def remove_group_member(self, group_id: str, user_id: str) -> int: ...

    @abstractmethod
    async def get_group_membership(self, group_id: str) -> Tuple[int, FrozenSet[str]]: ...

    @abstractmethod
    async def update_group(self, group_id: str, name: str) -> int: ...

    @abstractmethod
    async def get_member_role(self, group_id: str, user_id: str) -> Optional[str]: ...

    @abstractmethod
    async def get_groups_for_user(self, user_id: str) -> List[Dict[str, Any]]: ...

    async def get_users_in_group(self, group_id: str) -> List[str]:
        _, members = await self.get_group_membership(group_id)
        return sorted(members)

    # Presence
    @abstractmethod
    async def save_presence(self, record: PresenceRecord) -> None: ...

    @abstractmethod
    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]: ...

    @abstractmethod
    async def load_presence(self) -> List[PresenceRecord]: ...

    # Scheduled messages
    @abstractmethod
    async def schedule_message(self, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def cancel_scheduled_message(self, message_id: str, user_id: str) -> None: ...

    @abstractmethod
    async def get_scheduled_messages(self, user_id: str) -> List[ChatMessage]: ...

    # Calls
    @abstractmethod
    async def save_call(self, call: CallInfo) -> CallInfo: ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallInfo]: ...

    @abstractmethod
    async def transition_call(self, call_id: str, status: CallStatus) -> CallInfo: ...

    @abstractmethod
    async def get_call_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[CallInfo]: ...

    async def close(self) -> None:
        return None


class SqliteChatRepository(ChatRepository):
    """ChatRepository on a single aiosqlite connection.

    Read-modify-write sequences run under one asyncio lock so concurrent
    edits to the same message row serialise.
    """

    def __init__(self, path: str = "chatcore.db") -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str = "chatcore.db") -> "SqliteChatRepository":
        repo = cls(path)
        await repo.init()
        return repo

    async def init(self) -> None:
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.info("Chat repository ready at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("repository is not initialised")
        return self._db

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cur:
            return await cur.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cur:
            return list(await cur.fetchall())

    @contextlib.asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialised write: commit on success, roll back on any failure or cancellation."""

        async with self._write_lock:
            try:
                yield self.db
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _hydrate(self, row: aiosqlite.Row) -> ChatMessage:
        message = ChatMessage.model_validate(orjson.loads(row["body"]))
        message.reactions = await self.get_reactions(message.message_id)
        likes = await self._fetchall(
            "SELECT user_id FROM likes WHERE message_id=? ORDER BY ts", (message.message_id,)
        )
        message.liked_by = [r["user_id"] for r in likes]
        pin = await self._fetchone(
            "SELECT 1 FROM pins WHERE chat_id=? AND message_id=?", (chat_id_for(message), message.message_id)
        )
        message.is_pinned = pin is not None
        return message

    async def _require(self, message_id: str) -> ChatMessage:
        message = await self.get_message(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        return message

    async def _write_body(self, message: ChatMessage) -> None:
        await self.db.execute(
            "UPDATE messages SET body=?, status=?, deleted=? WHERE message_id=?",
            (_body(message), message.status.value, int(message.deleted), message.message_id),
        )

    async def save_message(self, message: ChatMessage) -> ChatMessage:
        stored = message.model_copy(deep=True)
        if not stored.message_id:
            stored.message_id = str(uuid.uuid4())
        if stored.timestamp is None:
            stored.timestamp = Timestamp.now()
        async with self._transaction():
            exists = await self._fetchone("SELECT 1 FROM messages WHERE message_id=?", (stored.message_id,))
            if exists:
                raise Conflict(f"message {stored.message_id} already exists")
            await self.db.execute(
                "INSERT INTO messages(message_id,sender_id,receiver_id,group_id,is_group,parent_message_id,ts,status,deleted,body)"
                " VALUES(?,?,?,?,?,?,?,?,?,?)",
                (
                    stored.message_id,
                    stored.sender_id,
                    stored.receiver_id,
                    stored.group_id,
                    int(stored.is_group),
                    stored.parent_message_id,
                    _ns(stored.timestamp),
                    stored.status.value,
                    int(stored.deleted),
                    _body(stored),
                ),
            )
            if stored.parent_message_id:
                row = await self._fetchone(
                    "SELECT body FROM messages WHERE message_id=?", (stored.parent_message_id,)
                )
                if row is not None:
                    parent = ChatMessage.model_validate(orjson.loads(row["body"]))
                    parent.thread_reply_count += 1
                    await self._write_body(parent)
        log.debug("Saved message %s from %s", stored.message_id, stored.sender_id)
        return stored

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        row = await self._fetchone("SELECT body FROM messages WHERE message_id=?", (message_id,))
        if row is None:
            return None
        return await self._hydrate(row)

    async def update_message_content(self, message_id: str, content: str) -> ChatMessage:
        async with self._transaction():
            message = await self._require(message_id)
            if message.deleted:
                raise NotFound(f"message {message_id} was deleted")
            message.edit_history.append(message.content)
            message.content = content
            message.edited_at = Timestamp.now()
            await self._write_body(message)
        return message

    async def soft_delete_message(self, message_id: str) -> ChatMessage:
        async with self._transaction():
            message = await self._require(message_id)
            if not message.deleted:
                message.deleted = True
                await self._write_body(message)
        return message

    async def update_message_status(self, message_id: str, status: MessageStatus) -> ChatMessage:
        async with self._transaction():
            message = await self._require(message_id)
            # status only moves forward: sent -> delivered -> read
            if _STATUS_RANK[status] > _STATUS_RANK[message.status]:
                message.status = status
                await self._write_body(message)
        return message

    async def mark_as_read(self, user_id: str, chat_id: str, is_group: bool) -> List[str]:
        now = time.time_ns()
        async with self._transaction():
            if is_group:
                marker = chat_id
                rows = []
            else:
                marker = direct_chat_id(user_id, chat_id)
                rows = await self._fetchall(
                    "SELECT body FROM messages WHERE is_group=0 AND sender_id=? AND receiver_id=? AND status!='read'",
                    (chat_id, user_id),
                )
            updated = []
            for row in rows:
                message = ChatMessage.model_validate(orjson.loads(row["body"]))
                message.status = MessageStatus.READ
                await self._write_body(message)
                updated.append(message.message_id)
            await self.db.execute(
                "INSERT INTO read_markers(user_id,chat_id,ts) VALUES(?,?,?)"
                " ON CONFLICT(user_id,chat_id) DO UPDATE SET ts=excluded.ts",
                (user_id, marker, now),
            )
        return updated

    async def get_chat_history(
        self, user_id: str, chat_id: str, is_group: bool, limit: int = 20, offset: int = 0
    ) -> List[ChatMessage]:
        if is_group:
            rows = await self._fetchall(
                "SELECT body FROM messages WHERE is_group=1 AND group_id=? AND parent_message_id=''"
                " ORDER BY ts DESC LIMIT ? OFFSET ?",
                (chat_id, limit, offset),
            )
        else:
            rows = await self._fetchall(
                "SELECT body FROM messages WHERE is_group=0 AND parent_message_id=''"
                " AND ((sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?))"
                " ORDER BY ts DESC LIMIT ? OFFSET ?",
                (user_id, chat_id, chat_id, user_id, limit, offset),
            )
        return [await self._hydrate(row) for row in rows]

    async def get_thread_messages(self, parent_id: str, limit: int = 20, offset: int = 0) -> List[ChatMessage]:
        rows = await self._fetchall(
            "SELECT body FROM messages WHERE parent_message_id=? ORDER BY ts ASC LIMIT ? OFFSET ?",
            (parent_id, limit, offset),
        )
        return [await self._hydrate(row) for row in rows]

    async def get_last_messages(self, user_id: str, limit: int = 20) -> List[ChatMessage]:
        rows = await self._fetchall(
            "SELECT body FROM messages WHERE parent_message_id='' AND ("
            " (is_group=0 AND (sender_id=? OR receiver_id=?))"
            " OR (is_group=1 AND group_id IN (SELECT group_id FROM group_members WHERE user_id=?))"
            ") ORDER BY ts DESC",
            (user_id, user_id, user_id),
        )
        seen = set()
        latest: List[ChatMessage] = []
        for row in rows:
            message = ChatMessage.model_validate(orjson.loads(row["body"]))
            key = chat_id_for(message)
            if key in seen:
                continue
            seen.add(key)
            latest.append(message)
            if len(latest) >= limit:
                break
        return latest

    # ------------------------------------------------------------------
    # Reactions, likes, pins
    # ------------------------------------------------------------------

    async def add_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> ChatMessage:
        async with self._transaction():
            await self._require(message_id)
            exists = await self._fetchone(
                "SELECT 1 FROM reactions WHERE message_id=? AND user_id=? AND kind=?",
                (message_id, user_id, kind.value),
            )
            if exists:
                raise Conflict(f"{user_id} already reacted {kind.value} to {message_id}")
            await self.db.execute(
                "INSERT INTO reactions(message_id,user_id,kind,ts) VALUES(?,?,?,?)",
                (message_id, user_id, kind.value, time.time_ns()),
            )
        return await self._require(message_id)

    async def remove_reaction(self, message_id: str, user_id: str, kind: ReactionKind) -> ChatMessage:
        async with self._transaction():
            cur = await self.db.execute(
                "DELETE FROM reactions WHERE message_id=? AND user_id=? AND kind=?",
                (message_id, user_id, kind.value),
            )
            if cur.rowcount == 0:
                raise NotFound(f"no {kind.value} reaction from {user_id} on {message_id}")
        return await self._require(message_id)

    async def get_reactions(self, message_id: str) -> List[Reaction]:
        rows = await self._fetchall(
            "SELECT user_id, kind, ts FROM reactions WHERE message_id=? ORDER BY ts", (message_id,)
        )
        return [
            Reaction(user_id=r["user_id"], kind=ReactionKind(r["kind"]), timestamp=Timestamp.from_ns(r["ts"]))
            for r in rows
        ]

    async def toggle_like(self, message_id: str, user_id: str) -> Tuple[bool, ChatMessage]:
        async with self._transaction():
            await self._require(message_id)
            cur = await self.db.execute("DELETE FROM likes WHERE message_id=? AND user_id=?", (message_id, user_id))
            liked = cur.rowcount == 0
            if liked:
                await self.db.execute(
                    "INSERT INTO likes(message_id,user_id,ts) VALUES(?,?,?)", (message_id, user_id, time.time_ns())
                )
        return liked, await self._require(message_id)

    async def pin_message(self, message_id: str, user_id: str) -> ChatMessage:
        async with self._transaction():
            message = await self._require(message_id)
            if message.deleted:
                raise InvalidArgument("deleted messages cannot be pinned")
            chat_id = chat_id_for(message)
            exists = await self._fetchone(
                "SELECT 1 FROM pins WHERE chat_id=? AND message_id=?", (chat_id, message_id)
            )
            if exists:
                raise Conflict(f"message {message_id} is already pinned")
            await self.db.execute(
                "INSERT INTO pins(chat_id,message_id,pinned_by,ts) VALUES(?,?,?,?)",
                (chat_id, message_id, user_id, time.time_ns()),
            )
        return await self._require(message_id)

    async def unpin_message(self, message_id: str) -> ChatMessage:
        async with self._transaction():
            message = await self._require(message_id)
            cur = await self.db.execute(
                "DELETE FROM pins WHERE chat_id=? AND message_id=?", (chat_id_for(message), message_id)
            )
            if cur.rowcount == 0:
                raise NotFound(f"message {message_id} is not pinned")
        return await self._require(message_id)

    async def get_pinned_messages(self, chat_id: str) -> List[ChatMessage]:
        rows = await self._fetchall(
            "SELECT m.body FROM pins p JOIN messages m ON m.message_id = p.message_id"
            " WHERE p.chat_id=? ORDER BY p.ts DESC",
            (chat_id,),
        )
        return [await self._hydrate(row) for row in rows]

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def create_group(self, name: str, creator_id: str, members: List[str]) -> Dict[str, Any]:
        group_id = str(uuid.uuid4())
        now = int(time.time())
        everyone = [creator_id] + sorted({m for m in members if m and m != creator_id})
        async with self._transaction():
            await self.db.execute(
                "INSERT INTO groups(group_id,name,creator_id,created_at,version) VALUES(?,?,?,?,?)",
                (group_id, name, creator_id, now, 1),
            )
            await self.db.executemany(
                "INSERT INTO group_members(group_id,user_id,role,joined_at) VALUES(?,?,?,?)",
                [(group_id, uid, "admin" if uid == creator_id else "member", now) for uid in everyone],
            )
        log.info("Created group %s (%s) with %d members", group_id, name, len(everyone))
        return {"group_id": group_id, "name": name, "creator_id": creator_id, "members": everyone, "version": 1}

    async def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone(
            "SELECT group_id, name, creator_id, created_at, version FROM groups WHERE group_id=?", (group_id,)
        )
        if row is None:
            return None
        members = await self._fetchall(
            "SELECT user_id FROM group_members WHERE group_id=? ORDER BY joined_at, user_id", (group_id,)
        )
        return {
            "group_id": row["group_id"],
            "name": row["name"],
            "creator_id": row["creator_id"],
            "created_at": row["created_at"],
            "version": row["version"],
            "members": [m["user_id"] for m in members],
        }

    async def _bump_version(self, group_id: str) -> int:
        await self.db.execute("UPDATE groups SET version = version + 1 WHERE group_id=?", (group_id,))
        row = await self._fetchone("SELECT version FROM groups WHERE group_id=?", (group_id,))
        return int(row["version"])

    async def add_group_member(self, group_id: str, user_id: str) -> int:
        async with self._transaction():
            if await self._fetchone("SELECT 1 FROM groups WHERE group_id=?", (group_id,)) is None:
                raise NotFound(f"group {group_id} not found")
            exists = await self._fetchone(
                "SELECT 1 FROM group_members WHERE group_id=? AND user_id=?", (group_id, user_id)
            )
            if exists:
                raise Conflict(f"{user_id} is already a member of {group_id}")
            await self.db.execute(
                "INSERT INTO group_members(group_id,user_id,role,joined_at) VALUES(?,?,?,?)",
                (group_id, user_id, "member", int(time.time())),
            )
            version = await self._bump_version(group_id)
        return version

    async def remove_group_member(self, group_id: str, user_id: str) -> int:
        async with self._transaction():
            cur = await self.db.execute(
                "DELETE FROM group_members WHERE group_id=? AND user_id=?", (group_id, user_id)
            )
            if cur.rowcount == 0:
                raise NotFound(f"{user_id} is not a member of {group_id}")
            version = await self._bump_version(group_id)
        return version

    async def get_group_membership(self, group_id: str) -> Tuple[int, FrozenSet[str]]:
        row = await self._fetchone("SELECT version FROM groups WHERE group_id=?", (group_id,))
        if row is None:
            raise NotFound(f"group {group_id} not found")
        members = await self._fetchall("SELECT user_id FROM group_members WHERE group_id=?", (group_id,))
        return int(row["version"]), frozenset(m["user_id"] for m in members)

    async def update_group(self, group_id: str, name: str) -> int:
        async with self._transaction():
            cur = await self.db.execute("UPDATE groups SET name=? WHERE group_id=?", (name, group_id))
            if cur.rowcount == 0:
                raise NotFound(f"group {group_id} not found")
            version = await self._bump_version(group_id)
        log.info("Renamed group %s to %s", group_id, name)
        return version

    async def get_member_role(self, group_id: str, user_id: str) -> Optional[str]:
        row = await self._fetchone(
            "SELECT role FROM group_members WHERE group_id=? AND user_id=?", (group_id, user_id)
        )
        return row["role"] if row is not None else None

    async def get_groups_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT g.group_id FROM groups g JOIN group_members m ON m.group_id = g.group_id"
            " WHERE m.user_id=? ORDER BY g.created_at DESC, g.group_id",
            (user_id,),
        )
        groups = []
        for row in rows:
            group = await self.get_group(row["group_id"])
            if group is not None:
                groups.append(group)
        return groups

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def save_presence(self, record: PresenceRecord) -> None:
        async with self._transaction():
            await self.db.execute(
                "INSERT INTO presence(user_id,status,custom_message,last_seen) VALUES(?,?,?,?)"
                " ON CONFLICT(user_id) DO UPDATE SET status=excluded.status,"
                " custom_message=excluded.custom_message, last_seen=excluded.last_seen",
                (record.user_id, record.status.value, record.custom_message, record.last_seen),
            )

    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        row = await self._fetchone(
            "SELECT user_id, status, custom_message, last_seen FROM presence WHERE user_id=?", (user_id,)
        )
        return _presence_from_row(row) if row is not None else None

    async def load_presence(self) -> List[PresenceRecord]:
        rows = await self._fetchall("SELECT user_id, status, custom_message, last_seen FROM presence")
        return [_presence_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled messages
    # ------------------------------------------------------------------

    async def schedule_message(self, message: ChatMessage) -> ChatMessage:
        stored = message.model_copy(deep=True)
        if not stored.message_id:
            stored.message_id = str(uuid.uuid4())
        if stored.timestamp is None:
            stored.timestamp = Timestamp.now()
        stored.is_scheduled = True
        async with self._transaction():
            exists = await self._fetchone("SELECT 1 FROM scheduled WHERE message_id=?", (stored.message_id,))
            if exists:
                raise Conflict(f"scheduled message {stored.message_id} already exists")
            await self.db.execute(
                "INSERT INTO scheduled(message_id,sender_id,scheduled_at,body) VALUES(?,?,?,?)",
                (stored.message_id, stored.sender_id, _ns(stored.scheduled_at), _body(stored)),
            )
        return stored

    async def cancel_scheduled_message(self, message_id: str, user_id: str) -> None:
        async with self._transaction():
            row = await self._fetchone("SELECT sender_id FROM scheduled WHERE message_id=?", (message_id,))
            # another user's schedule is reported as missing
            if row is None or row["sender_id"] != user_id:
                raise NotFound(f"scheduled message {message_id} not found")
            await self.db.execute("DELETE FROM scheduled WHERE message_id=?", (message_id,))

    async def get_scheduled_messages(self, user_id: str) -> List[ChatMessage]:
        rows = await self._fetchall(
            "SELECT body FROM scheduled WHERE sender_id=? ORDER BY scheduled_at", (user_id,)
        )
        return [ChatMessage.model_validate(orjson.loads(r["body"])) for r in rows]

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def save_call(self, call: CallInfo) -> CallInfo:
        stored = call.model_copy(deep=True)
        if not stored.call_id:
            stored.call_id = str(uuid.uuid4())
        if stored.start_time is None:
            stored.start_time = Timestamp.now()
        async with self._transaction():
            await self.db.execute(
                "INSERT INTO calls(call_id,caller_id,receiver_id,group_id,started_at,body) VALUES(?,?,?,?,?,?)",
                (
                    stored.call_id,
                    stored.caller_id,
                    stored.receiver_id,
                    stored.group_id,
                    _ns(stored.start_time),
                    orjson.dumps(dump_model(stored)).decode("utf-8"),
                ),
            )
        return stored

    async def get_call(self, call_id: str) -> Optional[CallInfo]:
        row = await self._fetchone("SELECT body FROM calls WHERE call_id=?", (call_id,))
        return CallInfo.model_validate(orjson.loads(row["body"])) if row is not None else None

    async def transition_call(self, call_id: str, status: CallStatus) -> CallInfo:
        """Move a call to ``status``; answered or finished calls cannot go back."""

        async with self._transaction():
            call = await self.get_call(call_id)
            if call is None:
                raise NotFound(f"call {call_id} not found")
            if call.status not in _CALL_TRANSITIONS[status]:
                raise Conflict(f"call {call_id} is already {call.status.value}")
            call.status = status
            if status in (CallStatus.REJECTED, CallStatus.ENDED):
                call.end_time = Timestamp.now()
                call.duration_secs = max(0, int(call.end_time.to_seconds() - call.start_time.to_seconds()))
            await self.db.execute(
                "UPDATE calls SET body=? WHERE call_id=?",
                (orjson.dumps(dump_model(call)).decode("utf-8"), call_id),
            )
        return call

    async def get_call_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[CallInfo]:
        rows = await self._fetchall(
            "SELECT body FROM calls WHERE caller_id=? OR receiver_id=?"
            " OR group_id IN (SELECT group_id FROM group_members WHERE user_id=?)"
            " ORDER BY started_at DESC LIMIT ? OFFSET ?",
            (user_id, user_id, user_id, limit, offset),
        )
        return [CallInfo.model_validate(orjson.loads(r["body"])) for r in rows]


def _presence_from_row(row: aiosqlite.Row) -> PresenceRecord:
    return PresenceRecord(
        user_id=row["user_id"],
        status=PresenceStatus(row["status"]),
        custom_message=row["custom_message"],
        last_seen=float(row["last_seen"]),
    )


__all__ = ["SCHEMA", "ChatRepository", "SqliteChatRepository", "chat_id_for", "direct_chat_id"]
