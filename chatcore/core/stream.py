from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import AsyncIterator, Optional, Protocol, Union

import websockets

from .auth import TokenClaims
from .errors import (
    ChatError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    ShuttingDown,
    SlowConsumer,
    Unauthenticated,
)
from .pipeline import MessagePipeline
from .proto import (
    KIND_ACK,
    KIND_HELLO,
    KIND_SUBSCRIBED,
    TAG_CHAT,
    THREAD_TAG_PREFIX,
    Envelope,
    decode_envelope,
    decode_subscribe,
    encode,
)
from .registry import MembershipFilter, Session, SessionRegistry
from .sink import SessionSink

log = logging.getLogger("chatcore.core.stream")

Frame = Union[bytes, str]

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY = 1008
CLOSE_TRY_AGAIN = 1013

# sink close reason -> error reported to the client before the transport closes
_CLOSE_ERRORS = {
    SlowConsumer.kind: (SlowConsumer, CLOSE_TRY_AGAIN),
    ShuttingDown.kind: (ShuttingDown, CLOSE_GOING_AWAY),
    "ForceDisconnect": (PermissionDenied, CLOSE_POLICY),
}


class StreamState(str, Enum):
    OPENING = "opening"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class Transport(Protocol):
    def __aiter__(self) -> AsyncIterator[Frame]: ...

    async def send(self, message: Frame) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class _Stream:
    """Lifecycle shared by chat and subscription streams.

    Opening -> Active -> Draining -> Closed. The session's sink is written by
    a single pump task; the stream ends when the client goes away or when
    the sink is closed from outside (eviction, admin disconnect, shutdown).
    """

    def __init__(
        self,
        transport: Transport,
        claims: TokenClaims,
        *,
        registry: SessionRegistry,
        pipeline: MessagePipeline,
        sink_capacity: int = 256,
        drain_deadline: float = 2.0,
        device: str = "",
    ) -> None:
        self.transport = transport
        self.claims = claims
        self.registry = registry
        self.pipeline = pipeline
        self.sink_capacity = sink_capacity
        self.drain_deadline = drain_deadline
        self.device = device
        self.state = StreamState.OPENING
        self.session: Optional[Session] = None
        self.close_reason: Optional[str] = None

    async def run(self) -> str:
        frames = aiter(self.transport)
        first = await self._next(frames)
        if first is None:
            self.state = StreamState.CLOSED
            self.close_reason = "closed"
            return self.close_reason
        try:
            await self._open(first)
        except ChatError as exc:
            await self._reject(exc)
            return exc.kind
        self.state = StreamState.ACTIVE
        return await self._serve(frames)

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def _next(self, frames: AsyncIterator[Frame]) -> Optional[Frame]:
        try:
            return await anext(frames)
        except (StopAsyncIteration, websockets.ConnectionClosed):
            return None

    async def _open(self, raw: Frame) -> None:
        raise NotImplementedError

    def _register(self, tag: str, membership: MembershipFilter, *, echo: bool = False, device: str = "") -> Session:
        session = Session(
            user_id=self.claims.user_id,
            tag=tag,
            filter=membership,
            device=device or self.device,
            claims=self.claims,
            echo=echo,
            sink=SessionSink(self.sink_capacity),
        )
        self.registry.register(session)
        self.session = session
        log.info("Session %s opened user=%s tag=%s", session.session_id, session.user_id, tag)
        return session

    async def _reject(self, exc: ChatError) -> None:
        log.info("Stream rejected (%s): %s", exc.kind, exc.message)
        self.state = StreamState.CLOSED
        self.close_reason = exc.kind
        with contextlib.suppress(websockets.ConnectionClosed):
            await self.transport.send(encode(Envelope.from_exception(exc)))
            await self.transport.close(CLOSE_POLICY, exc.kind)

    def reply(self, envelope: Envelope) -> None:
        assert self.session is not None
        self.pipeline.router.send_direct(self.session, envelope)

    # ------------------------------------------------------------------
    # Active & draining
    # ------------------------------------------------------------------

    async def _serve(self, frames: AsyncIterator[Frame]) -> str:
        session = self.session
        assert session is not None
        sid = session.session_id

        pump = asyncio.create_task(session.sink.pump(self.transport.send), name=f"pump-{sid}")
        reader = asyncio.create_task(self._read(frames), name=f"reader-{sid}")
        closed = asyncio.create_task(session.sink.wait_closed(), name=f"closed-{sid}")
        self._start()

        done, _ = await asyncio.wait({pump, reader, closed}, return_when=asyncio.FIRST_COMPLETED)
        reason = "closed"
        if session.sink.closed:
            reason = session.sink.close_reason or "closed"
            await self._notify_close(reason)
        elif pump in done and not pump.cancelled() and pump.exception() is not None:
            reason = "transport error"
            log.debug("Session %s send failed: %r", sid, pump.exception())

        self.state = StreamState.DRAINING
        reader.cancel()
        await self._drain()

        self.registry.deregister(sid, reason)
        for task in (pump, reader, closed):
            task.cancel()
        await asyncio.gather(pump, reader, closed, return_exceptions=True)

        self.state = StreamState.CLOSED
        self.close_reason = reason
        log.info("Session %s closed user=%s reason=%s", sid, session.user_id, reason)
        return reason

    async def _read(self, frames: AsyncIterator[Frame]) -> None:
        try:
            async for raw in frames:
                await self._accept(raw)
        except websockets.ConnectionClosed:
            pass

    async def _notify_close(self, reason: str) -> None:
        error_cls, code = _CLOSE_ERRORS.get(reason, (None, CLOSE_NORMAL))
        with contextlib.suppress(websockets.ConnectionClosed):
            if error_cls is not None:
                await self.transport.send(encode(Envelope.from_exception(error_cls(reason))))
            await self.transport.close(code, reason)

    def _start(self) -> None:
        return None

    async def _accept(self, raw: Frame) -> None:
        raise NotImplementedError

    async def _drain(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Chat stream
# ---------------------------------------------------------------------------

class StreamDispatcher(_Stream):
    """Bidirectional chat stream for one client.

    Inbound frames are handled in arrival order by one worker task, so the
    broadcast order of a session's messages equals their acceptance order.
    """

    def __init__(self, transport: Transport, claims: TokenClaims, *, inbox_capacity: int = 64, **kwargs) -> None:
        super().__init__(transport, claims, **kwargs)
        # a full inbox pauses the reader and with it the transport
        self._inbox: asyncio.Queue[Optional[Frame]] = asyncio.Queue(maxsize=inbox_capacity)
        self._worker: Optional[asyncio.Task] = None

    async def _open(self, raw: Frame) -> None:
        try:
            envelope = decode_envelope(raw)
        except InvalidArgument as exc:
            raise Unauthenticated("first frame must identify the user") from exc

        hello = envelope.state is not None and envelope.state.kind == KIND_HELLO
        if hello:
            user_id = envelope.state.user_id
        elif envelope.message is not None:
            user_id = envelope.message.sender_id or self.claims.user_id
        else:
            raise Unauthenticated("first frame must be a hello or a message")
        if user_id != self.claims.user_id:
            raise Unauthenticated("user id does not match the token")

        payload = envelope.state.payload if hello else {}
        session = self._register(
            TAG_CHAT,
            MembershipFilter(),
            echo=bool(payload.get("echo", False)),
            device=str(payload.get("device") or ""),
        )

        if not hello:
            self._inbox.put_nowait(raw)
            return
        self.reply(Envelope.of_state(KIND_ACK, session.user_id, {"msg_ref": KIND_HELLO, "session_id": session.session_id}))
        peers = payload.get("peers") or []
        groups = payload.get("groups") or []
        if peers or groups:
            try:
                self.reply(await self.pipeline.update_filter(session, peers, groups))
            except ChatError as exc:
                self.reply(Envelope.from_exception(exc))

    def _start(self) -> None:
        sid = self.session.session_id if self.session else "?"
        self._worker = asyncio.create_task(self._work(), name=f"worker-{sid}")

    async def _accept(self, raw: Frame) -> None:
        await self._inbox.put(raw)

    async def _work(self) -> None:
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return
            await self._handle(raw)

    async def _handle(self, raw: Frame) -> None:
        session = self.session
        assert session is not None
        try:
            envelope = decode_envelope(raw)
        except ChatError as exc:
            replies = [Envelope.from_exception(exc)]
        else:
            replies = await self.pipeline.submit(session, envelope)
        for reply in replies:
            self.reply(reply)

    async def _finish(self) -> None:
        await self._inbox.put(None)
        await self._worker

    async def _drain(self) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._finish(), self.drain_deadline)
        except asyncio.TimeoutError:
            self._worker.cancel()
            log.warning(
                "Session %s: in-flight work abandoned after %.1fs drain deadline",
                self.session.session_id if self.session else "?",
                self.drain_deadline,
            )


# ---------------------------------------------------------------------------
# Subscription streams
# ---------------------------------------------------------------------------

class SubscriptionStream(_Stream):
    """Server-streaming call: one SubscribeRequest in, envelopes out."""

    async def _open(self, raw: Frame) -> None:
        request = decode_subscribe(raw)
        membership = self.pipeline.membership
        for group_id in request.groups:
            if not await membership.is_member(group_id, self.claims.user_id):
                raise PermissionDenied(f"not a member of group {group_id}")

        if request.tag.startswith(THREAD_TAG_PREFIX):
            parent_id = request.tag[len(THREAD_TAG_PREFIX):]
            parent = await self.pipeline.repository.get_message(parent_id)
            if parent is None or parent.deleted:
                raise NotFound(f"thread {parent_id} not found")
            participants = await self.pipeline.router.participants_of(parent)
            if self.claims.user_id not in participants:
                raise PermissionDenied(f"thread {parent_id} is not visible")

        session = self._register(
            request.tag, MembershipFilter.of(request.peers, request.groups), device=request.device
        )
        self.reply(
            Envelope.of_state(
                KIND_SUBSCRIBED,
                session.user_id,
                {
                    "session_id": session.session_id,
                    "tag": session.tag,
                    "peers": sorted(session.filter.peers),
                    "groups": sorted(session.filter.groups),
                },
            )
        )

    async def _accept(self, raw: Frame) -> None:
        # only keepalives are expected from the client
        if self.session is not None:
            self.session.touch()


__all__ = ["StreamState", "Transport", "StreamDispatcher", "SubscriptionStream"]
