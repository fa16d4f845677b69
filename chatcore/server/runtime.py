from __future__ import annotations

import asyncio
import logging
import time
from http import HTTPStatus
from typing import Optional, Set

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from chatcore.core.auth import TokenValidator, build_validator, extract_token
from chatcore.core.config import Settings
from chatcore.core.errors import ChatError, ShuttingDown
from chatcore.core.pipeline import MessagePipeline
from chatcore.core.presence import PresenceTracker
from chatcore.core.proto import (
    KIND_HEARTBEAT,
    TAG_CHAT,
    Envelope,
    UnaryResponse,
    decode_rpc_request,
    encode,
)
from chatcore.core.registry import EVENT_REGISTERED, Session, SessionRegistry
from chatcore.core.router import FanOutRouter, MembershipCache
from chatcore.core.rpc import RpcClient
from chatcore.core.sink import Outbound
from chatcore.core.store import ChatRepository, SqliteChatRepository
from chatcore.core.stream import CLOSE_POLICY, StreamDispatcher, SubscriptionStream
from chatcore.server.service import ChatService

log = logging.getLogger("chatcore.server.runtime")

PATH_CHAT = "/ChatStream"
PATH_SUBSCRIBE = "/Subscribe"
PATH_RPC = "/rpc"
KNOWN_PATHS = frozenset({PATH_CHAT, PATH_SUBSCRIBE, PATH_RPC})


class ServerRuntime:
    """Wires registry, pipeline, router and service behind one websocket listener."""

    def __init__(
        self,
        settings: Settings,
        repository: Optional[ChatRepository] = None,
        validator: Optional[TokenValidator] = None,
    ) -> None:
        self.settings = settings
        self._owns_repository = repository is None
        self.repository = repository
        self.validator = validator

        self.registry = SessionRegistry(settings.shard_count)
        self.membership: Optional[MembershipCache] = None
        self.router: Optional[FanOutRouter] = None
        self.presence = PresenceTracker(self.registry)
        self.pipeline: Optional[MessagePipeline] = None
        self.service: Optional[ChatService] = None
        self.directory: Optional[RpcClient] = None

        self.port: Optional[int] = None
        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        s = self.settings
        if self.repository is None:
            self.repository = await SqliteChatRepository.open(s.db_name)
        if self.validator is None:
            self.validator = build_validator(s)

        self.membership = MembershipCache(self.repository, ttl=s.membership_ttl_secs)
        self.router = FanOutRouter(self.registry, self.membership, grace_secs=s.slow_consumer_grace_secs)
        self.pipeline = MessagePipeline(
            self.repository, self.router, self.presence, self.membership, persist_timeout=s.rpc_timeout_secs
        )
        if s.user_service_addr and self.directory is None:
            self.directory = RpcClient(s.user_service_addr, timeout=s.rpc_timeout_secs)
        self.service = ChatService(
            self.repository,
            self.pipeline,
            self.presence,
            self.registry,
            default_timeout=s.rpc_timeout_secs,
            directory=self.directory,
        )

        for record in await self.repository.load_presence():
            self.presence.restore(record)
        self.registry.add_listener(self._on_registry_event)

        self._ws_server = await serve(
            self._handle_connection, s.host, s.port, process_request=self._process_request
        )
        self.port = self._ws_server.sockets[0].getsockname()[1] if self._ws_server.sockets else s.port
        log.info("chatcore listening on ws://%s:%d", s.host, self.port)

        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="heartbeat"))

    async def stop(self) -> None:
        live = self.registry.close()
        for session in live:
            self.registry.deregister(session.session_id, ShuttingDown.kind)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        if self.directory is not None:
            await self.directory.close()
            self.directory = None

        if self._owns_repository and self.repository is not None:
            await self.repository.close()
        log.info("chatcore stopped (%d sessions closed)", len(live))

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = request.path.split("?", 1)[0]
        if path not in KNOWN_PATHS:
            return connection.respond(HTTPStatus.NOT_FOUND, f"unknown path {path}\n")
        return None

    async def _handle_connection(self, connection: ServerConnection) -> None:
        path = connection.request.path.split("?", 1)[0]
        try:
            token = extract_token(connection.request.headers.get("authorization"))
            claims = await self.validator.validate(token)
        except ChatError as exc:
            log.info("Rejected %s from %s: %s", path, connection.remote_address, exc.message)
            reply = UnaryResponse.failure(exc) if path == PATH_RPC else Envelope.from_exception(exc)
            try:
                await connection.send(encode(reply))
                await connection.close(CLOSE_POLICY, exc.kind)
            except websockets.ConnectionClosed:
                pass
            return

        log.debug("Accepted %s for %s from %s", path, claims.user_id, connection.remote_address)
        if path == PATH_RPC:
            await self._serve_rpc(connection, claims)
            return

        options = dict(
            registry=self.registry,
            pipeline=self.pipeline,
            sink_capacity=self.settings.sink_capacity,
            drain_deadline=self.settings.drain_deadline_secs,
            device=connection.request.headers.get("x-device", ""),
        )
        if path == PATH_CHAT:
            stream = StreamDispatcher(connection, claims, inbox_capacity=self.settings.inbox_capacity, **options)
        else:
            stream = SubscriptionStream(connection, claims, **options)
        await stream.run()

    async def _serve_rpc(self, connection: ServerConnection, claims) -> None:
        try:
            async for raw in connection:
                try:
                    request = decode_rpc_request(raw)
                except ChatError as exc:
                    await connection.send(encode(UnaryResponse.failure(exc)))
                    continue
                response = await self.service.handle(claims, request)
                await connection.send(encode(response))
        except websockets.ConnectionClosed:
            pass

    # ------------------------------------------------------------------
    # Presence derivation
    # ------------------------------------------------------------------

    def _on_registry_event(self, event: str, session: Session, reason: str) -> None:
        if session.tag != TAG_CHAT:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._presence_changed(event, session.user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _presence_changed(self, event: str, user_id: str) -> None:
        if event == EVENT_REGISTERED:
            record = self.presence.on_session_opened(user_id)
        else:
            record = self.presence.on_session_closed(user_id)
        if record is None:
            return
        try:
            await self.pipeline.publish_presence(record)
        except Exception:
            log.exception("Failed to publish presence for %s", user_id)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def sweep_once(self, now: Optional[float] = None) -> int:
        current = time.monotonic() if now is None else now
        # idle sessions get a shorter backpressure budget than the router grace
        evicted = self.registry.heartbeat_sweep(
            current,
            idle_threshold=self.settings.idle_threshold_secs,
            backpressure_budget=self.settings.idle_backpressure_secs,
        )
        evicted += self.router.evict_overdue(current)
        frame = encode(Envelope.of_state(KIND_HEARTBEAT))
        for session in self.registry.snapshot():
            session.sink.offer(Outbound(frame, essential=False, coalesce_key=KIND_HEARTBEAT))
        return len(evicted)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_secs)
            evicted = self.sweep_once()
            if evicted:
                log.warning("Heartbeat sweep evicted %d sessions", evicted)


__all__ = ["ServerRuntime", "PATH_CHAT", "PATH_SUBSCRIBE", "PATH_RPC"]
