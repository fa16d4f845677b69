from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
import uuid
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from chatcore.core import proto
from chatcore.core.errors import ChatError
from chatcore.core.rpc import RpcClient

log = logging.getLogger("chatcore.cmd.client")

HELP = (
    "Commands: /tell <user> <msg>, /group <group> <msg>, /reply <message-id> <user> <msg>, "
    "/typing <user>, /status <online|away|busy> [note], /history <user>, /watch <user>..., /quit"
)


class ClientApp:
    def __init__(self, server_url: str, user_id: str, token: str, echo: bool = False) -> None:
        self.server_url = server_url.rstrip("/")
        self.user_id = user_id
        self.token = token
        self.echo = echo
        self.ws: Optional[ClientConnection] = None
        self.rpc = RpcClient(self.server_url, token=token)
        self.pending: Dict[str, str] = {}
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        headers = {"authorization": f"Bearer {self.token}"}
        async with connect(f"{self.server_url}/ChatStream", additional_headers=headers) as ws:
            self.ws = ws
            await self._send_state(proto.KIND_HELLO, {"echo": self.echo, "device": "cli"})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver
                await self.rpc.close()

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"chatcore client ready as {self.user_id}. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                await self._handle_command(line)
            except ChatError as exc:
                print(f"ERROR ({exc.status_code}): {exc.message}")

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tell" and len(parts) >= 3:
            await self._send_message(proto.ChatMessage(receiver_id=parts[1], content=line.split(" ", 2)[2]))
        elif cmd == "/group" and len(parts) >= 3:
            await self._send_message(
                proto.ChatMessage(group_id=parts[1], is_group=True, content=line.split(" ", 2)[2])
            )
        elif cmd == "/reply" and len(parts) >= 4:
            await self._send_message(
                proto.ChatMessage(receiver_id=parts[2], reply_to=parts[1], content=line.split(" ", 3)[3])
            )
        elif cmd == "/typing" and len(parts) == 2:
            await self._send_state(proto.KIND_TYPING, {"receiver_id": parts[1], "is_typing": True})
        elif cmd == "/status" and len(parts) >= 2:
            note = line.split(" ", 2)[2] if len(parts) > 2 else ""
            await self._send_state(proto.KIND_PRESENCE, {"status": parts[1], "custom_message": note})
        elif cmd == "/watch" and len(parts) >= 2:
            await self._send_state(proto.KIND_SUBSCRIBE, {"peers": parts[1:]})
        elif cmd == "/history" and len(parts) == 2:
            history = await self.rpc.call("GetChatHistory", {"chat_id": parts[1], "limit": 20})
            for item in reversed(history):
                print(f"  [{item.get('sender_id')}] {item.get('content', '')}")
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _send(self, envelope: proto.Envelope) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode(envelope))

    async def _send_message(self, message: proto.ChatMessage) -> None:
        message.client_ref = uuid.uuid4().hex[:8]
        self.pending[message.client_ref] = message.receiver_id or message.group_id
        await self._send(proto.Envelope(message=message, echo=self.echo))

    async def _send_state(self, kind: str, payload: Dict[str, Any]) -> None:
        await self._send(proto.Envelope.of_state(kind, self.user_id, payload))

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    env = proto.decode_envelope(raw)
                except ChatError:
                    log.warning("Dropped invalid frame: %r", raw)
                    continue
                self._handle_incoming(env)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def _handle_incoming(self, env: proto.Envelope) -> None:
        if env.error is not None:
            print(f"ERROR ({env.error.code}): {env.error.message}")
        elif env.message is not None:
            msg = env.message
            where = f"#{msg.group_id}" if msg.is_group else "dm"
            print(f"[{where}] {msg.sender_id}: {msg.content}")
        elif env.state is not None:
            state = env.state
            if state.kind == proto.KIND_ACK and state.payload.get("client_ref"):
                target = self.pending.pop(state.payload["client_ref"], "?")
                log.info("Delivered to %s as %s", target, state.payload.get("message_id"))
            elif state.kind == proto.KIND_TYPING:
                print(f"* {state.user_id} is typing")
            elif state.kind == proto.KIND_PRESENCE:
                print(f"* {state.user_id} is {state.payload.get('status')}")
            elif state.kind != proto.KIND_HEARTBEAT:
                log.debug("State %s: %s", state.kind, state.payload)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatcore interactive client")
    parser.add_argument("--server", default="ws://127.0.0.1:50054", help="Server websocket URL")
    parser.add_argument("--user", required=True, help="User id carried by the token")
    parser.add_argument("--token", default=os.environ.get("CHATCORE_TOKEN"), help="Bearer token (or CHATCORE_TOKEN)")
    parser.add_argument("--echo", action="store_true", help="Receive copies of your own messages")
    args = parser.parse_args(argv)

    if not args.token:
        parser.error("a token is required (--token or CHATCORE_TOKEN)")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.user, args.token, echo=args.echo)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
