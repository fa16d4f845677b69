from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from .errors import (
    ChatError,
    Conflict,
    Internal,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    Unauthenticated,
    Unavailable,
)
from .proto import RpcRequest, UnaryResponse, encode

log = logging.getLogger("chatcore.core.rpc")

_BY_STATUS = {
    400: InvalidArgument,
    401: Unauthenticated,
    403: PermissionDenied,
    404: NotFound,
    409: Conflict,
}


def error_from_response(response: UnaryResponse) -> ChatError:
    detail = response.result.error
    message = detail.message if detail is not None else response.message
    details = detail.details if detail is not None else []
    if "retryable=true" in details:
        return Unavailable(message, details=details)
    cls = _BY_STATUS.get(response.status_code)
    if cls is None:
        return Internal(message, details=details)
    return cls(message, details=details)


class RpcClient:
    """Unary call client for a peer service speaking the ``/rpc`` websocket path.

    Calls are serialised over one connection that is opened lazily and
    re-opened after a failure.
    """

    def __init__(self, address: str, token: Optional[str] = None, timeout: float = 5.0) -> None:
        if "://" not in address:
            address = f"ws://{address}"
        self.url = address.rstrip("/") + "/rpc"
        self.token = token
        self.timeout = timeout
        self._ws: Optional[ClientConnection] = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> ClientConnection:
        if self._ws is None:
            headers = {"authorization": f"Bearer {self.token}"} if self.token else None
            self._ws = await connect(self.url, additional_headers=headers)
            log.debug("Connected to %s", self.url)
        return self._ws

    async def call(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        deadline = self.timeout if timeout is None else timeout
        request = RpcRequest(method=method, params=params, timeout_ms=int(deadline * 1000))
        async with self._lock:
            try:
                raw = await asyncio.wait_for(self._roundtrip(request), deadline)
            except (asyncio.TimeoutError, OSError, websockets.ConnectionClosed, websockets.InvalidHandshake) as exc:
                await self.close()
                raise Unavailable(f"{method} to {self.url} failed: {exc.__class__.__name__}") from exc
        response = UnaryResponse.model_validate_json(raw)
        if not response.ok:
            raise error_from_response(response)
        return response.result.value

    async def _roundtrip(self, request: RpcRequest) -> bytes:
        ws = await self._connection()
        await ws.send(encode(request))
        while True:
            raw = await ws.recv()
            if isinstance(raw, str):
                raw = raw.encode("utf-8")
            if UnaryResponse.model_validate_json(raw).id == request.id:
                return raw

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()


__all__ = ["RpcClient", "error_from_response"]
