from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import jwt
from jwt import ExpiredSignatureError, PyJWTError

from .errors import ChatError, InvalidArgument, Unauthenticated, Unavailable

log = logging.getLogger("chatcore.core.auth")

ADMIN_ROLES = frozenset({"admin", "moderator"})
JWT_ALGORITHM = "HS256"


@dataclass(frozen=True, slots=True)
class TokenClaims:
    user_id: str
    email: str = ""
    role: str = "user"
    exp: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return bool(self.exp) and self.exp <= current

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "TokenClaims":
        """Claims from a decoded token body; user id, email and role are mandatory."""

        user_id = data.get("user_id") or data.get("sub")
        if not user_id:
            raise Unauthenticated("token carries no user id")
        for name in ("email", "role"):
            if not data.get(name):
                raise Unauthenticated(f"token carries no {name}")
        try:
            exp = int(data.get("exp") or 0)
        except (TypeError, ValueError) as exc:
            raise Unauthenticated("token expiry is malformed") from exc
        return cls(user_id=str(user_id), email=str(data["email"]), role=str(data["role"]), exp=exp)

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "email": self.email, "role": self.role, "exp": self.exp}


def extract_token(header: Optional[str]) -> str:
    """Token from an ``authorization`` header value, ``Bearer `` prefix optional."""

    if not header:
        raise Unauthenticated("missing authorization header")
    value = header.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    if not value:
        raise Unauthenticated("empty bearer token")
    return value


class TokenValidator(ABC):
    """Resolves a bearer token to a non-expired claim set or raises Unauthenticated."""

    @abstractmethod
    async def validate(self, token: str) -> TokenClaims:
        ...


# ---------------------------------------------------------------------------
# Local HS256 tokens
# ---------------------------------------------------------------------------

class HmacTokenValidator(TokenValidator):
    def __init__(self, secret: str, leeway: float = 0.0) -> None:
        if not secret:
            raise InvalidArgument("JWT secret must not be empty")
        self._secret = secret
        self._leeway = leeway

    def issue(self, user_id: str, email: str, role: str = "user", ttl_secs: int = 3600) -> str:
        claims = TokenClaims(user_id=user_id, email=email, role=role, exp=int(time.time()) + ttl_secs)
        return jwt.encode(claims.to_dict(), self._secret, algorithm=JWT_ALGORITHM)

    async def validate(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                leeway=self._leeway,
                options={"require": ["exp", "email", "role"]},
            )
        except ExpiredSignatureError as exc:
            raise Unauthenticated("token expired") from exc
        except PyJWTError as exc:
            raise Unauthenticated(f"invalid token: {exc}") from exc
        return TokenClaims.from_mapping(payload)


# ---------------------------------------------------------------------------
# User directory collaborator
# ---------------------------------------------------------------------------

class UnaryCaller(Protocol):
    async def call(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        ...


class RemoteTokenValidator(TokenValidator):
    """Delegates to the user directory's ``ValidateToken`` call."""

    def __init__(self, client: UnaryCaller, timeout: float = 5.0, clock=time.time) -> None:
        self._client = client
        self._timeout = timeout
        self._clock = clock

    async def validate(self, token: str) -> TokenClaims:
        try:
            value = await self._client.call("ValidateToken", {"token": token}, timeout=self._timeout)
        except Unavailable:
            raise
        except ChatError as exc:
            raise Unauthenticated(exc.message) from exc
        if not isinstance(value, dict):
            raise Unauthenticated("user directory returned no claims")
        claims = TokenClaims.from_mapping(value.get("claims", value))
        if claims.expired(self._clock()):
            raise Unauthenticated("token expired")
        return claims


def build_validator(settings, client_factory=None) -> TokenValidator:
    """Pick the validator for the configured collaborators.

    The user directory wins when ``user_service_addr`` is set; otherwise
    tokens are checked locally against ``jwt_secret``.
    """

    if settings.user_service_addr:
        if client_factory is None:
            from .rpc import RpcClient

            client_factory = RpcClient
        log.info("Validating tokens against user directory at %s", settings.user_service_addr)
        return RemoteTokenValidator(client_factory(settings.user_service_addr), timeout=settings.rpc_timeout_secs)
    if settings.jwt_secret:
        log.info("Validating HS256 tokens locally")
        return HmacTokenValidator(settings.jwt_secret)
    raise InvalidArgument("either USER_SERVICE_ADDR or JWT_SECRET must be configured")


__all__ = [
    "TokenClaims",
    "TokenValidator",
    "HmacTokenValidator",
    "RemoteTokenValidator",
    "extract_token",
    "build_validator",
]
