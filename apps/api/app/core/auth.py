from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    name: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


ANONYMOUS_ROLES = ["guest"]


def decode_token(token: str) -> dict[str, Any] | None:
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_token(bearer_token(request))
    if payload is None:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    name = payload.get("name")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        name=str(name) if name else None,
        claims=payload,
    )
