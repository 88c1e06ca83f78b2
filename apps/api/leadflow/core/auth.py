from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from leadflow.core.config import get_settings
from leadflow.core.errors import Unauthenticated


@dataclass
class AuthUser:
    sub: str
    email: str | None = None
    user_role: str | None = None
    app_role: str | None = None


def _role_claim(payload: dict[str, Any], channel: str) -> str | None:
    metadata = payload.get(channel)
    if not isinstance(metadata, dict):
        return None
    role = metadata.get("role")
    return str(role) if role is not None else None


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc

    subject = payload.get("sub")
    if not subject:
        raise Unauthenticated()

    email = payload.get("email")
    return AuthUser(
        sub=str(subject),
        email=str(email) if email else None,
        user_role=_role_claim(payload, "user_metadata"),
        app_role=_role_claim(payload, "app_metadata"),
    )


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        raise Unauthenticated()
    return decode_token(token)
