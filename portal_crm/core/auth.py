from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from portal_crm.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None


ANONYMOUS_SUBJECT = "anonymous"


def decode_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def issue_token(subject: str, roles: list[str] | None = None, email: str | None = None) -> str:
    settings = get_settings()
    claims: dict[str, object] = {"sub": subject, "roles": roles or []}
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    try:
        payload = decode_token(token)
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    subject = str(payload.get("sub", ANONYMOUS_SUBJECT))
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    email = payload.get("email") if isinstance(payload.get("email"), str) else None
    request.state.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles], email=email)
