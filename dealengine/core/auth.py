from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from dealengine.core.config import get_settings

ANONYMOUS_ACTOR = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def actor_ref(self) -> str:
        return self.sub


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub=ANONYMOUS_ACTOR, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_ACTOR, roles=["guest"])

    subject = str(payload.get("sub", ANONYMOUS_ACTOR))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
