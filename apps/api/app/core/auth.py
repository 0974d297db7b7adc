from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def numeric_id(self) -> int | None:
        """User ids in the sales database are integers; other subjects have no local identity."""
        return int(self.sub) if self.sub.isascii() and self.sub.isdigit() else None


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""

    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    subject = str(payload.get("sub") or payload.get("user_id") or "anonymous")
    roles = payload.get("roles")
    if not isinstance(roles, list):
        role = payload.get("role")
        roles = [role] if isinstance(role, str) else ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
