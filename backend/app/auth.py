from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

security = HTTPBearer(auto_error=False)

ROLE_ADMIN = "admin"
ROLE_ANALYST = "analyst"
ROLE_SERVICE = "service"
REPORTING_ROLES = (ROLE_ANALYST, ROLE_ADMIN)


@dataclass(frozen=True)
class AuthContext:
    subject: str
    roles: frozenset[str]

    def has_any(self, roles: set[str]) -> bool:
        return not self.roles.isdisjoint(roles)


def issue_token(
    secret: str,
    subject: str,
    roles: list[str],
    *,
    hours: int = 12,
    algorithm: str = "HS256",
) -> str:
    claims = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=hours),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _local_context() -> AuthContext:
    return AuthContext(
        subject="local",
        roles=frozenset({ROLE_ADMIN, ROLE_ANALYST, ROLE_SERVICE}),
    )


def _decode(token: str, settings: Settings) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    """Resolve the caller from a bearer JWT carrying ``sub`` and a ``roles`` list.

    With auth disabled every caller gets a local context holding all roles.
    """
    settings = _settings(request)
    if not settings.auth_enabled:
        return _local_context()
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")

    claims = _decode(credentials.credentials, settings)
    subject = claims.get("sub")
    roles = claims.get("roles", [])
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    if not isinstance(roles, list):
        raise _unauthorized("token roles must be a list")
    role_set = frozenset(str(role).strip() for role in roles if str(role).strip())
    if not role_set:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token has no roles")
    return AuthContext(subject=subject.strip(), roles=role_set)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and not context.has_any(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
