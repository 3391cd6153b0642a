"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current identity from the request.

The credential can arrive three ways, checked in this order:
1. Authorization: Bearer <jwt>
2. The session cookie set by /api/auth/login
3. ?token=<jwt> (WebSocket clients that can set neither)

extract_credential() works on any Starlette HTTPConnection, so the
ConnectionGate reads WebSocket upgrades with exactly the same rules.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import HTTPConnection

from orderstream.auth.jwt import TokenError, verify_token
from orderstream.auth.permissions import has_permission
from orderstream.config import settings
from orderstream.db.engine import get_session_factory
from orderstream.db.models import Role, User


class CurrentIdentity:
    """The authenticated principal behind a request or connection.

    Learn: Built once per request (or once per WebSocket, where it stays
    fixed for the connection's life). Holds just what authorization needs.
    """

    def __init__(self, user_id: str, role: Role | str, email: Optional[str] = None):
        self.user_id = user_id
        self.role = Role(role)
        self.email = email

    def can(self, permission: str) -> bool:
        return has_permission(self.role, permission)

    def __repr__(self) -> str:
        return f"CurrentIdentity(user_id={self.user_id!r}, role={self.role.value!r})"


def extract_credential(conn: HTTPConnection) -> Optional[str]:
    """Pull the raw session token off a request or upgrade, if any."""
    authorization = conn.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None

    cookie = conn.cookies.get(settings.session_cookie)
    if cookie:
        return cookie

    return conn.query_params.get("token") or None


async def load_identity(
    factory: async_sessionmaker[AsyncSession], user_id: str
) -> Optional[CurrentIdentity]:
    """Look the principal up in the user store. None if it no longer exists."""
    async with factory() as session:
        user = await session.get(User, user_id)
        if user is None:
            return None
        return CurrentIdentity(user_id=user.id, role=user.role, email=user.email)


async def get_current_user_optional(
    request: Request,
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no credential).

    Learn: A credential that is present but bad is still a 401, not an
    anonymous request.
    """
    token = extract_credential(request)
    if not token:
        return None

    try:
        payload = verify_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    identity = await load_identity(factory, payload["sub"])
    if identity is None:
        raise HTTPException(status_code=401, detail="User not found")
    return identity


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_permission(permission: str):
    """Build a dependency that 403s unless the caller holds ``permission``."""

    async def _check(
        identity: CurrentIdentity = Depends(get_current_user),
    ) -> CurrentIdentity:
        if not identity.can(permission):
            raise HTTPException(
                status_code=403,
                detail={
                    "message": "Insufficient permissions",
                    "required": permission,
                    "role": identity.role.value,
                },
            )
        return identity

    return _check
