"""Auth API — registration, login, logout, current user.

Learn: Login sets the session cookie that the WebSocket upgrade later
carries; the same token is returned in the body for scripts and the CLI.
- POST /auth/register → create a user (first user becomes admin)
- POST /auth/login → email/password → token + session cookie
- POST /auth/logout → clear the cookie
- GET /auth/me → current user info
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream.auth.dependencies import CurrentIdentity, get_current_user
from orderstream.auth.jwt import create_access_token
from orderstream.config import settings
from orderstream.db.engine import get_db
from orderstream.schemas.user import (
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    UserRead,
)
from orderstream.services.user_service import DuplicateEmailError, UserService

router = APIRouter(prefix="/auth")


@router.post("/register", response_model=UserRead, status_code=201)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create a new user account."""
    try:
        return await UserService(db).register(body.email, body.name, body.password)
    except DuplicateEmailError:
        raise HTTPException(status_code=409, detail="Email already registered")


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Login with email and password → JWT token + session cookie."""
    user = await UserService(db).authenticate(body.email, body.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token(user.id)
    response.set_cookie(
        settings.session_cookie,
        token,
        max_age=settings.access_token_expire_minutes * 60,
        httponly=True,
        samesite="lax",
        secure=settings.environment != "development",
    )
    return TokenResponse(access_token=token)


@router.post("/logout", status_code=204)
async def logout():
    response = Response(status_code=204)
    response.delete_cookie(settings.session_cookie)
    return response


@router.get("/me")
async def get_me(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the current authenticated user's info."""
    user = await UserService(db).get_user(identity.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
    }
