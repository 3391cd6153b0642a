"""User administration — list users, change roles (admin only)."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream.auth.dependencies import require_permission
from orderstream.auth.permissions import USERS_READ, USERS_UPDATE
from orderstream.db.engine import get_db
from orderstream.schemas.user import RoleChange, UserRead
from orderstream.services.user_service import UserService

router = APIRouter(prefix="/users")


@router.get(
    "",
    response_model=list[UserRead],
    dependencies=[Depends(require_permission(USERS_READ))],
)
async def list_users(db: AsyncSession = Depends(get_db)):
    return await UserService(db).list_users()


@router.patch(
    "/{user_id}/role",
    response_model=UserRead,
    dependencies=[Depends(require_permission(USERS_UPDATE))],
)
async def change_role(user_id: str, body: RoleChange, db: AsyncSession = Depends(get_db)):
    """Change a user's role.

    Learn: Open WebSocket connections keep the identity they were admitted
    with; the new role applies from the user's next connection.
    """
    user = await UserService(db).update_role(user_id, body.role)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
