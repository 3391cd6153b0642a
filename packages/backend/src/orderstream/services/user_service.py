"""User service — registration, login and role administration."""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream.auth.password import hash_password, verify_password
from orderstream.db.models import Role, User


class DuplicateEmailError(Exception):
    """Raised when registering an email that is already taken."""


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(func.lower(User.email) == email.lower())
        )
        return result.scalars().first()

    async def register(
        self, email: str, name: str, password: str, role: Optional[Role] = None
    ) -> User:
        """Create a user. The very first user becomes admin.

        Learn: Without this, a fresh install has nobody who can promote
        anyone. Everyone after the first starts as a viewer.
        """
        if await self.get_by_email(email):
            raise DuplicateEmailError(email)

        if role is None:
            existing = (await self.db.execute(select(func.count()).select_from(User))).scalar_one()
            role = Role.ADMIN if existing == 0 else Role.VIEWER

        user = User(
            email=email,
            name=name,
            password_hash=hash_password(password),
            role=role,
        )
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        user = await self.get_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            return None
        return user

    async def list_users(self) -> list[User]:
        result = await self.db.execute(select(User).order_by(User.created_at.desc()))
        return list(result.scalars().all())

    async def update_role(self, user_id: str, role: Role) -> Optional[User]:
        user = await self.get_user(user_id)
        if user is None:
            return None
        user.role = role
        await self.db.commit()
        await self.db.refresh(user)
        return user
