"""Pydantic schemas for auth and user administration."""

from datetime import datetime

from pydantic import BaseModel, Field

from orderstream.db.models import Role


class RegisterRequest(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(min_length=8)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserRead(BaseModel):
    id: str
    email: str
    name: str
    role: Role
    created_at: datetime

    model_config = {"from_attributes": True}


class RoleChange(BaseModel):
    role: Role
