"""Request and response models for the HTTP routes."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from ..db.users import CreateUserPayload, UpdateUserPayload

UserRole = Literal["admin", "user"]
UserStatus = Literal["active", "inactive"]


class CreateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    name: str
    password: str
    role: UserRole = "user"

    def to_payload(self) -> CreateUserPayload:
        return CreateUserPayload(
            email=self.email, name=self.name, password=self.password, role=self.role
        )


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None

    def to_payload(self) -> UpdateUserPayload:
        return UpdateUserPayload(
            email=self.email,
            name=self.name,
            password=self.password,
            role=self.role,
            status=self.status,
        )


class SafeUser(BaseModel):
    """A user row without the password column."""

    id: int
    email: str
    name: str
    role: UserRole
    status: UserStatus
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    message: str
