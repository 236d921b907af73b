"""User and membership schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import UUID4, BaseModel, EmailStr, Field

from .common import Role


class UserProvisionRequest(BaseModel):
    """Claims of an authenticated principal seen for the first time."""
    identity: str = Field(min_length=1, description="Subject id at the identity authority")
    email: EmailStr
    username: str = Field(min_length=1, max_length=150)
    first_name: str = Field(default="", max_length=150)
    last_name: str = Field(default="", max_length=150)


class UserResponse(BaseModel):
    id: UUID4
    keycloak_id: str
    email: str
    username: str
    first_name: str
    last_name: str
    created_at: datetime
    deleted_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MembershipResponse(BaseModel):
    id: UUID4
    organization_id: UUID4
    role: Role
    created_at: datetime

    model_config = {"from_attributes": True}


class UserExport(BaseModel):
    """Everything held about a user, for data export requests."""
    user: UserResponse
    memberships: List[MembershipResponse]
