"""Admin-issued invitation into an organization."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from membership_shared.schemas.common import InvitationStatus, Role

from .base import CreatedAtMixin, UUIDMixin


class Invitation(UUIDMixin, CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "invitations"

    organization_id: uuid.UUID = Field(
        foreign_key="organizations.id", nullable=False, index=True, ondelete="CASCADE"
    )
    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    role: str = Field(nullable=False, default=Role.GUEST.value)
    token: str = Field(unique=True, nullable=False, index=True)
    status: str = Field(default=InvitationStatus.PENDING.value, nullable=False)
    expires_at: datetime = Field(nullable=False, sa_type=sa.DateTime(timezone=True))
    accepted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_by_user_id: uuid.UUID = Field(nullable=False)
