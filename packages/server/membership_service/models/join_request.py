"""User-initiated request to join an organization. Terminal records are retained."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from membership_shared.schemas.common import JoinRequestStatus

from .base import CreatedAtMixin, UUIDMixin


class JoinRequest(UUIDMixin, CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "join_requests"

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    organization_id: uuid.UUID = Field(
        foreign_key="organizations.id", nullable=False, index=True, ondelete="CASCADE"
    )
    status: str = Field(default=JoinRequestStatus.PENDING.value, nullable=False)
    handled_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    handled_by_user_id: Optional[uuid.UUID] = None
