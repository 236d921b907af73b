"""Organization model."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from membership_shared.schemas.common import OrganizationType

from .base import TimestampMixin, UUIDMixin


class Organization(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(nullable=False, index=True)
    slug: str = Field(unique=True, nullable=False, index=True)
    description: Optional[str] = None
    type: str = Field(default=OrganizationType.PERSONAL.value, nullable=False)  # personal | business
    created_by_user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
