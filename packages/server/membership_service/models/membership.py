"""Organization membership: one row per (user, organization, role)."""

import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from membership_shared.schemas.common import Role

from .base import TimestampMixin, UUIDMixin


class Membership(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organization_memberships"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "organization_id", "role", name="uq_membership_user_org_role"),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    organization_id: uuid.UUID = Field(
        foreign_key="organizations.id", nullable=False, index=True, ondelete="CASCADE"
    )
    role: str = Field(nullable=False, default=Role.GUEST.value, index=True)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)
