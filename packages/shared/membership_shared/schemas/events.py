"""
Domain event payloads published after a lifecycle transition commits.

Consumers receive these as JSON on the per-kind channels. Delivery is
at-most-once; consumers must handle duplicates and gaps idempotently.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .common import Role


class InvitationEventType(str, Enum):
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class JoinRequestEventType(str, Enum):
    SENT = "SENT"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MembershipEventType(str, Enum):
    REMOVED = "REMOVED"
    LEFT = "LEFT"
    ROLE_CHANGED = "ROLE_CHANGED"


class InvitationEvent(BaseModel):
    event_type: InvitationEventType
    invitation_id: uuid.UUID
    organization_id: uuid.UUID
    organization_slug: str
    organization_name: str
    role: Role
    expires_at: datetime
    invited_user_id: uuid.UUID
    invited_username: str
    actor_user_id: uuid.UUID
    # Organization admins at the time of the event; only set on responses
    admin_ids: list[str] = Field(default_factory=list)
    occurred_at: datetime


class JoinRequestEvent(BaseModel):
    event_type: JoinRequestEventType
    join_request_id: uuid.UUID
    organization_id: uuid.UUID
    organization_name: str
    requester_user_id: uuid.UUID
    requester_identity: str
    requester_username: str
    # Recipients of SENT, resolved when the request is created
    admin_ids: list[str] = Field(default_factory=list)
    handled_by_user_id: Optional[uuid.UUID] = None
    occurred_at: datetime


class MembershipEvent(BaseModel):
    event_type: MembershipEventType
    organization_id: uuid.UUID
    organization_name: str
    user_id: uuid.UUID
    username: str
    actor_user_id: uuid.UUID
    removed_roles: list[Role] = Field(default_factory=list)
    new_roles: list[Role] = Field(default_factory=list)
    occurred_at: datetime
