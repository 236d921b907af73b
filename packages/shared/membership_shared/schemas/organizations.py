"""
Organization-related Pydantic schemas shared between the service and its consumers.

Covers: org creation request, org summaries, per-org member role listings.
"""

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field

from .common import OrganizationType, Role


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Organization display name")
    slug: str = Field(
        ...,
        min_length=2,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="URL-safe org identifier",
    )
    description: Optional[str] = Field(None, max_length=1000)
    type: OrganizationType = OrganizationType.PERSONAL


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgSummary(BaseModel):
    id: uuid.UUID
    name: str
    slug: str

    model_config = {"from_attributes": True}


class MemberRoles(BaseModel):
    """A member of an org with every role they hold there."""

    user_id: uuid.UUID
    username: str
    first_name: str
    last_name: str
    roles: list[Role]
