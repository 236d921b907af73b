"""
Membership store: queries over users, organizations, memberships and the
two proposal channels, plus the invariant checks shared by every lifecycle.

All helpers take the caller's session and never commit.
"""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.core.exceptions import (
    AdminConflict,
    ConflictingProposal,
    NotAuthorized,
    NotFound,
)
from membership_service.models.invitation import Invitation
from membership_service.models.join_request import JoinRequest
from membership_service.models.membership import Membership
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_shared.schemas.common import InvitationStatus, JoinRequestStatus, Role
from membership_shared.schemas.organizations import MemberRoles, OrgSummary


# ---------------------------------------------------------------------------
# Entity lookups
# ---------------------------------------------------------------------------


async def get_active_user(
    session: AsyncSession, user_id: uuid.UUID, for_update: bool = False
) -> User:
    """Load a user that has not been soft-deleted.

    ``for_update`` locks the user row. Operations that check a per-user
    invariant (proposal exclusivity, single admin organization) take this
    lock before checking, so concurrent checks for the same user run one
    after the other. A lock on rows that might not exist yet covers nothing.
    """
    stmt = select(User).where(User.id == user_id, User.deleted_at.is_(None))
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("User not found")
    return user


async def get_organization(session: AsyncSession, org_id: uuid.UUID) -> Organization:
    org = await session.get(Organization, org_id)
    if not org:
        raise NotFound("Organization not found")
    return org


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Organization:
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    org = result.scalar_one_or_none()
    if not org:
        raise NotFound("Organization not found")
    return org


async def search_organizations(
    session: AsyncSession, term: str, limit: int = 50
) -> list[Organization]:
    pattern = f"%{term.lower()}%"
    result = await session.execute(
        select(Organization)
        .where(or_(func.lower(Organization.name).like(pattern), func.lower(Organization.slug).like(pattern)))
        .order_by(Organization.name)
        .limit(limit)
    )
    return list(result.scalars().all())


async def search_users(session: AsyncSession, term: str, limit: int = 50) -> list[User]:
    pattern = f"%{term.lower()}%"
    result = await session.execute(
        select(User)
        .where(
            User.deleted_at.is_(None),
            or_(
                func.lower(User.username).like(pattern),
                func.lower(User.email).like(pattern),
                func.lower(User.first_name).like(pattern),
                func.lower(User.last_name).like(pattern),
            ),
        )
        .order_by(User.username)
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


async def list_user_memberships(session: AsyncSession, user_id: uuid.UUID) -> list[Membership]:
    result = await session.execute(select(Membership).where(Membership.user_id == user_id))
    return list(result.scalars().all())


async def list_user_organizations(session: AsyncSession, user_id: uuid.UUID) -> list[Organization]:
    """Organizations the user belongs to, each once whatever the number of roles."""
    result = await session.execute(
        select(Organization)
        .where(
            Organization.id.in_(select(Membership.organization_id).where(Membership.user_id == user_id))
        )
        .order_by(Organization.name)
    )
    return list(result.scalars().all())


async def memberships_in_organization(
    session: AsyncSession,
    user_id: uuid.UUID,
    org_id: uuid.UUID,
    for_update: bool = False,
) -> list[Membership]:
    stmt = select(Membership).where(
        Membership.user_id == user_id, Membership.organization_id == org_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def roles_in_organization(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> list[Role]:
    return [m.role_enum for m in await memberships_in_organization(session, user_id, org_id)]


async def is_org_admin(session: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(Membership.id).where(
            Membership.organization_id == org_id,
            Membership.user_id == user_id,
            Membership.role == Role.ORG_ADMIN.value,
        )
    )
    return result.first() is not None


async def require_org_admin(
    session: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, action: str = "manage members"
) -> None:
    if not await is_org_admin(session, org_id, user_id):
        raise NotAuthorized(f"Only an organization administrator can {action}")


async def find_admin_organization(
    session: AsyncSession, user_id: uuid.UUID
) -> Optional[OrgSummary]:
    """The organization the user administers, if any (there is at most one)."""
    result = await session.execute(
        select(Organization)
        .join(Membership, Membership.organization_id == Organization.id)
        .where(Membership.user_id == user_id, Membership.role == Role.ORG_ADMIN.value)
    )
    org = result.scalars().first()
    return OrgSummary.model_validate(org) if org else None


async def list_org_admin_identities(session: AsyncSession, org_id: uuid.UUID) -> list[str]:
    """Identity-authority ids of the organization's current admins."""
    result = await session.execute(
        select(User.keycloak_id)
        .join(Membership, Membership.user_id == User.id)
        .where(Membership.organization_id == org_id, Membership.role == Role.ORG_ADMIN.value)
        .order_by(User.keycloak_id)
    )
    return [row[0] for row in result.all()]


async def users_and_roles(session: AsyncSession, org_id: uuid.UUID) -> list[MemberRoles]:
    """Members of an org, one entry per user with all of their roles."""
    result = await session.execute(
        select(User, Membership.role)
        .join(Membership, Membership.user_id == User.id)
        .where(Membership.organization_id == org_id)
        .order_by(User.username, Membership.created_at)
    )
    by_user: dict[uuid.UUID, MemberRoles] = {}
    for user, role in result.all():
        entry = by_user.get(user.id)
        if entry is None:
            entry = by_user[user.id] = MemberRoles(
                user_id=user.id,
                username=user.username,
                first_name=user.first_name,
                last_name=user.last_name,
                roles=[],
            )
        if Role(role) not in entry.roles:
            entry.roles.append(Role(role))
    return list(by_user.values())


# ---------------------------------------------------------------------------
# Proposal channels
# ---------------------------------------------------------------------------


async def pending_invitation_exists(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> bool:
    result = await session.execute(
        select(Invitation.id).where(
            Invitation.user_id == user_id,
            Invitation.organization_id == org_id,
            Invitation.status == InvitationStatus.PENDING.value,
        )
    )
    return result.first() is not None


async def pending_join_request_exists(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> bool:
    result = await session.execute(
        select(JoinRequest.id).where(
            JoinRequest.user_id == user_id,
            JoinRequest.organization_id == org_id,
            JoinRequest.status == JoinRequestStatus.PENDING.value,
        )
    )
    return result.first() is not None


async def ensure_no_conflicting_proposal(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> None:
    """A (user, org) pair may have at most one of: pending invitation,
    pending join request, membership."""
    if await memberships_in_organization(session, user_id, org_id):
        raise ConflictingProposal("User is already a member of the organization")
    if await pending_invitation_exists(session, user_id, org_id):
        raise ConflictingProposal("User already has a pending invitation to the organization")
    if await pending_join_request_exists(session, user_id, org_id):
        raise ConflictingProposal("User already has a pending join request to the organization")


async def ensure_single_admin_org(
    session: AsyncSession, user_id: uuid.UUID, org_id: Optional[uuid.UUID]
) -> None:
    """A user may administer at most one organization system-wide.

    ``org_id=None`` checks for a brand-new organization.
    """
    admin_of = await find_admin_organization(session, user_id)
    if admin_of is not None and admin_of.id != org_id:
        raise AdminConflict(f"User is already admin of organization '{admin_of.slug}'")
