"""
Organization service: creation, lookup and deletion of organizations.

The creator of an organization becomes its administrator, so creation and
deletion go through the role reconciler like any other membership change.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.core.exceptions import SlugTaken
from membership_service.models.base import utcnow
from membership_service.models.invitation import Invitation
from membership_service.models.join_request import JoinRequest
from membership_service.models.membership import Membership
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_service.services import store
from membership_service.services.reconciler import Account, RoleReconciler, unit_of_work
from membership_shared.schemas.common import Role
from membership_shared.schemas.organizations import MemberRoles, OrgCreateRequest, OrgSummary

log = structlog.get_logger()


class OrganizationService:
    def __init__(self, reconciler: RoleReconciler, clock: Callable[[], datetime] = utcnow):
        self._reconciler = reconciler
        self._clock = clock

    async def create(
        self, session: AsyncSession, creator_user_id: uuid.UUID, req: OrgCreateRequest
    ) -> Organization:
        """Create an org and make the creator its administrator."""
        async with unit_of_work(session, self._reconciler) as changes:
            creator = await store.get_active_user(session, creator_user_id, for_update=True)
            existing = await session.execute(select(Organization.id).where(Organization.slug == req.slug))
            if existing.first() is not None:
                raise SlugTaken(f"Organization slug '{req.slug}' is already taken")
            await store.ensure_single_admin_org(session, creator.id, None)

            now = self._clock()
            org = Organization(
                name=req.name,
                slug=req.slug,
                description=req.description,
                type=req.type.value,
                created_by_user_id=creator.id,
                created_at=now,
                updated_at=now,
            )
            session.add(org)
            await session.flush()

            session.add(
                Membership(
                    user_id=creator.id,
                    organization_id=org.id,
                    role=Role.ORG_ADMIN.value,
                    created_at=now,
                )
            )
            await session.flush()
            await changes.grant(Account.of(creator), Role.ORG_ADMIN)

        log.info("org.created", org_id=str(org.id), slug=req.slug, creator=str(creator_user_id))
        return org

    async def get_by_slug(self, session: AsyncSession, slug: str) -> Organization:
        return await store.get_organization_by_slug(session, slug)

    async def search(self, session: AsyncSession, term: str, limit: int = 50) -> list[Organization]:
        return await store.search_organizations(session, term, limit)

    async def admin_organization(self, session: AsyncSession, user_id: uuid.UUID) -> Optional[OrgSummary]:
        return await store.find_admin_organization(session, user_id)

    async def members_with_roles(self, session: AsyncSession, org_id: uuid.UUID) -> list[MemberRoles]:
        await store.get_organization(session, org_id)
        return await store.users_and_roles(session, org_id)

    async def delete(self, session: AsyncSession, org_id: uuid.UUID, requested_by_user_id: uuid.UUID) -> None:
        """
        Delete an org (admin only).

        Every membership is removed first and each member's roles reconciled
        against their remaining organizations; pending invitations and join
        requests go with the org.
        """
        async with unit_of_work(session, self._reconciler) as changes:
            await store.require_org_admin(session, org_id, requested_by_user_id, "delete the organization")
            org = await store.get_organization(session, org_id)

            result = await session.execute(
                select(Membership, User)
                .join(User, User.id == Membership.user_id)
                .where(Membership.organization_id == org_id)
                .with_for_update(of=Membership)
            )
            held: dict[Account, list[Role]] = {}
            for membership, user in result.all():
                roles = held.setdefault(Account.of(user), [])
                if membership.role_enum not in roles:
                    roles.append(membership.role_enum)
                await session.delete(membership)
            await session.flush()

            for account, roles in held.items():
                for role in roles:
                    await changes.revoke_if_unused(account, role, excluding_org_id=org_id)

            # Explicit so backends without enforced foreign keys behave the same
            await session.execute(delete(Invitation).where(Invitation.organization_id == org_id))
            await session.execute(delete(JoinRequest).where(JoinRequest.organization_id == org_id))
            await session.delete(org)
            await session.flush()

        log.info(
            "org.deleted",
            org_id=str(org_id),
            by=str(requested_by_user_id),
            members=len(held),
        )
