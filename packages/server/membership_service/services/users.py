"""
User service: first-sight provisioning, soft deletion and data export.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.models.base import utcnow
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_service.services import store
from membership_service.services.memberships import distinct_roles
from membership_service.services.reconciler import Account, RoleReconciler, unit_of_work
from membership_shared.schemas.users import MembershipResponse, UserExport, UserProvisionRequest, UserResponse

log = structlog.get_logger()


class UserService:
    def __init__(self, reconciler: RoleReconciler, clock: Callable[[], datetime] = utcnow):
        self._reconciler = reconciler
        self._clock = clock

    async def _by_identity(self, session: AsyncSession, identity: str) -> User | None:
        result = await session.execute(select(User).where(User.keycloak_id == identity))
        return result.scalar_one_or_none()

    async def provision(self, session: AsyncSession, req: UserProvisionRequest) -> User:
        """Return the local user for an identity, creating it on first sight.

        Concurrent first sights of one identity race on the unique
        ``keycloak_id``; the loser returns the winner's row.
        """
        user = await self._by_identity(session, req.identity)
        if user:
            return user

        user = User(
            keycloak_id=req.identity,
            email=req.email,
            username=req.username,
            first_name=req.first_name,
            last_name=req.last_name,
            created_at=self._clock(),
        )
        session.add(user)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await self._by_identity(session, req.identity)
            if existing is None:
                raise
            log.info("user.provision_raced", user_id=str(existing.id), identity=req.identity)
            return existing
        log.info("user.provisioned", user_id=str(user.id), identity=req.identity)
        return user

    async def soft_delete(self, session: AsyncSession, user_id: uuid.UUID) -> User:
        """
        Mark a user deleted and drop all of their memberships.

        The row itself is kept since invitations and join requests still
        reference it. Every role flag goes, because no membership needs it
        any more.
        """
        async with unit_of_work(session, self._reconciler) as changes:
            user = await store.get_active_user(session, user_id, for_update=True)
            memberships = await store.list_user_memberships(session, user_id)
            roles = distinct_roles(memberships)
            for membership in memberships:
                await session.delete(membership)
            user.deleted_at = self._clock()
            session.add(user)
            await session.flush()

            account = Account.of(user)
            for role in roles:
                await changes.revoke_if_unused(account, role, excluding_org_id=None)

        log.info(
            "user.deleted",
            user_id=str(user_id),
            memberships=len(memberships),
            roles=[r.value for r in roles],
        )
        return user

    async def organizations(self, session: AsyncSession, user_id: uuid.UUID) -> list[Organization]:
        await store.get_active_user(session, user_id)
        return await store.list_user_organizations(session, user_id)

    async def export_data(self, session: AsyncSession, user_id: uuid.UUID) -> UserExport:
        user = await store.get_active_user(session, user_id)
        memberships = await store.list_user_memberships(session, user_id)
        return UserExport(
            user=UserResponse.model_validate(user),
            memberships=[MembershipResponse.model_validate(m) for m in memberships],
        )
