"""
Membership removal and role changes.

Removing a membership revokes each removed role at the identity authority
unless another organization's membership still needs it. A role change
swaps the member's rows inside one transaction, so no reader sees the
target without a role.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from membership_service.core.events import EventNotifier
from membership_service.core.exceptions import NoRoles, NotFound, SelfRemovalForbidden
from membership_service.models.base import utcnow
from membership_service.models.membership import Membership
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_service.services import store
from membership_service.services.reconciler import Account, ExternalChanges, RoleReconciler, unit_of_work
from membership_shared.schemas.common import Role
from membership_shared.schemas.events import MembershipEvent, MembershipEventType

log = structlog.get_logger()


def distinct_roles(memberships: list[Membership]) -> list[Role]:
    roles: list[Role] = []
    for m in memberships:
        if m.role_enum not in roles:
            roles.append(m.role_enum)
    return roles


async def remove_memberships(
    session: AsyncSession,
    changes: ExternalChanges,
    org_id: uuid.UUID,
    target: User,
) -> list[Role]:
    """Delete every row for (target, org) and reconcile each removed role.

    Returns the distinct removed roles; raises ``NotFound`` if there were none.
    """
    rows = await store.memberships_in_organization(session, target.id, org_id, for_update=True)
    if not rows:
        raise NotFound("User is not a member of this organization")
    removed = distinct_roles(rows)
    for membership in rows:
        await session.delete(membership)
    await session.flush()

    account = Account.of(target)
    for role in removed:
        await changes.revoke_if_unused(account, role, excluding_org_id=org_id)
    return removed


class MembershipService:
    def __init__(
        self,
        reconciler: RoleReconciler,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._reconciler = reconciler
        self._notifier = notifier
        self._clock = clock

    def _event(
        self,
        event_type: MembershipEventType,
        org: Organization,
        target: User,
        actor_user_id: uuid.UUID,
        removed: list[Role],
        new_roles: list[Role] | None = None,
    ) -> MembershipEvent:
        return MembershipEvent(
            event_type=event_type,
            organization_id=org.id,
            organization_name=org.name,
            user_id=target.id,
            username=target.username,
            actor_user_id=actor_user_id,
            removed_roles=removed,
            new_roles=new_roles or [],
            occurred_at=self._clock(),
        )

    async def remove(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        target_user_id: uuid.UUID,
        requested_by_user_id: uuid.UUID,
    ) -> list[Role]:
        """Admin removes a member. Admins leave through ``leave`` instead."""
        async with unit_of_work(session, self._reconciler) as changes:
            await store.require_org_admin(session, org_id, requested_by_user_id, "remove members")
            if target_user_id == requested_by_user_id:
                raise SelfRemovalForbidden("You cannot remove yourself; leave the organization instead")
            org = await store.get_organization(session, org_id)
            target = await store.get_active_user(session, target_user_id)
            removed = await remove_memberships(session, changes, org_id, target)
            event = self._event(MembershipEventType.REMOVED, org, target, requested_by_user_id, removed)

        log.info(
            "membership.removed",
            user_id=str(target_user_id),
            org_id=str(org_id),
            roles=[r.value for r in removed],
            by=str(requested_by_user_id),
        )
        await self._notifier.publish_membership_event(event)
        return removed

    async def leave(self, session: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID) -> list[Role]:
        """A user removes themselves from an org. No admin check."""
        async with unit_of_work(session, self._reconciler) as changes:
            org = await store.get_organization(session, org_id)
            user = await store.get_active_user(session, user_id)
            removed = await remove_memberships(session, changes, org_id, user)
            event = self._event(MembershipEventType.LEFT, org, user, user_id, removed)

        log.info("membership.left", user_id=str(user_id), org_id=str(org_id), roles=[r.value for r in removed])
        await self._notifier.publish_membership_event(event)
        return removed

    async def change_roles(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_roles: list[Role],
        requested_by_user_id: uuid.UUID,
    ) -> list[Membership]:
        """Replace the member's roles in the org with ``new_roles``.

        Every new role is granted before any dropped role is revoked, and the
        row swap commits as one unit, so the member is never seen without a
        role, locally or at the authority.
        """
        roles = list(dict.fromkeys(new_roles))
        if not roles:
            raise NoRoles()

        async with unit_of_work(session, self._reconciler) as changes:
            await store.require_org_admin(session, org_id, requested_by_user_id, "change roles")
            target = await store.get_active_user(session, target_user_id, for_update=True)
            if Role.ORG_ADMIN in roles:
                await store.ensure_single_admin_org(session, target.id, org_id)
            org = await store.get_organization(session, org_id)

            rows = await store.memberships_in_organization(session, target.id, org_id, for_update=True)
            if not rows:
                raise NotFound("User is not a member of this organization")
            previous = distinct_roles(rows)
            for row in rows:
                await session.delete(row)
            await session.flush()

            now = self._clock()
            memberships = [
                Membership(user_id=target.id, organization_id=org_id, role=role.value, created_at=now)
                for role in roles
            ]
            session.add_all(memberships)
            await session.flush()

            account = Account.of(target)
            for role in roles:
                await changes.grant(account, role)
            dropped = [role for role in previous if role not in roles]
            for role in dropped:
                await changes.revoke_if_unused(account, role, excluding_org_id=org_id)

            event = self._event(
                MembershipEventType.ROLE_CHANGED,
                org,
                target,
                requested_by_user_id,
                dropped,
                roles,
            )

        log.info(
            "membership.roles_changed",
            user_id=str(target_user_id),
            org_id=str(org_id),
            previous=[r.value for r in previous],
            roles=[r.value for r in roles],
            by=str(requested_by_user_id),
        )
        await self._notifier.publish_membership_event(event)
        return memberships

    async def change_role(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_role: Role,
        requested_by_user_id: uuid.UUID,
    ) -> Membership:
        """Replace the member's roles in the org with the single ``new_role``."""
        memberships = await self.change_roles(session, org_id, target_user_id, [new_role], requested_by_user_id)
        return memberships[0]
