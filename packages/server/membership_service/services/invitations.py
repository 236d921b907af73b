"""
Invitation lifecycle: admin-issued, single-use, token-addressed invitations.

PENDING --accept--> ACCEPTED (terminal)
PENDING --decline--> deleted (terminal, no record kept)

Expired invitations are never transitioned; they are rejected at accept time.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.core.events import EventNotifier
from membership_service.core.exceptions import ConflictingProposal, Expired, Forbidden, NotFound, NotPending
from membership_service.models.base import as_utc, utcnow
from membership_service.models.invitation import Invitation
from membership_service.models.membership import Membership
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_service.services import store
from membership_service.services.reconciler import Account, RoleReconciler, unit_of_work
from membership_shared.schemas.common import DEFAULT_ROLE, INVITATION_TRANSITIONS, InvitationStatus, Role
from membership_shared.schemas.events import InvitationEvent, InvitationEventType

log = structlog.get_logger()

INVITATION_TTL = timedelta(days=7)


def generate_token() -> str:
    """Unguessable single-use invitation token."""
    return secrets.token_urlsafe(32)


def _event(
    event_type: InvitationEventType,
    invitation: Invitation,
    org: Organization,
    invited: User,
    actor_user_id: uuid.UUID,
    occurred_at: datetime,
    admin_ids: Optional[list[str]] = None,
) -> InvitationEvent:
    return InvitationEvent(
        event_type=event_type,
        invitation_id=invitation.id,
        organization_id=org.id,
        organization_slug=org.slug,
        organization_name=org.name,
        role=Role(invitation.role),
        expires_at=as_utc(invitation.expires_at),
        invited_user_id=invited.id,
        invited_username=invited.username,
        actor_user_id=actor_user_id,
        admin_ids=admin_ids or [],
        occurred_at=occurred_at,
    )


class InvitationService:
    def __init__(
        self,
        reconciler: RoleReconciler,
        notifier: EventNotifier,
        ttl: timedelta = INVITATION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._reconciler = reconciler
        self._notifier = notifier
        self._ttl = ttl
        self._clock = clock

    async def _resolve(
        self,
        session: AsyncSession,
        token: str,
        caller_user_id: uuid.UUID,
        target: Optional[InvitationStatus],
    ) -> Invitation:
        """Load the caller's invitation for an answer moving it to ``target``.

        ``target=None`` is a decline, which deletes the record instead.
        """
        result = await session.execute(
            select(Invitation).where(Invitation.token == token).with_for_update()
        )
        invitation = result.scalar_one_or_none()
        if not invitation:
            raise NotFound("Invitation not found")
        if invitation.user_id != caller_user_id:
            raise Forbidden("This invitation is not addressed to you")
        allowed = INVITATION_TRANSITIONS[InvitationStatus(invitation.status)]
        if not allowed or (target is not None and target not in allowed):
            raise NotPending("Invitation has already been answered")
        return invitation

    async def create(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        invited_user_id: uuid.UUID,
        issuer_user_id: uuid.UUID,
        role: Role = DEFAULT_ROLE,
    ) -> Invitation:
        """Invite a user into an org (admin only)."""
        async with unit_of_work(session, self._reconciler):
            await store.require_org_admin(session, org_id, issuer_user_id, "invite members")
            org = await store.get_organization(session, org_id)
            invited = await store.get_active_user(session, invited_user_id, for_update=True)
            await store.ensure_no_conflicting_proposal(session, invited_user_id, org_id)
            if role == Role.ORG_ADMIN:
                await store.ensure_single_admin_org(session, invited_user_id, org_id)

            now = self._clock()
            invitation = Invitation(
                organization_id=org_id,
                user_id=invited_user_id,
                role=role.value,
                token=generate_token(),
                status=InvitationStatus.PENDING.value,
                created_at=now,
                expires_at=now + self._ttl,
                created_by_user_id=issuer_user_id,
            )
            session.add(invitation)
            await session.flush()
            event = _event(InvitationEventType.SENT, invitation, org, invited, issuer_user_id, now)

        log.info(
            "invitation.sent",
            invitation_id=str(invitation.id),
            org_id=str(org_id),
            user_id=str(invited_user_id),
            role=role.value,
            issuer=str(issuer_user_id),
        )
        await self._notifier.publish_invitation_event(event)
        return invitation

    async def accept(self, session: AsyncSession, token: str, caller_user_id: uuid.UUID) -> Invitation:
        """Accept an invitation: membership, role grant and status change commit together or not at all."""
        async with unit_of_work(session, self._reconciler) as changes:
            user = await store.get_active_user(session, caller_user_id, for_update=True)
            invitation = await self._resolve(session, token, caller_user_id, InvitationStatus.ACCEPTED)
            now = self._clock()
            if now > as_utc(invitation.expires_at):
                raise Expired("Invitation has expired")

            org = await store.get_organization(session, invitation.organization_id)
            role = Role(invitation.role)
            if await store.memberships_in_organization(session, user.id, org.id, for_update=True):
                raise ConflictingProposal("User is already a member of the organization")
            if role == Role.ORG_ADMIN:
                await store.ensure_single_admin_org(session, user.id, org.id)

            session.add(Membership(user_id=user.id, organization_id=org.id, role=role.value, created_at=now))
            invitation.status = InvitationStatus.ACCEPTED.value
            invitation.accepted_at = now
            session.add(invitation)
            await session.flush()

            await changes.grant(Account.of(user), role)

            admin_ids = await store.list_org_admin_identities(session, org.id)
            event = _event(InvitationEventType.ACCEPTED, invitation, org, user, user.id, now, admin_ids)

        log.info(
            "invitation.accepted",
            invitation_id=str(invitation.id),
            user_id=str(caller_user_id),
            org_id=str(invitation.organization_id),
            role=invitation.role,
        )
        await self._notifier.publish_invitation_event(event)
        return invitation

    async def decline(self, session: AsyncSession, token: str, caller_user_id: uuid.UUID) -> None:
        """Decline an invitation. The record is deleted; no expiry check."""
        async with unit_of_work(session, self._reconciler):
            invitation = await self._resolve(session, token, caller_user_id, None)
            user = await store.get_active_user(session, caller_user_id)
            org = await store.get_organization(session, invitation.organization_id)
            admin_ids = await store.list_org_admin_identities(session, org.id)
            event = _event(
                InvitationEventType.DECLINED, invitation, org, user, user.id, self._clock(), admin_ids
            )
            invitation_id = invitation.id
            await session.delete(invitation)
            await session.flush()

        log.info("invitation.declined", invitation_id=str(invitation_id), user_id=str(caller_user_id))
        await self._notifier.publish_invitation_event(event)

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        stmt = select(Invitation).where(Invitation.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Invitation.status == status.value)
        result = await session.execute(stmt.order_by(Invitation.created_at))
        return list(result.scalars().all())

    async def list_for_organization(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        admin_user_id: uuid.UUID,
        status: Optional[InvitationStatus] = None,
    ) -> list[Invitation]:
        await store.require_org_admin(session, org_id, admin_user_id, "view invitations")
        stmt = select(Invitation).where(Invitation.organization_id == org_id)
        if status is not None:
            stmt = stmt.where(Invitation.status == status.value)
        result = await session.execute(stmt.order_by(Invitation.created_at))
        return list(result.scalars().all())
