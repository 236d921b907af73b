"""
Join-request lifecycle: user-initiated requests to join an organization.

PENDING --approve--> APPROVED (terminal)
PENDING --reject--> REJECTED (terminal)

Terminal records are retained with handling metadata.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.core.events import EventNotifier
from membership_service.core.exceptions import ConflictingProposal, NotFound, NotPending, WrongOrganization
from membership_service.models.base import utcnow
from membership_service.models.join_request import JoinRequest
from membership_service.models.membership import Membership
from membership_service.models.organization import Organization
from membership_service.models.user import User
from membership_service.services import store
from membership_service.services.reconciler import Account, RoleReconciler, unit_of_work
from membership_shared.schemas.common import DEFAULT_ROLE, JOIN_REQUEST_TRANSITIONS, JoinRequestStatus
from membership_shared.schemas.events import JoinRequestEvent, JoinRequestEventType

log = structlog.get_logger()


def _event(
    event_type: JoinRequestEventType,
    request: JoinRequest,
    org: Organization,
    requester: User,
    occurred_at: datetime,
    admin_ids: list[str] | None = None,
) -> JoinRequestEvent:
    return JoinRequestEvent(
        event_type=event_type,
        join_request_id=request.id,
        organization_id=org.id,
        organization_name=org.name,
        requester_user_id=requester.id,
        requester_identity=requester.keycloak_id,
        requester_username=requester.username,
        admin_ids=admin_ids or [],
        handled_by_user_id=request.handled_by_user_id,
        occurred_at=occurred_at,
    )


class JoinRequestService:
    def __init__(
        self,
        reconciler: RoleReconciler,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._reconciler = reconciler
        self._notifier = notifier
        self._clock = clock

    async def _pending_request(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        request_id: uuid.UUID,
        admin_user_id: uuid.UUID,
        target: JoinRequestStatus,
    ) -> JoinRequest:
        """Guard checks shared by approve and reject."""
        await store.require_org_admin(session, org_id, admin_user_id, "handle join requests")
        result = await session.execute(
            select(JoinRequest).where(JoinRequest.id == request_id).with_for_update()
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFound("Join request not found")
        if request.organization_id != org_id:
            raise WrongOrganization("Join request does not belong to this organization")
        if target not in JOIN_REQUEST_TRANSITIONS[JoinRequestStatus(request.status)]:
            raise NotPending("Join request is not pending")
        return request

    async def create(self, session: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID) -> JoinRequest:
        """Ask to join an org. Admins are notified as of now."""
        async with unit_of_work(session, self._reconciler):
            org = await store.get_organization(session, org_id)
            user = await store.get_active_user(session, user_id, for_update=True)
            await store.ensure_no_conflicting_proposal(session, user_id, org_id)

            now = self._clock()
            request = JoinRequest(
                user_id=user_id,
                organization_id=org_id,
                status=JoinRequestStatus.PENDING.value,
                created_at=now,
            )
            session.add(request)
            await session.flush()

            # Recipients are fixed here; later admin changes are not reflected
            admin_ids = await store.list_org_admin_identities(session, org_id)
            event = _event(JoinRequestEventType.SENT, request, org, user, now, admin_ids)

        log.info("join_request.sent", join_request_id=str(request.id), org_id=str(org_id), user_id=str(user_id))
        await self._notifier.publish_join_request_event(event)
        return request

    async def approve(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        request_id: uuid.UUID,
        admin_user_id: uuid.UUID,
    ) -> JoinRequest:
        """Approve: the requester becomes a guest, granted at the authority in the same unit."""
        async with unit_of_work(session, self._reconciler) as changes:
            request = await self._pending_request(
                session, org_id, request_id, admin_user_id, JoinRequestStatus.APPROVED
            )
            requester = await store.get_active_user(session, request.user_id, for_update=True)
            org = await store.get_organization(session, org_id)
            if await store.memberships_in_organization(session, requester.id, org_id, for_update=True):
                raise ConflictingProposal("User is already a member of the organization")

            now = self._clock()
            session.add(
                Membership(
                    user_id=requester.id,
                    organization_id=org_id,
                    role=DEFAULT_ROLE.value,
                    created_at=now,
                )
            )
            request.status = JoinRequestStatus.APPROVED.value
            request.handled_at = now
            request.handled_by_user_id = admin_user_id
            session.add(request)
            await session.flush()

            await changes.grant(Account.of(requester), DEFAULT_ROLE)
            event = _event(JoinRequestEventType.APPROVED, request, org, requester, now)

        log.info(
            "join_request.approved",
            join_request_id=str(request_id),
            admin=str(admin_user_id),
            user_id=str(request.user_id),
            org_id=str(org_id),
        )
        await self._notifier.publish_join_request_event(event)
        return request

    async def reject(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        request_id: uuid.UUID,
        admin_user_id: uuid.UUID,
    ) -> JoinRequest:
        async with unit_of_work(session, self._reconciler):
            request = await self._pending_request(
                session, org_id, request_id, admin_user_id, JoinRequestStatus.REJECTED
            )
            requester = await session.get(User, request.user_id)
            org = await store.get_organization(session, org_id)

            now = self._clock()
            request.status = JoinRequestStatus.REJECTED.value
            request.handled_at = now
            request.handled_by_user_id = admin_user_id
            session.add(request)
            await session.flush()
            event = _event(JoinRequestEventType.REJECTED, request, org, requester, now)

        log.info(
            "join_request.rejected",
            join_request_id=str(request_id),
            admin=str(admin_user_id),
            user_id=str(request.user_id),
            org_id=str(org_id),
        )
        await self._notifier.publish_join_request_event(event)
        return request

    async def list_pending_for_organization(
        self, session: AsyncSession, org_id: uuid.UUID, admin_user_id: uuid.UUID
    ) -> list[JoinRequest]:
        await store.require_org_admin(session, org_id, admin_user_id, "view join requests")
        result = await session.execute(
            select(JoinRequest)
            .where(
                JoinRequest.organization_id == org_id,
                JoinRequest.status == JoinRequestStatus.PENDING.value,
            )
            .order_by(JoinRequest.created_at)
        )
        return list(result.scalars().all())

    async def list_pending_for_user(self, session: AsyncSession, user_id: uuid.UUID) -> list[JoinRequest]:
        result = await session.execute(
            select(JoinRequest)
            .where(
                JoinRequest.user_id == user_id,
                JoinRequest.status == JoinRequestStatus.PENDING.value,
            )
            .order_by(JoinRequest.created_at)
        )
        return list(result.scalars().all())
