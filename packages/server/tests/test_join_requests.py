"""
Integration tests for the join-request lifecycle.
"""

from __future__ import annotations

import uuid

import pytest

from membership_service.core.exceptions import (
    AuthorityRejected,
    ConflictingProposal,
    NotAuthorized,
    NotFound,
    NotPending,
    WrongOrganization,
)
from membership_service.models.join_request import JoinRequest
from membership_service.services import store
from membership_shared.schemas.common import JoinRequestStatus, Role

from conftest import rejected


@pytest.fixture
async def acme(make_user, make_org):
    admin = await make_user("admin")
    org_id = await make_org(admin, "acme")
    return admin, org_id


class TestCreateJoinRequest:
    @pytest.mark.asyncio
    async def test_request_notifies_current_admins(self, session, services, redis, settings, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")

        request = await services.join_requests.create(session, org_id, alice.user_id)

        assert request.status == JoinRequestStatus.PENDING.value
        assert request.handled_at is None
        events = redis.on(settings.events_join_requests_channel)
        assert len(events) == 1
        assert events[0]["event_type"] == "SENT"
        assert events[0]["admin_ids"] == [admin.identity]
        assert events[0]["requester_identity"] == alice.identity

    @pytest.mark.asyncio
    async def test_duplicate_request_conflicts(self, session, services, acme, make_user):
        _, org_id = acme
        alice = await make_user("alice")
        await services.join_requests.create(session, org_id, alice.user_id)
        with pytest.raises(ConflictingProposal):
            await services.join_requests.create(session, org_id, alice.user_id)

    @pytest.mark.asyncio
    async def test_member_cannot_request(self, session, services, acme):
        admin, org_id = acme
        with pytest.raises(ConflictingProposal):
            await services.join_requests.create(session, org_id, admin.user_id)

    @pytest.mark.asyncio
    async def test_pending_invitation_conflicts(self, session, services, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        await services.invitations.create(session, org_id, alice.user_id, admin.user_id)
        with pytest.raises(ConflictingProposal):
            await services.join_requests.create(session, org_id, alice.user_id)

    @pytest.mark.asyncio
    async def test_unknown_org(self, session, services, make_user):
        alice = await make_user("alice")
        with pytest.raises(NotFound):
            await services.join_requests.create(session, uuid.uuid4(), alice.user_id)

    @pytest.mark.asyncio
    async def test_requester_locked_before_exclusivity_checks(self, session, services, acme, make_user, statements):
        _, org_id = acme
        alice = await make_user("alice")
        statements.clear()

        await services.join_requests.create(session, org_id, alice.user_id)

        lock = next(i for i, sql in enumerate(statements) if "FROM users" in sql and "FOR UPDATE" in sql)
        check = next(i for i, sql in enumerate(statements) if "FROM organization_memberships" in sql)
        assert lock < check


class TestApproveJoinRequest:
    @pytest.mark.asyncio
    async def test_approve_grants_guest(self, session, services, authority, redis, settings, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)

        approved = await services.join_requests.approve(session, org_id, request.id, admin.user_id)

        assert approved.status == JoinRequestStatus.APPROVED.value
        assert approved.handled_by_user_id == admin.user_id
        assert approved.handled_at is not None
        assert await store.roles_in_organization(session, alice.user_id, org_id) == [Role.GUEST]
        assert authority.roles_of(alice.identity) == {Role.GUEST}
        event = redis.on(settings.events_join_requests_channel)[-1]
        assert event["event_type"] == "APPROVED"
        assert event["handled_by_user_id"] == str(admin.user_id)

    @pytest.mark.asyncio
    async def test_non_admin_cannot_approve(self, session, services, acme, make_user):
        _, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)
        request_id = request.id
        with pytest.raises(NotAuthorized):
            await services.join_requests.approve(session, org_id, request_id, alice.user_id)

    @pytest.mark.asyncio
    async def test_request_of_another_org(self, session, services, acme, make_user, make_org):
        admin, org_id = acme
        carol = await make_user("carol")
        globex = await make_org(carol, "globex")
        alice = await make_user("alice")
        request = await services.join_requests.create(session, globex, alice.user_id)
        request_id = request.id
        with pytest.raises(WrongOrganization):
            await services.join_requests.approve(session, org_id, request_id, admin.user_id)

    @pytest.mark.asyncio
    async def test_unknown_request(self, session, services, acme):
        admin, org_id = acme
        with pytest.raises(NotFound):
            await services.join_requests.approve(session, org_id, uuid.uuid4(), admin.user_id)

    @pytest.mark.asyncio
    async def test_approve_twice(self, session, services, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)
        request_id = request.id
        await services.join_requests.approve(session, org_id, request_id, admin.user_id)
        with pytest.raises(NotPending):
            await services.join_requests.approve(session, org_id, request_id, admin.user_id)
        with pytest.raises(NotPending):
            await services.join_requests.reject(session, org_id, request_id, admin.user_id)

    @pytest.mark.asyncio
    async def test_authority_refusal_leaves_request_pending(self, session, services, authority, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)
        request_id = request.id
        authority.fail_next("grant", rejected(400))

        with pytest.raises(AuthorityRejected):
            await services.join_requests.approve(session, org_id, request_id, admin.user_id)

        reloaded = await session.get(JoinRequest, request_id)
        assert reloaded.status == JoinRequestStatus.PENDING.value
        assert await store.memberships_in_organization(session, alice.user_id, org_id) == []


class TestRejectJoinRequest:
    @pytest.mark.asyncio
    async def test_reject_keeps_record(self, session, services, authority, redis, settings, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)

        rejected_request = await services.join_requests.reject(session, org_id, request.id, admin.user_id)

        assert rejected_request.status == JoinRequestStatus.REJECTED.value
        assert rejected_request.handled_by_user_id == admin.user_id
        assert await store.memberships_in_organization(session, alice.user_id, org_id) == []
        assert authority.roles_of(alice.identity) == set()
        assert redis.on(settings.events_join_requests_channel)[-1]["event_type"] == "REJECTED"

        # A rejected request no longer blocks a new one
        await services.join_requests.create(session, org_id, alice.user_id)


class TestListJoinRequests:
    @pytest.mark.asyncio
    async def test_pending_listings(self, session, services, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        bob = await make_user("bob")
        first = await services.join_requests.create(session, org_id, alice.user_id)
        await services.join_requests.create(session, org_id, bob.user_id)
        await services.join_requests.reject(session, org_id, first.id, admin.user_id)

        pending = await services.join_requests.list_pending_for_organization(session, org_id, admin.user_id)
        assert [r.user_id for r in pending] == [bob.user_id]
        assert await services.join_requests.list_pending_for_user(session, alice.user_id) == []
        assert len(await services.join_requests.list_pending_for_user(session, bob.user_id)) == 1

        with pytest.raises(NotAuthorized):
            await services.join_requests.list_pending_for_organization(session, org_id, bob.user_id)


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_rejected_request_cannot_be_approved(self, session, services, acme, make_user):
        admin, org_id = acme
        alice = await make_user("alice")
        request = await services.join_requests.create(session, org_id, alice.user_id)
        request_id = request.id
        await services.join_requests.reject(session, org_id, request_id, admin.user_id)

        with pytest.raises(NotPending):
            await services.join_requests.approve(session, org_id, request_id, admin.user_id)
        with pytest.raises(NotPending):
            await services.join_requests.reject(session, org_id, request_id, admin.user_id)
        assert await store.memberships_in_organization(session, alice.user_id, org_id) == []
