"""
Integration tests for organizations.

Tests cover:
- Create request validation
- Creation makes the creator org admin, at most one org per admin
- Lookup, search and member listing
- Deletion reconciles every member's roles
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from sqlmodel import select

from membership_service.core.exceptions import AdminConflict, AuthorityUnavailable, NotAuthorized, NotFound, SlugTaken
from membership_service.models.invitation import Invitation
from membership_service.models.join_request import JoinRequest
from membership_service.models.organization import Organization
from membership_service.services import store
from membership_shared.schemas.common import OrganizationType, Role
from membership_shared.schemas.organizations import OrgCreateRequest


# ---------------------------------------------------------------------------
# Schema validation tests (no DB needed)
# ---------------------------------------------------------------------------


class TestOrgCreateRequestValidation:
    def test_valid_slug(self):
        req = OrgCreateRequest(name="Test Org", slug="test-org")
        assert req.slug == "test-org"
        assert req.type == OrganizationType.PERSONAL

    def test_invalid_slug_uppercase(self):
        with pytest.raises(ValidationError):
            OrgCreateRequest(name="Test", slug="Test-Org")

    def test_invalid_slug_start_with_hyphen(self):
        with pytest.raises(ValidationError):
            OrgCreateRequest(name="Test", slug="-test")

    def test_slug_too_short(self):
        with pytest.raises(ValidationError):
            OrgCreateRequest(name="Test", slug="a")


# ---------------------------------------------------------------------------
# Service tests
# ---------------------------------------------------------------------------


class TestCreateOrganization:
    @pytest.mark.asyncio
    async def test_creator_becomes_org_admin(self, session, services, authority, make_user):
        owner = await make_user("owner")
        org = await services.organizations.create(
            session,
            owner.user_id,
            OrgCreateRequest(name="Acme", slug="acme", description="Rockets", type=OrganizationType.BUSINESS),
        )

        assert org.type == "business"
        assert org.created_by_user_id == owner.user_id
        assert await store.roles_in_organization(session, owner.user_id, org.id) == [Role.ORG_ADMIN]
        assert authority.roles_of(owner.identity) == {Role.ORG_ADMIN}

    @pytest.mark.asyncio
    async def test_slug_taken(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        other = await make_user("other")
        await make_org(owner, "acme")
        with pytest.raises(SlugTaken):
            await services.organizations.create(session, other.user_id, OrgCreateRequest(name="Acme 2", slug="acme"))

    @pytest.mark.asyncio
    async def test_admin_of_one_org_only(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        await make_org(owner, "acme")
        with pytest.raises(AdminConflict):
            await services.organizations.create(session, owner.user_id, OrgCreateRequest(name="Two", slug="two"))

    @pytest.mark.asyncio
    async def test_authority_outage_leaves_nothing_behind(self, session, services, authority, make_user):
        owner = await make_user("owner")
        authority.down = True
        with pytest.raises(AuthorityUnavailable):
            await services.organizations.create(session, owner.user_id, OrgCreateRequest(name="Acme", slug="acme"))
        authority.down = False

        result = await session.execute(select(Organization).where(Organization.slug == "acme"))
        assert result.scalar_one_or_none() is None
        assert await services.organizations.admin_organization(session, owner.user_id) is None


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_by_slug(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        org_id = await make_org(owner, "acme")
        assert (await services.organizations.get_by_slug(session, "acme")).id == org_id
        with pytest.raises(NotFound):
            await services.organizations.get_by_slug(session, "nope")

    @pytest.mark.asyncio
    async def test_search(self, session, services, make_user, make_org):
        await make_org(await make_user("a"), "acme-rockets")
        await make_org(await make_user("b"), "globex")
        found = await services.organizations.search(session, "ROCK")
        assert [o.slug for o in found] == ["acme-rockets"]

    @pytest.mark.asyncio
    async def test_admin_organization(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        nobody = await make_user("nobody")
        org_id = await make_org(owner, "acme")
        summary = await services.organizations.admin_organization(session, owner.user_id)
        assert summary.id == org_id
        assert summary.slug == "acme"
        assert await services.organizations.admin_organization(session, nobody.user_id) is None

    @pytest.mark.asyncio
    async def test_members_with_roles(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        alice = await make_user("alice")
        org_id = await make_org(owner, "acme")
        invitation = await services.invitations.create(session, org_id, alice.user_id, owner.user_id, Role.ORGANIZER)
        await services.invitations.accept(session, invitation.token, alice.user_id)

        members = await services.organizations.members_with_roles(session, org_id)

        assert [(m.username, m.roles) for m in members] == [
            ("alice", [Role.ORGANIZER]),
            ("owner", [Role.ORG_ADMIN]),
        ]


class TestDeleteOrganization:
    @pytest.mark.asyncio
    async def test_delete_reconciles_members(self, session, services, authority, make_user, make_org):
        owner = await make_user("owner")
        carol = await make_user("carol")
        alice = await make_user("alice")
        bob = await make_user("bob")
        dave = await make_user("dave")
        acme = await make_org(owner, "acme")
        globex = await make_org(carol, "globex")
        for org_id, issuer in ((acme, owner), (globex, carol)):
            invitation = await services.invitations.create(session, org_id, alice.user_id, issuer.user_id)
            await services.invitations.accept(session, invitation.token, alice.user_id)
        await services.invitations.create(session, acme, bob.user_id, owner.user_id)
        await services.join_requests.create(session, acme, dave.user_id)

        await services.organizations.delete(session, acme, owner.user_id)

        with pytest.raises(NotFound):
            await services.organizations.get_by_slug(session, "acme")
        assert authority.roles_of(owner.identity) == set()
        # Still a guest of globex
        assert authority.roles_of(alice.identity) == {Role.GUEST}
        invitations = await session.execute(select(Invitation).where(Invitation.organization_id == acme))
        assert invitations.scalars().all() == []
        requests = await session.execute(select(JoinRequest).where(JoinRequest.organization_id == acme))
        assert requests.scalars().all() == []

        # The former admin may now found another org
        await services.organizations.create(session, owner.user_id, OrgCreateRequest(name="Next", slug="next"))

    @pytest.mark.asyncio
    async def test_only_admin_deletes(self, session, services, make_user, make_org):
        owner = await make_user("owner")
        other = await make_user("other")
        org_id = await make_org(owner, "acme")
        with pytest.raises(NotAuthorized):
            await services.organizations.delete(session, org_id, other.user_id)
