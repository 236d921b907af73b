"""
Service composition.

The authority call policy holds circuit-breaker state, so it is built once
per process and shared by every service through one reconciler.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from membership_service.core.config import Settings
from membership_service.core.events import EventNotifier, Publisher
from membership_service.core.identity import AuthorityClient, KeycloakAuthorityClient, realm_admin
from membership_service.core.resilience import AuthorityPolicy
from membership_service.services.invitations import InvitationService
from membership_service.services.join_requests import JoinRequestService
from membership_service.services.memberships import MembershipService
from membership_service.services.organizations import OrganizationService
from membership_service.services.reconciler import RoleReconciler
from membership_service.services.users import UserService


@dataclass
class Services:
    reconciler: RoleReconciler
    notifier: EventNotifier
    invitations: InvitationService
    join_requests: JoinRequestService
    memberships: MembershipService
    organizations: OrganizationService
    users: UserService


def build_services(
    settings: Settings,
    redis: Publisher,
    client: Optional[AuthorityClient] = None,
    policy: Optional[AuthorityPolicy] = None,
) -> Services:
    if client is None:
        client = KeycloakAuthorityClient(realm_admin(settings))
    reconciler = RoleReconciler(client, policy or AuthorityPolicy.from_settings(settings))
    notifier = EventNotifier.from_settings(redis, settings)
    return Services(
        reconciler=reconciler,
        notifier=notifier,
        invitations=InvitationService(
            reconciler, notifier, ttl=timedelta(days=settings.invitation_ttl_days)
        ),
        join_requests=JoinRequestService(reconciler, notifier),
        memberships=MembershipService(reconciler, notifier),
        organizations=OrganizationService(reconciler),
        users=UserService(reconciler),
    )
