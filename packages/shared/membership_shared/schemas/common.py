from enum import Enum


class Role(str, Enum):
    """Membership roles. The value doubles as the realm role name at the identity authority."""

    USER = "user"
    ADMINISTRATOR = "administrator"
    ORG_ADMIN = "org_admin"
    ORGANIZER = "organizer"
    GUEST = "guest"


# Lowest-privilege role, granted on join request approval
DEFAULT_ROLE = Role.GUEST


class OrganizationType(str, Enum):
    PERSONAL = "personal"
    BUSINESS = "business"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"


class JoinRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Valid state transitions. Declined invitations are deleted rather than transitioned.
INVITATION_TRANSITIONS: dict[InvitationStatus, list[InvitationStatus]] = {
    InvitationStatus.PENDING: [InvitationStatus.ACCEPTED],
    InvitationStatus.ACCEPTED: [],
}

JOIN_REQUEST_TRANSITIONS: dict[JoinRequestStatus, list[JoinRequestStatus]] = {
    JoinRequestStatus.PENDING: [JoinRequestStatus.APPROVED, JoinRequestStatus.REJECTED],
    JoinRequestStatus.APPROVED: [],
    JoinRequestStatus.REJECTED: [],
}
