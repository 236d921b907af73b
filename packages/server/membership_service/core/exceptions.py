class MembershipError(Exception):
    """Base exception for membership lifecycle errors.

    ``code`` is stable and distinct per failure kind so that calling layers
    can map it to their own representation.
    """

    code = "membership_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__doc__)

    @property
    def message(self) -> str:
        return str(self)


class NotFound(MembershipError):
    """Entity or token not found"""

    code = "not_found"


class NotAuthorized(MembershipError):
    """Caller lacks the organization admin role"""

    code = "not_authorized"


class Forbidden(MembershipError):
    """Caller does not own the targeted record"""

    code = "forbidden"


class NotPending(MembershipError):
    """Record is no longer pending"""

    code = "not_pending"


class WrongOrganization(MembershipError):
    """Record belongs to a different organization"""

    code = "wrong_organization"


class Expired(MembershipError):
    """Invitation is past its expiry"""

    code = "expired"


class ConflictingProposal(MembershipError):
    """User already has a pending invitation, pending join request or membership"""

    code = "conflicting_proposal"


class AdminConflict(MembershipError):
    """User is already admin of another organization"""

    code = "admin_conflict"


class SelfRemovalForbidden(MembershipError):
    """Admins must leave an organization through the self-leave path"""

    code = "self_removal_forbidden"


class SlugTaken(MembershipError):
    """Organization slug already taken"""

    code = "slug_taken"


class AuthorityUnavailable(MembershipError):
    """Identity authority unavailable; retries exhausted or circuit open"""

    code = "authority_unavailable"
    retryable = True


class AuthorityRejected(MembershipError):
    """Identity authority refused the request"""

    code = "authority_rejected"


class NoRoles(MembershipError):
    """A member must be given at least one role"""

    code = "no_roles"
