"""
Identity authority client.

The authority (Keycloak) stores a flat set of realm roles per account with no
notion of organizations. This client only adds and removes those flags; it
does not retry. Retry, timeout and circuit breaking are applied by
``AuthorityPolicy`` around each call.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from keycloak import KeycloakAdmin
from keycloak.exceptions import KeycloakConnectionError, KeycloakError

from membership_service.core.config import Settings
from membership_shared.schemas.common import Role

log = structlog.get_logger()


class AuthorityError(Exception):
    """A failed identity authority call.

    ``transient`` errors (connection failures, timeouts, 5xx, 429) may
    succeed on retry; anything else is a definitive refusal.
    """

    def __init__(self, message: str, *, transient: bool, status: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status = status


class AuthorityClient(Protocol):
    async def grant_role(self, identity: str, role: Role) -> None: ...

    async def revoke_role(self, identity: str, role: Role) -> None: ...


def _is_transient(status: int | None) -> bool:
    return status is None or status == 429 or status >= 500


def realm_admin(settings: Settings) -> KeycloakAdmin:
    return KeycloakAdmin(
        server_url=settings.keycloak_url,
        username=settings.keycloak_admin_name,
        password=settings.keycloak_admin_secret,
        realm_name=settings.keycloak_realm,
        user_realm_name=settings.keycloak_admin_realm,
    )


class KeycloakAuthorityClient:
    """Realm role mappings through the Keycloak admin API."""

    def __init__(self, admin: KeycloakAdmin):
        self._admin = admin

    async def _realm_role(self, role: Role) -> dict:
        return await self._admin.a_get_realm_role(role.value)

    async def grant_role(self, identity: str, role: Role) -> None:
        try:
            representation = await self._realm_role(role)
            await self._admin.a_assign_realm_roles(user_id=identity, roles=[representation])
        except KeycloakError as exc:
            status = _status_of(exc)
            if status == 409:
                # Already assigned
                log.debug("authority.grant_duplicate", identity=identity, role=role.value)
                return
            raise AuthorityError(
                f"Failed to assign role {role.value} to {identity}: {exc}",
                transient=_is_transient(status),
                status=status,
            ) from exc
        log.info("authority.role_granted", identity=identity, role=role.value)

    async def revoke_role(self, identity: str, role: Role) -> None:
        try:
            representation = await self._realm_role(role)
            await self._admin.a_delete_realm_roles_of_user(user_id=identity, roles=[representation])
        except KeycloakError as exc:
            status = _status_of(exc)
            raise AuthorityError(
                f"Failed to remove role {role.value} from {identity}: {exc}",
                transient=_is_transient(status),
                status=status,
            ) from exc
        log.info("authority.role_revoked", identity=identity, role=role.value)


def _status_of(exc: KeycloakError) -> int | None:
    if isinstance(exc, KeycloakConnectionError):
        return None
    return exc.response_code
