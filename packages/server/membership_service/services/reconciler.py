"""
Role reconciliation between per-organization memberships and the identity
authority's flat, organization-less role flags.

A role flag must stay on the account while any membership still needs it,
so revocation is decided against the membership set *after* the removal
that triggered it.

Handles:
- Granting a role flag when a membership is created
- Revoking a role flag only when no other organization still needs it
- Undoing external changes when the local unit of work does not commit
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from membership_service.core.exceptions import AuthorityRejected, MembershipError
from membership_service.core.identity import AuthorityClient
from membership_service.core.resilience import AuthorityPolicy
from membership_service.models.membership import Membership
from membership_service.models.user import User
from membership_shared.schemas.common import Role

log = structlog.get_logger()


@dataclass(frozen=True)
class Account:
    """A local user id paired with its identity-authority subject id."""

    user_id: uuid.UUID
    identity: str

    @classmethod
    def of(cls, user: User) -> Account:
        return cls(user_id=user.id, identity=user.keycloak_id)


class RoleReconciler:
    def __init__(self, client: AuthorityClient, policy: AuthorityPolicy):
        self._client = client
        self._policy = policy

    async def grant(self, account: Account, role: Role) -> None:
        """Add the role flag. Idempotent: an already-held role is not an error."""
        await self._policy.call(
            f"grant:{role.value}",
            lambda: self._client.grant_role(account.identity, role),
        )
        log.info("reconcile.granted", user_id=str(account.user_id), role=role.value)

    async def revoke(self, account: Account, role: Role) -> None:
        await self._policy.call(
            f"revoke:{role.value}",
            lambda: self._client.revoke_role(account.identity, role),
        )
        log.info("reconcile.revoked", user_id=str(account.user_id), role=role.value)

    async def holdings(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        role: Role,
        excluding_org_id: Optional[uuid.UUID],
    ) -> int:
        """Memberships of ``user_id`` with ``role`` outside ``excluding_org_id``."""
        # Pending deletes must be visible to the count
        await session.flush()
        stmt = (
            select(func.count())
            .select_from(Membership)
            .where(Membership.user_id == user_id, Membership.role == role.value)
        )
        if excluding_org_id is not None:
            stmt = stmt.where(Membership.organization_id != excluding_org_id)
        result = await session.execute(stmt)
        return result.scalar_one()

    async def still_needed(
        self,
        session: AsyncSession,
        account: Account,
        role: Role,
        excluding_org_id: Optional[uuid.UUID],
    ) -> bool:
        """Whether a membership outside ``excluding_org_id`` still needs ``role``.

        ``excluding_org_id=None`` considers every organization.
        """
        remaining = await self.holdings(session, account.user_id, role, excluding_org_id)
        if remaining:
            log.info(
                "reconcile.retained",
                user_id=str(account.user_id),
                role=role.value,
                remaining=remaining,
            )
        return remaining > 0

    async def revoke_if_unused(
        self,
        session: AsyncSession,
        account: Account,
        role: Role,
        excluding_org_id: Optional[uuid.UUID],
    ) -> bool:
        """Revoke ``role`` unless another organization's membership still needs it.

        Returns whether a revoke was issued.
        """
        if await self.still_needed(session, account, role, excluding_org_id):
            return False
        await self.revoke(account, role)
        return True


class ExternalChanges:
    """
    External role changes made inside one local unit of work.

    A change is recorded before its call goes out, since a timed-out or
    cancelled call may still have been applied. Definitive refusals are
    dropped from the record. ``undo`` runs after the local rollback, so
    residual-holding checks see the restored membership set.
    """

    def __init__(self, reconciler: RoleReconciler, session: AsyncSession):
        self._reconciler = reconciler
        self._session = session
        self._applied: list[tuple[str, Account, Role]] = []

    async def grant(self, account: Account, role: Role) -> None:
        self._applied.append(("grant", account, role))
        try:
            await self._reconciler.grant(account, role)
        except AuthorityRejected:
            self._applied.pop()
            raise

    async def revoke_if_unused(
        self, account: Account, role: Role, excluding_org_id: Optional[uuid.UUID]
    ) -> bool:
        if await self._reconciler.still_needed(self._session, account, role, excluding_org_id):
            return False
        self._applied.append(("revoke", account, role))
        try:
            await self._reconciler.revoke(account, role)
        except AuthorityRejected:
            self._applied.pop()
            raise
        return True

    async def undo(self) -> None:
        while self._applied:
            kind, account, role = self._applied.pop()
            try:
                if kind == "grant":
                    await self._reconciler.revoke_if_unused(self._session, account, role, None)
                else:
                    await self._reconciler.grant(account, role)
            except MembershipError as exc:
                # Local and external state now disagree; needs manual repair
                log.error(
                    "reconcile.compensation_failed",
                    action=kind,
                    user_id=str(account.user_id),
                    identity=account.identity,
                    role=role.value,
                    error=str(exc),
                )
            else:
                log.warning(
                    "reconcile.compensated",
                    action=kind,
                    user_id=str(account.user_id),
                    role=role.value,
                )


async def commit_unit(session: AsyncSession, changes: ExternalChanges) -> None:
    """Commit the local side of a unit of work.

    External calls have already gone out, so the commit is shielded from
    caller cancellation: it runs to completion and a pending cancellation is
    re-raised afterwards. A failed commit is rolled back and the external
    changes undone.
    """
    commit = asyncio.ensure_future(session.commit())
    cancelled = False
    while not commit.done():
        try:
            await asyncio.wait({commit})
        except asyncio.CancelledError:
            cancelled = True
    try:
        commit.result()
    except Exception:
        await session.rollback()
        await changes.undo()
        raise
    if cancelled:
        raise asyncio.CancelledError()


@asynccontextmanager
async def unit_of_work(
    session: AsyncSession, reconciler: RoleReconciler
) -> AsyncIterator[ExternalChanges]:
    """One lifecycle operation: local changes plus the matching external calls.

    If the body fails or is cancelled, the local changes are rolled back and
    the external changes undone before the error propagates. Otherwise the
    unit is committed through ``commit_unit``.
    """
    changes = ExternalChanges(reconciler, session)
    try:
        yield changes
    except BaseException:
        await session.rollback()
        await changes.undo()
        raise
    await commit_unit(session, changes)
