"""
Shared fixtures: in-memory SQLite database, a recording identity authority
and a recording Redis publisher.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from membership_service.core.config import Settings
from membership_service.core.container import Services, build_services
from membership_service.core.database import init_db
from membership_service.core.identity import AuthorityError
from membership_service.core.resilience import AuthorityPolicy, CircuitBreaker
from membership_service.models.user import User
from membership_service.services.reconciler import Account
from membership_shared.schemas.common import Role
from membership_shared.schemas.organizations import OrgCreateRequest


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeAuthority:
    """Identity authority holding a flat role set per identity."""

    def __init__(self):
        self.roles: dict[str, set[Role]] = defaultdict(set)
        self.calls: list[tuple[str, str, Role]] = []
        self.down = False
        self._failures: dict[str, list[AuthorityError]] = defaultdict(list)
        self._held: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def fail_next(self, action: str, *errors: AuthorityError) -> None:
        """Queue errors for the next ``action`` ("grant" or "revoke") calls."""
        self._failures[action].extend(errors)

    def hold_next(self, action: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Park the next ``action`` call. Returns (reached, release) events."""
        reached, release = asyncio.Event(), asyncio.Event()
        self._held[action] = (reached, release)
        return reached, release

    async def _checkpoint(self, action: str) -> None:
        held = self._held.pop(action, None)
        if held is not None:
            reached, release = held
            reached.set()
            await release.wait()

    def _maybe_fail(self, action: str) -> None:
        if self.down:
            raise AuthorityError("connection refused", transient=True)
        if self._failures[action]:
            raise self._failures[action].pop(0)

    async def grant_role(self, identity: str, role: Role) -> None:
        self.calls.append(("grant", identity, role))
        await self._checkpoint("grant")
        self._maybe_fail("grant")
        self.roles[identity].add(role)

    async def revoke_role(self, identity: str, role: Role) -> None:
        self.calls.append(("revoke", identity, role))
        await self._checkpoint("revoke")
        self._maybe_fail("revoke")
        self.roles[identity].discard(role)

    def roles_of(self, identity: str) -> set[Role]:
        return set(self.roles[identity])


def rejected(status: int = 404) -> AuthorityError:
    return AuthorityError(f"HTTP {status}", transient=False, status=status)


class RecordingRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.fail = False

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("redis down")
        self.published.append((channel, json.loads(message)))
        return 1

    def on(self, channel: str) -> list[dict]:
        return [payload for ch, payload in self.published if ch == channel]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def statements(session):
    """SQL issued through ``session``, rendered for PostgreSQL so row locks show."""
    captured: list[str] = []

    def _capture(state):
        captured.append(str(state.statement.compile(dialect=postgresql.dialect())))

    event.listen(session.sync_session, "do_orm_execute", _capture)
    yield captured
    event.remove(session.sync_session, "do_orm_execute", _capture)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def policy():
    return AuthorityPolicy(
        breaker=CircuitBreaker(failure_threshold=10, reset_timeout=30.0),
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        attempt_timeout=1.0,
    )


@pytest.fixture
def services(settings, redis, authority, policy) -> Services:
    return build_services(settings, redis, client=authority, policy=policy)


@pytest.fixture
def make_user(session):
    async def _make(name: str) -> Account:
        user = User(
            keycloak_id=f"kc-{name}",
            email=f"{name}@example.com",
            username=name,
            first_name=name.title(),
            last_name="Tester",
        )
        session.add(user)
        await session.commit()
        return Account.of(user)

    return _make


@pytest.fixture
def make_org(session, services):
    """Create an org administered by ``admin``; returns the org id."""

    async def _make(admin: Account, slug: str):
        org = await services.organizations.create(
            session, admin.user_id, OrgCreateRequest(name=slug.replace("-", " ").title(), slug=slug)
        )
        return org.id

    return _make
